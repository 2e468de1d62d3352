"""Node policies, permission resolution and batch filtering.

Defines:
- PolicyStore: per-node Allow/Deny rows with optional expiry
- decide(): the precedence algorithm as a pure function
- PermissionResolver: single (node, subject, action) checks
- BatchAccessFilter: one subject over many nodes with prefetched data
- PermissionCache: optional in-memory or Redis decision cache
"""

from .batch import BatchAccessFilter
from .cache import (
    MemoryPermissionCache,
    PermissionCache,
    RedisPermissionCache,
    build_cache,
)
from .policy_store import PolicyStore, parse_policy, policy_from_row
from .resolver import TIER_ORDER, PermissionResolver, decide, meets_level, seconds_until_first_expiry

__all__ = [
    "BatchAccessFilter",
    "MemoryPermissionCache",
    "PermissionCache",
    "PermissionResolver",
    "PolicyStore",
    "RedisPermissionCache",
    "TIER_ORDER",
    "build_cache",
    "decide",
    "meets_level",
    "parse_policy",
    "policy_from_row",
    "seconds_until_first_expiry",
]
