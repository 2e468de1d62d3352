"""Owner-scoped node forest with a materialized closure table."""

from .rules import ALLOWED_CHILDREN, can_contain
from .store import HierarchyStore, node_from_row

__all__ = ["ALLOWED_CHILDREN", "HierarchyStore", "can_contain", "node_from_row"]
