"""Permission resolution for a single (node, subject, action).

``decide()`` is the whole precedence algorithm as a pure function over data
already loaded from the stores, so it is shared by the resolver and the
batch filter and can be tested without a database:

1. The owner always gets the highest level.
2. Only unexpired policies for the action whose subject matches count.
3. Any matching Deny wins over every Allow.
4. Among Allows, user beats organization beats public; within one tier the
   highest level wins.
5. Nothing applicable means Deny.

Policies on ancestors grant nothing on descendants.

``PermissionResolver`` loads the data for one node and calls ``decide()``.
Store failures propagate unchanged; the resolver never turns "could not
determine access" into a Deny.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Optional

from sqlalchemy.orm import Session

from ..exceptions import UnauthorizedError
from ..models import (
    AccessDecision,
    DecisionSource,
    NodePolicy,
    PermissionAction,
    PolicyEffect,
    SubjectType,
    VisibilityLevel,
    utc_now,
)
from ..storage import Database

if TYPE_CHECKING:
    from ..hierarchy import HierarchyStore
    from ..organizations import OrganizationIndex
    from .cache import PermissionCache
    from .policy_store import PolicyStore

logger = logging.getLogger(__name__)

# Allow tiers, most specific first
TIER_ORDER = (SubjectType.USER, SubjectType.ORGANIZATION, SubjectType.PUBLIC)


def decide(
    *,
    owner_id: str,
    subject_id: Optional[str],
    action: PermissionAction | str,
    policies: Iterable[NodePolicy],
    organization_ids: frozenset[str] | set[str] = frozenset(),
    now: Optional[datetime] = None,
) -> AccessDecision:
    """Resolve access for one subject on one node.

    Args:
        owner_id: Owner of the node.
        subject_id: Requesting user, or None for an anonymous viewer.
        action: Requested action. EDIT is granted by ownership only.
        policies: Policies attached to the node (expired ones are ignored).
        organization_ids: Organizations ``subject_id`` belongs to.
        now: Evaluation time for expiry.

    Returns:
        The decision with the level and the policy that produced it.
    """
    if subject_id is not None and subject_id == owner_id:
        return AccessDecision.owner()

    action = PermissionAction(action)
    now = now or utc_now()
    applicable = [
        p
        for p in policies
        if p.action == action and not p.is_expired(now) and p.matches_subject(subject_id, organization_ids)
    ]

    for p in applicable:
        if p.effect == PolicyEffect.DENY:
            return AccessDecision.deny(DecisionSource.DENY, policy_id=p.id)

    for tier in TIER_ORDER:
        best: Optional[NodePolicy] = None
        for p in applicable:
            if p.subject_type == tier and (best is None or p.level > best.level):
                best = p
        if best is not None:
            return AccessDecision(
                allowed=True,
                level=best.level,
                source=DecisionSource(tier.value),
                policy_id=best.id,
            )

    return AccessDecision.deny()


def meets_level(decision: AccessDecision, min_level: Optional[VisibilityLevel | str]) -> bool:
    if not decision.allowed:
        return False
    if min_level is None:
        return True
    return decision.level is not None and decision.level >= VisibilityLevel(min_level)


def seconds_until_first_expiry(policies: Iterable[NodePolicy], now: Optional[datetime] = None) -> Optional[int]:
    """Whole seconds until the first of ``policies`` expires, None if none expire.

    A cached decision must not outlive a policy it was derived from.
    """
    expiries = [p.expires_at for p in policies if p.expires_at is not None]
    if not expiries:
        return None
    return int((min(expiries) - (now or utc_now())).total_seconds())


class PermissionResolver:
    """Answers "can S do A on N, and at what level".

    Args:
        database: Shared Database (reads for one check share a transaction).
        hierarchy: Node ownership source.
        policies: Policy source.
        organizations: Membership source.
        cache: Optional decision cache.
        slow_check_ms: Checks slower than this are logged at WARNING.
    """

    def __init__(
        self,
        database: Database,
        hierarchy: "HierarchyStore",
        policies: "PolicyStore",
        organizations: "OrganizationIndex",
        *,
        cache: Optional["PermissionCache"] = None,
        slow_check_ms: int = 100,
    ) -> None:
        self._db = database
        self.hierarchy = hierarchy
        self.policies = policies
        self.organizations = organizations
        self.cache = cache
        self.slow_check_ms = slow_check_ms

    def check(
        self,
        node_id: str,
        subject_id: Optional[str],
        action: PermissionAction | str = PermissionAction.VIEW,
        *,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> AccessDecision:
        """Resolve access for ``subject_id`` (None = anonymous) on ``node_id``.

        The cache is consulted only for plain checks: a caller-supplied
        ``now`` or an open ``session`` (which may hold uncommitted writes)
        always goes to the stores.

        Raises:
            NotFoundError: ``node_id`` does not exist.
            StoreError: the stores could not be read.
        """
        action = PermissionAction(action)
        use_cache = self.cache is not None and now is None and session is None
        generation = None
        if use_cache:
            cached = self.cache.get(node_id, subject_id, action)
            if cached is not None:
                return cached
            # Taken before the stores are read; a write committing after
            # this point invalidates, and the decision below is not stored
            generation = self.cache.generation(node_id, subject_id)

        started = time.perf_counter()
        policies: list[NodePolicy] = []
        with self._db.transaction(session, operation="check") as s:
            owner_id = self.hierarchy.owner_of(node_id, session=s)
            if subject_id is not None and subject_id == owner_id:
                decision = AccessDecision.owner()
            else:
                policies = self.policies.get_policies(node_id, now=now, session=s)
                org_ids: frozenset[str] = frozenset()
                if any(p.subject_type == SubjectType.ORGANIZATION for p in policies):
                    org_ids = self.organizations.organization_ids_for_user(subject_id, session=s)
                decision = decide(
                    owner_id=owner_id,
                    subject_id=subject_id,
                    action=action,
                    policies=policies,
                    organization_ids=org_ids,
                    now=now,
                )

        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > self.slow_check_ms:
            logger.warning(
                "Slow permission check: node=%s subject=%s action=%s took %.1fms (budget %dms)",
                node_id,
                subject_id,
                action.value,
                elapsed_ms,
                self.slow_check_ms,
            )
        logger.debug(
            "Permission %s: node=%s subject=%s action=%s level=%s source=%s",
            "allow" if decision.allowed else "deny",
            node_id,
            subject_id,
            action.value,
            decision.level.value if decision.level else None,
            decision.source.value,
        )

        if use_cache and generation is not None:
            self.cache.set(
                node_id,
                subject_id,
                action,
                decision,
                generation=generation,
                ttl_seconds=seconds_until_first_expiry(policies),
            )
        return decision

    def can_access(
        self,
        node_id: str,
        subject_id: Optional[str],
        action: PermissionAction | str = PermissionAction.VIEW,
        min_level: Optional[VisibilityLevel | str] = None,
        *,
        session: Optional[Session] = None,
    ) -> bool:
        """True if access is allowed at ``min_level`` or above."""
        return meets_level(self.check(node_id, subject_id, action, session=session), min_level)

    def access_level(
        self,
        node_id: str,
        subject_id: Optional[str],
        *,
        session: Optional[Session] = None,
    ) -> Optional[VisibilityLevel]:
        """Granted view level, or None when denied."""
        decision = self.check(node_id, subject_id, PermissionAction.VIEW, session=session)
        return decision.level if decision.allowed else None

    def is_owner(self, node_id: str, user_id: Optional[str], *, session: Optional[Session] = None) -> bool:
        if not user_id:
            return False
        return self.hierarchy.owner_of(node_id, session=session) == user_id

    def require_owner(self, node_id: str, user_id: Optional[str], *, session: Optional[Session] = None) -> None:
        """Ownership gate for mutations.

        Raises:
            NotFoundError: ``node_id`` does not exist.
            UnauthorizedError: ``user_id`` does not own the node.
        """
        decision = self.check(node_id, user_id, PermissionAction.EDIT, session=session)
        if not decision.allowed:
            logger.warning("Ownership gate denied: node=%s user=%s", node_id, user_id)
            raise UnauthorizedError(
                f"User {user_id} may not modify node {node_id}",
                node_id=node_id,
                user_id=user_id,
            )


__all__ = ["PermissionResolver", "TIER_ORDER", "decide", "meets_level", "seconds_until_first_expiry"]
