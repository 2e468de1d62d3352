"""Batch visibility filtering for one subject over many nodes.

The profile view asks "which of owner X's nodes may S see, and at what
level". Resolving each node separately costs one round-trip per node, so the
filter loads the policies of every candidate node in one query and the
subject's memberships in another, then runs the same ``decide()`` as the
single-node resolver over the prefetched data.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from ..models import (
    AccessDecision,
    BatchAuthorization,
    PermissionAction,
    SubjectType,
    TimelineNode,
    VisibilityLevel,
    VisibleNode,
    utc_now,
)
from ..storage import Database
from .resolver import decide, meets_level

if TYPE_CHECKING:
    from ..hierarchy import HierarchyStore
    from ..organizations import OrganizationIndex
    from .policy_store import PolicyStore

logger = logging.getLogger(__name__)


class BatchAccessFilter:
    """Resolve one subject's access to a set of nodes with two prefetches.

    Args:
        database: Shared Database.
        hierarchy: Node source for id-based calls.
        policies: Policy source.
        organizations: Membership source.
        slow_batch_ms: Batches slower than this are logged at WARNING.
    """

    def __init__(
        self,
        database: Database,
        hierarchy: "HierarchyStore",
        policies: "PolicyStore",
        organizations: "OrganizationIndex",
        *,
        slow_batch_ms: int = 500,
    ) -> None:
        self._db = database
        self.hierarchy = hierarchy
        self.policies = policies
        self.organizations = organizations
        self.slow_batch_ms = slow_batch_ms

    def decide_many(
        self,
        nodes: Sequence[TimelineNode],
        subject_id: Optional[str],
        action: PermissionAction | str = PermissionAction.VIEW,
        *,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> dict[str, AccessDecision]:
        """Decision per node id for ``subject_id``."""
        action = PermissionAction(action)
        now = now or utc_now()
        owned = {n.id for n in nodes if subject_id is not None and n.owner_id == subject_id}
        others = [n.id for n in nodes if n.id not in owned]

        decisions = {node_id: AccessDecision.owner() for node_id in owned}
        if not others:
            return decisions

        with self._db.transaction(session, operation="decide_many") as s:
            by_node = self.policies.get_policies_for_nodes(others, now=now, session=s)
            org_ids: frozenset[str] = frozenset()
            if any(p.subject_type == SubjectType.ORGANIZATION for ps in by_node.values() for p in ps):
                org_ids = self.organizations.organization_ids_for_user(subject_id, session=s)

        for node in nodes:
            if node.id in decisions:
                continue
            decisions[node.id] = decide(
                owner_id=node.owner_id,
                subject_id=subject_id,
                action=action,
                policies=by_node.get(node.id, []),
                organization_ids=org_ids,
                now=now,
            )
        return decisions

    def filter(
        self,
        nodes: Sequence[TimelineNode],
        subject_id: Optional[str],
        action: PermissionAction | str = PermissionAction.VIEW,
        min_level: Optional[VisibilityLevel | str] = None,
        *,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> list[VisibleNode]:
        """Visible subset of ``nodes`` in input order, each with its level.

        Denied nodes are omitted entirely. When ``subject_id`` owns every
        node, no policies are read.
        """
        if not nodes:
            return []
        started = time.perf_counter()
        decisions = self.decide_many(nodes, subject_id, action, now=now, session=session)
        visible = [
            VisibleNode(node=node, level=decisions[node.id].level)
            for node in nodes
            if meets_level(decisions[node.id], min_level)
        ]

        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > self.slow_batch_ms:
            logger.warning(
                "Slow batch filter: %d nodes for subject=%s took %.1fms (budget %dms)",
                len(nodes),
                subject_id,
                elapsed_ms,
                self.slow_batch_ms,
            )
        logger.debug("Batch filter: %d of %d nodes visible to %s", len(visible), len(nodes), subject_id)
        return visible

    def check_many(
        self,
        node_ids: Iterable[str],
        subject_id: Optional[str],
        action: PermissionAction | str = PermissionAction.VIEW,
        *,
        session: Optional[Session] = None,
    ) -> BatchAuthorization:
        """Split ``node_ids`` into authorized, unauthorized and unknown ids."""
        ids = list(dict.fromkeys(node_ids))
        result = BatchAuthorization()
        if not ids:
            return result
        with self._db.transaction(session, operation="check_many") as s:
            found = self.hierarchy.get_nodes(ids, session=s)
            decisions = self.decide_many(
                [found[i] for i in ids if i in found],
                subject_id,
                action,
                session=s,
            )
        for node_id in ids:
            if node_id not in found:
                result.not_found.append(node_id)
            elif decisions[node_id].allowed:
                result.authorized.append(node_id)
            else:
                result.unauthorized.append(node_id)
        return result

    def accessible_nodes(
        self,
        owner_id: str,
        subject_id: Optional[str],
        min_level: Optional[VisibilityLevel | str] = None,
        *,
        session: Optional[Session] = None,
    ) -> list[VisibleNode]:
        """Every node of ``owner_id`` that ``subject_id`` may view."""
        with self._db.transaction(session, operation="accessible_nodes") as s:
            nodes = self.hierarchy.list_by_owner(owner_id, session=s)
            return self.filter(nodes, subject_id, PermissionAction.VIEW, min_level, session=s)


__all__ = ["BatchAccessFilter"]
