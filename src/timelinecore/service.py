"""Service facade: the calling contract for request handlers.

Wires the stores, resolver, batch filter and cache together and adds the
ownership gate in front of every mutation. The gate runs in the same
transaction as the write it protects, so ownership cannot change between
the check and the write.

Usage:
    from timelinecore import TimelineService, load_config_from_env

    service = TimelineService.from_config(load_config_from_env())
    job = service.create_item("user-1", "job", {"title": "Engineer", "role": "Backend"})
    service.set_sharing("user-1", job.id, [{"subject_type": "public"}])
    visible = service.visible_timeline("user-1", viewer_id=None)
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Union

from .config import TimelineConfig
from .exceptions import UnauthorizedError
from .hierarchy import HierarchyStore
from .logging import get_logger
from .models import (
    AccessDecision,
    BatchAuthorization,
    NodeKind,
    NodePolicy,
    Organization,
    OrganizationType,
    OrgMember,
    OrgRole,
    PermissionAction,
    PolicySpec,
    TimelineNode,
    VisibilityLevel,
    VisibleNode,
)
from .organizations import OrganizationIndex
from .permissions import (
    BatchAccessFilter,
    PermissionCache,
    PermissionResolver,
    PolicyStore,
    build_cache,
    parse_policy,
)
from .storage import Database

logger = get_logger(__name__)

PolicyInput = Union[PolicySpec, Mapping[str, Any]]


class TimelineService:
    """Timeline items, sharing and visibility for one database.

    Args:
        database: Shared Database (tables must exist).
        cache: Optional permission cache.
        enforce_kind_rules: Restrict parent/child kinds.
        max_depth: Maximum nesting depth (0 = unlimited).
        slow_check_ms: Single check latency budget.
        slow_batch_ms: Batch filter latency budget.
    """

    def __init__(
        self,
        database: Database,
        *,
        cache: Optional[PermissionCache] = None,
        enforce_kind_rules: bool = False,
        max_depth: int = 0,
        slow_check_ms: int = 100,
        slow_batch_ms: int = 500,
    ) -> None:
        self.database = database
        self.cache = cache
        self.hierarchy = HierarchyStore(
            database,
            cache=cache,
            enforce_kind_rules=enforce_kind_rules,
            max_depth=max_depth,
        )
        self.policies = PolicyStore(database, cache=cache)
        self.organizations = OrganizationIndex(database, cache=cache)
        self.resolver = PermissionResolver(
            database,
            self.hierarchy,
            self.policies,
            self.organizations,
            cache=cache,
            slow_check_ms=slow_check_ms,
        )
        self.batch = BatchAccessFilter(
            database,
            self.hierarchy,
            self.policies,
            self.organizations,
            slow_batch_ms=slow_batch_ms,
        )

    @classmethod
    def from_config(cls, config: TimelineConfig, *, create_tables: bool = True) -> "TimelineService":
        """Build the database, cache and stores described by ``config``."""
        database = Database.from_config(config)
        if create_tables:
            database.create_all()
        service = cls(
            database,
            cache=build_cache(config),
            enforce_kind_rules=config.enforce_kind_rules,
            max_depth=config.max_depth,
            slow_check_ms=config.slow_check_ms,
            slow_batch_ms=config.slow_batch_ms,
        )
        logger.info(
            "Timeline service ready (kind rules %s, max depth %s, cache %s)",
            "on" if config.enforce_kind_rules else "off",
            config.max_depth or "unlimited",
            type(service.cache).__name__ if service.cache else "off",
        )
        return service

    # ── Items ──────────────────────────────────────────

    def create_item(
        self,
        owner_id: str,
        kind: NodeKind | str,
        metadata: Any = None,
        parent_id: Optional[str] = None,
    ) -> TimelineNode:
        """Create an item for the authenticated ``owner_id``.

        Parent ownership is enforced by the hierarchy store.
        """
        return self.hierarchy.create_node(owner_id, kind, metadata, parent_id)

    def get_item(self, caller_id: Optional[str], node_id: str) -> VisibleNode:
        """Fetch one item together with the caller's level.

        Raises:
            NotFoundError: the item does not exist.
            UnauthorizedError: the caller may not view it.
        """
        with self.database.transaction(operation="get_item") as s:
            decision = self.resolver.check(node_id, caller_id, PermissionAction.VIEW, session=s)
            if not decision.allowed:
                logger.warning("View denied", node_id=node_id, subject_id=caller_id)
                raise UnauthorizedError(f"Node {node_id} is not visible", node_id=node_id)
            return VisibleNode(node=self.hierarchy.get_node(node_id, session=s), level=decision.level)

    def update_item(self, caller_id: str, node_id: str, metadata: Any) -> TimelineNode:
        with self.database.transaction(operation="update_item") as s:
            self.resolver.require_owner(node_id, caller_id, session=s)
            return self.hierarchy.update_node(node_id, metadata, session=s)

    def move_item(self, caller_id: str, node_id: str, new_parent_id: Optional[str]) -> TimelineNode:
        with self.database.transaction(operation="move_item") as s:
            self.resolver.require_owner(node_id, caller_id, session=s)
            return self.hierarchy.move_node(node_id, new_parent_id, session=s)

    def delete_item(self, caller_id: str, node_id: str) -> list[str]:
        """Delete an item, its descendants and all their policies atomically.

        Returns:
            Ids of every deleted node.
        """
        with self.database.transaction(operation="delete_item") as s:
            self.resolver.require_owner(node_id, caller_id, session=s)
            subtree = [n.id for n in self.hierarchy.get_descendants(node_id, session=s)]
            self.policies.delete_all_for_nodes(subtree, session=s)
            return self.hierarchy.delete_node(node_id, session=s)

    def list_items(self, owner_id: str) -> list[TimelineNode]:
        return self.hierarchy.list_by_owner(owner_id)

    # ── Sharing ────────────────────────────────────────

    def set_sharing(
        self,
        caller_id: str,
        node_id: str,
        policies: Iterable[PolicyInput],
        *,
        replace: bool = True,
    ) -> list[NodePolicy]:
        specs = [parse_policy(p) for p in policies]
        with self.database.transaction(operation="set_sharing") as s:
            self.resolver.require_owner(node_id, caller_id, session=s)
            return self.policies.set_policies(node_id, specs, caller_id, replace=replace, session=s)

    def share_subtree(
        self,
        caller_id: str,
        node_id: str,
        policies: Iterable[PolicyInput],
        *,
        replace: bool = True,
    ) -> dict[str, list[NodePolicy]]:
        """Write the same policies on ``node_id`` and every descendant.

        Policies do not inherit, so sharing a whole branch means one set of
        rows per node. All rows are written in one transaction.
        """
        specs = [parse_policy(p) for p in policies]
        with self.database.transaction(operation="share_subtree") as s:
            self.resolver.require_owner(node_id, caller_id, session=s)
            written = {
                node.id: self.policies.set_policies(node.id, specs, caller_id, replace=replace, session=s)
                for node in self.hierarchy.get_descendants(node_id, session=s)
            }
        logger.info("Subtree shared: %d nodes", len(written), node_id=node_id, subject_id=caller_id)
        return written

    def get_sharing(self, caller_id: str, node_id: str) -> list[NodePolicy]:
        """Policies on a node, visible to its owner only."""
        with self.database.transaction(operation="get_sharing") as s:
            self.resolver.require_owner(node_id, caller_id, session=s)
            return self.policies.get_policies(node_id, session=s)

    def delete_policy(self, caller_id: str, node_id: str, policy_id: str) -> None:
        with self.database.transaction(operation="delete_policy") as s:
            self.resolver.require_owner(node_id, caller_id, session=s)
            self.policies.delete_policy(node_id, policy_id, session=s)

    # ── Access ─────────────────────────────────────────

    def check_access(
        self,
        node_id: str,
        subject_id: Optional[str],
        action: PermissionAction | str = PermissionAction.VIEW,
    ) -> AccessDecision:
        return self.resolver.check(node_id, subject_id, action)

    def access_level(self, node_id: str, subject_id: Optional[str]) -> Optional[VisibilityLevel]:
        return self.resolver.access_level(node_id, subject_id)

    def visible_timeline(
        self,
        owner_id: str,
        viewer_id: Optional[str],
        min_level: Optional[VisibilityLevel | str] = None,
    ) -> list[VisibleNode]:
        """The profile view: ``owner_id``'s items that ``viewer_id`` may see."""
        return self.batch.accessible_nodes(owner_id, viewer_id, min_level)

    def batch_check(
        self,
        node_ids: Iterable[str],
        subject_id: Optional[str],
        action: PermissionAction | str = PermissionAction.VIEW,
    ) -> BatchAuthorization:
        return self.batch.check_many(node_ids, subject_id, action)

    # ── Organizations ──────────────────────────────────

    def create_organization(
        self,
        name: str,
        type: OrganizationType | str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Organization:
        return self.organizations.create_organization(name, type, metadata)

    def get_organization(self, org_id: str) -> Organization:
        return self.organizations.get_organization(org_id)

    def add_member(self, org_id: str, user_id: str, role: OrgRole | str = OrgRole.MEMBER) -> OrgMember:
        return self.organizations.add_member(org_id, user_id, role)

    def remove_member(self, org_id: str, user_id: str) -> None:
        self.organizations.remove_member(org_id, user_id)

    def list_memberships(self, user_id: str) -> list[Organization]:
        return self.organizations.list_organizations_for_user(user_id)

    def close(self) -> None:
        self.database.dispose()


__all__ = ["TimelineService"]
