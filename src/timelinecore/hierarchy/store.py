"""Timeline hierarchy store backed by a materialized closure table.

Every node has a self row ``(n, n, 0)`` in ``timeline_node_closure`` plus one
row per ancestor, so ancestor, descendant, child and path queries are single
indexed lookups with no recursion at read time. The cost is paid on writes:

- create: self row + one row per ancestor of the parent (depth + 1)
- move: rows linking the moved subtree to its old ancestors are deleted and
  the cross product (new ancestors × subtree) is inserted
- delete: every closure row whose descendant is in the subtree goes

Each write runs in one transaction; a failure leaves the closure untouched.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any, Iterable, Optional, Sequence

from sqlalchemy import delete, func, insert, literal, select
from sqlalchemy.orm import Session, aliased

from ..exceptions import CycleDetectedError, InvalidParentError, NotFoundError, ValidationError
from ..logging import safe_log_value
from ..models import (
    ClosureEntry,
    HierarchyStats,
    IntegrityReport,
    MoveValidation,
    NodeKind,
    TimelineNode,
    parse_node_meta,
    utc_now,
)
from ..storage import ClosureRow, Database, NodeRow
from . import diagnostics
from .rules import can_contain

if TYPE_CHECKING:
    from ..permissions.cache import PermissionCache

logger = logging.getLogger(__name__)


def node_from_row(row: NodeRow) -> TimelineNode:
    return TimelineNode(
        id=row.id,
        owner_id=row.owner_id,
        kind=NodeKind(row.kind),
        meta=parse_node_meta(row.kind, row.meta),
        parent_id=row.parent_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class HierarchyStore:
    """Authoritative node storage plus ancestor/descendant queries.

    Args:
        database: Shared Database.
        cache: Optional permission cache; entries for touched nodes are
            dropped before and after every committed move or delete.
        enforce_kind_rules: Reject parent/child kind pairings outside
            :data:`~timelinecore.hierarchy.rules.ALLOWED_CHILDREN`.
        max_depth: Maximum depth below a root (0 = unlimited).
    """

    def __init__(
        self,
        database: Database,
        *,
        cache: Optional["PermissionCache"] = None,
        enforce_kind_rules: bool = False,
        max_depth: int = 0,
    ) -> None:
        self._db = database
        self._cache = cache
        self.enforce_kind_rules = enforce_kind_rules
        self.max_depth = max_depth

    # ── Writes ─────────────────────────────────────────

    def create_node(
        self,
        owner_id: str,
        kind: NodeKind | str,
        metadata: Any = None,
        parent_id: Optional[str] = None,
        *,
        node_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> TimelineNode:
        """Insert a node and its closure rows.

        Raises:
            InvalidParentError: ``parent_id`` is missing, owned by another
                user, disallowed for ``kind`` or too deep.
            ValidationError: bad owner id, kind or metadata.
        """
        if not owner_id:
            raise ValidationError("owner_id is required", field="owner_id")
        meta = parse_node_meta(kind, metadata)
        kind = NodeKind(kind)
        new_id = node_id or str(uuid.uuid4())

        with self._db.transaction(session, operation="create_node") as s:
            if node_id is not None and s.get(NodeRow, node_id) is not None:
                raise ValidationError(f"Node {node_id} already exists", node_id=node_id)
            if parent_id is not None:
                parent = s.get(NodeRow, parent_id)
                if parent is None or parent.owner_id != owner_id:
                    raise InvalidParentError(
                        f"Parent node {parent_id} does not exist or belongs to another user",
                        parent_id=parent_id,
                    )
                self._check_kind(parent.kind, kind)
                self._check_depth(s, parent_id, subtree_height=0)

            now = utc_now()
            row = NodeRow(
                id=new_id,
                owner_id=owner_id,
                kind=kind.value,
                meta=meta.model_dump(mode="json", exclude_none=True),
                parent_id=parent_id,
                created_at=now,
                updated_at=now,
            )
            s.add(row)
            s.flush()

            s.add(ClosureRow(ancestor_id=new_id, descendant_id=new_id, depth=0))
            if parent_id is not None:
                s.execute(
                    insert(ClosureRow).from_select(
                        ["ancestor_id", "descendant_id", "depth"],
                        select(ClosureRow.ancestor_id, literal(new_id), ClosureRow.depth + 1).where(
                            ClosureRow.descendant_id == parent_id
                        ),
                    )
                )
            s.flush()
            node = node_from_row(row)

        logger.info(
            "Node created: %s (%s) owner=%s parent=%s meta=%s",
            new_id,
            kind.value,
            owner_id,
            parent_id,
            safe_log_value(node.meta),
        )
        return node

    def update_node(self, node_id: str, metadata: Any, *, session: Optional[Session] = None) -> TimelineNode:
        """Replace a node's metadata. The kind cannot change."""
        with self._db.transaction(session, operation="update_node") as s:
            row = self._get_row(s, node_id)
            meta = parse_node_meta(row.kind, metadata)
            row.meta = meta.model_dump(mode="json", exclude_none=True)
            row.updated_at = utc_now()
            s.flush()
            node = node_from_row(row)

        logger.info("Node updated: %s", node_id)
        return node

    def move_node(
        self,
        node_id: str,
        new_parent_id: Optional[str],
        *,
        session: Optional[Session] = None,
    ) -> TimelineNode:
        """Re-parent a node (``None`` makes it a root), rewriting the closure
        for every node in its subtree.

        Raises:
            NotFoundError: ``node_id`` does not exist.
            CycleDetectedError: ``new_parent_id`` is the node or one of its descendants.
            InvalidParentError: new parent missing, owned by another user,
                disallowed kind or too deep.
        """
        with self._db.transaction(session, operation="move_node") as s:
            row = s.get(NodeRow, node_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Node {node_id} not found", node_id=node_id)
            old_parent_id = row.parent_id

            if new_parent_id is not None:
                if new_parent_id == node_id or self._is_descendant(s, node_id, new_parent_id):
                    raise CycleDetectedError(
                        f"Cannot move {node_id} under its own descendant {new_parent_id}",
                        node_id=node_id,
                        new_parent_id=new_parent_id,
                    )
                parent = s.get(NodeRow, new_parent_id)
                if parent is None or parent.owner_id != row.owner_id:
                    raise InvalidParentError(
                        f"Parent node {new_parent_id} does not exist or belongs to another user",
                        parent_id=new_parent_id,
                    )
                self._check_kind(parent.kind, row.kind)
                self._check_depth(s, new_parent_id, subtree_height=self._subtree_height(s, node_id))

            if new_parent_id == old_parent_id:
                return node_from_row(row)

            subtree = self._subtree_ids(s, node_id)

            # Detach: drop links from outside ancestors into the subtree
            s.execute(
                delete(ClosureRow)
                .where(ClosureRow.descendant_id.in_(subtree))
                .where(ClosureRow.ancestor_id.not_in(subtree))
            )

            # Attach: new ancestors × subtree
            if new_parent_id is not None:
                above = aliased(ClosureRow)
                below = aliased(ClosureRow)
                s.execute(
                    insert(ClosureRow).from_select(
                        ["ancestor_id", "descendant_id", "depth"],
                        select(
                            above.ancestor_id,
                            below.descendant_id,
                            above.depth + below.depth + 1,
                        ).where(above.descendant_id == new_parent_id, below.ancestor_id == node_id),
                    )
                )

            row.parent_id = new_parent_id
            row.updated_at = utc_now()
            s.flush()
            node = node_from_row(row)
            self._invalidate(s, subtree)

        logger.info(
            "Node moved: %s from %s to %s (%d nodes in subtree)",
            node_id,
            old_parent_id,
            new_parent_id,
            len(subtree),
        )
        return node

    def delete_node(self, node_id: str, *, session: Optional[Session] = None) -> list[str]:
        """Delete a node, all its descendants and their closure rows.

        Policies on the deleted nodes are dropped by the policy store (the
        service facade does both in one transaction).

        Returns:
            Ids of every deleted node, the node itself first.

        Raises:
            NotFoundError: ``node_id`` does not exist.
        """
        with self._db.transaction(session, operation="delete_node") as s:
            row = s.get(NodeRow, node_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Node {node_id} not found", node_id=node_id)

            subtree = self._subtree_ids(s, node_id)
            s.execute(delete(ClosureRow).where(ClosureRow.descendant_id.in_(subtree)))
            s.execute(delete(NodeRow).where(NodeRow.id.in_(subtree)))
            self._invalidate(s, subtree)

        logger.info("Node deleted: %s (cascade removed %d nodes)", node_id, len(subtree))
        return subtree

    # ── Reads ──────────────────────────────────────────

    def get_node(self, node_id: str, *, session: Optional[Session] = None) -> TimelineNode:
        with self._db.transaction(session, operation="get_node") as s:
            return node_from_row(self._get_row(s, node_id))

    def get_nodes(self, node_ids: Iterable[str], *, session: Optional[Session] = None) -> dict[str, TimelineNode]:
        """Fetch many nodes in one query. Missing ids are absent from the result."""
        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return {}
        with self._db.transaction(session, operation="get_nodes") as s:
            rows = s.execute(select(NodeRow).where(NodeRow.id.in_(ids))).scalars().all()
            return {row.id: node_from_row(row) for row in rows}

    def exists(self, node_id: str, *, session: Optional[Session] = None) -> bool:
        with self._db.transaction(session, operation="exists") as s:
            return s.get(NodeRow, node_id) is not None

    def get_ancestors(self, node_id: str, *, session: Optional[Session] = None) -> list[TimelineNode]:
        """Ancestors nearest first (parent, grandparent, ..., root)."""
        with self._db.transaction(session, operation="get_ancestors") as s:
            self._get_row(s, node_id)
            rows = s.execute(
                select(NodeRow)
                .join(ClosureRow, ClosureRow.ancestor_id == NodeRow.id)
                .where(ClosureRow.descendant_id == node_id, ClosureRow.depth > 0)
                .order_by(ClosureRow.depth)
            ).scalars().all()
            return [node_from_row(r) for r in rows]

    def get_path(self, node_id: str, *, session: Optional[Session] = None) -> list[TimelineNode]:
        """Root-first path ending at the node itself."""
        with self._db.transaction(session, operation="get_path") as s:
            self._get_row(s, node_id)
            rows = s.execute(
                select(NodeRow)
                .join(ClosureRow, ClosureRow.ancestor_id == NodeRow.id)
                .where(ClosureRow.descendant_id == node_id)
                .order_by(ClosureRow.depth.desc())
            ).scalars().all()
            return [node_from_row(r) for r in rows]

    def get_descendants(
        self,
        node_id: str,
        *,
        include_self: bool = True,
        max_depth: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> list[TimelineNode]:
        """Descendants ordered by depth then creation time."""
        with self._db.transaction(session, operation="get_descendants") as s:
            self._get_row(s, node_id)
            stmt = (
                select(NodeRow)
                .join(ClosureRow, ClosureRow.descendant_id == NodeRow.id)
                .where(ClosureRow.ancestor_id == node_id)
            )
            if not include_self:
                stmt = stmt.where(ClosureRow.depth > 0)
            if max_depth is not None:
                stmt = stmt.where(ClosureRow.depth <= max_depth)
            rows = s.execute(stmt.order_by(ClosureRow.depth, NodeRow.created_at, NodeRow.id)).scalars().all()
            return [node_from_row(r) for r in rows]

    def get_children(self, node_id: str, *, session: Optional[Session] = None) -> list[TimelineNode]:
        with self._db.transaction(session, operation="get_children") as s:
            self._get_row(s, node_id)
            rows = s.execute(
                select(NodeRow)
                .join(ClosureRow, ClosureRow.descendant_id == NodeRow.id)
                .where(ClosureRow.ancestor_id == node_id, ClosureRow.depth == 1)
                .order_by(NodeRow.created_at, NodeRow.id)
            ).scalars().all()
            return [node_from_row(r) for r in rows]

    def list_by_owner(self, owner_id: str, *, session: Optional[Session] = None) -> list[TimelineNode]:
        """All nodes of one owner in creation order."""
        with self._db.transaction(session, operation="list_by_owner") as s:
            rows = s.execute(
                select(NodeRow).where(NodeRow.owner_id == owner_id).order_by(NodeRow.created_at, NodeRow.id)
            ).scalars().all()
            return [node_from_row(r) for r in rows]

    def get_roots(self, owner_id: str, *, session: Optional[Session] = None) -> list[TimelineNode]:
        with self._db.transaction(session, operation="get_roots") as s:
            rows = s.execute(
                select(NodeRow)
                .where(NodeRow.owner_id == owner_id, NodeRow.parent_id.is_(None))
                .order_by(NodeRow.created_at, NodeRow.id)
            ).scalars().all()
            return [node_from_row(r) for r in rows]

    def get_depth(self, node_id: str, *, session: Optional[Session] = None) -> int:
        """Distance from the node's root (roots are 0)."""
        with self._db.transaction(session, operation="get_depth") as s:
            self._get_row(s, node_id)
            return self._depth(s, node_id)

    def closure_entries(
        self,
        *,
        node_ids: Optional[Sequence[str]] = None,
        session: Optional[Session] = None,
    ) -> list[ClosureEntry]:
        """Raw closure rows whose descendant is in ``node_ids`` (all rows if None)."""
        with self._db.transaction(session, operation="closure_entries") as s:
            stmt = select(ClosureRow)
            if node_ids is not None:
                stmt = stmt.where(ClosureRow.descendant_id.in_(list(node_ids)))
            rows = s.execute(stmt.order_by(ClosureRow.descendant_id, ClosureRow.depth)).scalars().all()
            return [
                ClosureEntry(ancestor_id=r.ancestor_id, descendant_id=r.descendant_id, depth=r.depth)
                for r in rows
            ]

    def owner_of(self, node_id: str, *, session: Optional[Session] = None) -> str:
        with self._db.transaction(session, operation="owner_of") as s:
            owner = s.execute(select(NodeRow.owner_id).where(NodeRow.id == node_id)).scalar_one_or_none()
            if owner is None:
                raise NotFoundError(f"Node {node_id} not found", node_id=node_id)
            return owner

    # ── Diagnostics ────────────────────────────────────

    def hierarchy_stats(self, owner_id: str, *, session: Optional[Session] = None) -> HierarchyStats:
        with self._db.transaction(session, operation="hierarchy_stats") as s:
            return diagnostics.hierarchy_stats(s, owner_id)

    def verify_integrity(self, owner_id: str, *, session: Optional[Session] = None) -> IntegrityReport:
        """Diff the stored closure for ``owner_id`` against its parent pointers."""
        with self._db.transaction(session, operation="verify_integrity") as s:
            report = diagnostics.verify_integrity(s, owner_id)
        if not report.ok:
            logger.warning(
                "Closure integrity check failed for owner %s: %d missing, %d extra, %d wrong depth, %d orphaned",
                owner_id,
                len(report.missing),
                len(report.extra),
                len(report.wrong_depth),
                len(report.orphaned_parents),
            )
        return report

    def validate_moves(
        self,
        changes: Iterable[tuple[str, Optional[str]]],
        *,
        session: Optional[Session] = None,
    ) -> MoveValidation:
        with self._db.transaction(session, operation="validate_moves") as s:
            return diagnostics.validate_moves(s, changes)

    # ── Internals ──────────────────────────────────────

    @staticmethod
    def _get_row(s: Session, node_id: str) -> NodeRow:
        row = s.get(NodeRow, node_id)
        if row is None:
            raise NotFoundError(f"Node {node_id} not found", node_id=node_id)
        return row

    @staticmethod
    def _subtree_ids(s: Session, node_id: str) -> list[str]:
        return list(
            s.execute(
                select(ClosureRow.descendant_id)
                .where(ClosureRow.ancestor_id == node_id)
                .order_by(ClosureRow.depth)
            ).scalars()
        )

    @staticmethod
    def _is_descendant(s: Session, ancestor_id: str, node_id: str) -> bool:
        return (
            s.execute(
                select(ClosureRow.depth).where(
                    ClosureRow.ancestor_id == ancestor_id,
                    ClosureRow.descendant_id == node_id,
                )
            ).first()
            is not None
        )

    @staticmethod
    def _depth(s: Session, node_id: str) -> int:
        return s.execute(
            select(func.coalesce(func.max(ClosureRow.depth), 0)).where(ClosureRow.descendant_id == node_id)
        ).scalar_one()

    @staticmethod
    def _subtree_height(s: Session, node_id: str) -> int:
        return s.execute(
            select(func.coalesce(func.max(ClosureRow.depth), 0)).where(ClosureRow.ancestor_id == node_id)
        ).scalar_one()

    def _check_kind(self, parent_kind: str, child_kind: NodeKind | str) -> None:
        if self.enforce_kind_rules and not can_contain(parent_kind, child_kind):
            raise InvalidParentError(
                f"A {NodeKind(child_kind).value} node cannot be a child of a {parent_kind} node",
                parent_kind=parent_kind,
                child_kind=NodeKind(child_kind).value,
            )

    def _check_depth(self, s: Session, parent_id: str, subtree_height: int) -> None:
        if not self.max_depth:
            return
        depth = self._depth(s, parent_id) + 1 + subtree_height
        if depth > self.max_depth:
            raise InvalidParentError(
                f"Hierarchy would reach depth {depth}, limit is {self.max_depth}",
                parent_id=parent_id,
                depth=depth,
            )

    def _invalidate(self, s: Session, node_ids: list[str]) -> None:
        if self._cache is None or not node_ids:
            return
        cache = self._cache
        cache.invalidate_nodes(node_ids)
        Database.after_commit(s, lambda: cache.invalidate_nodes(node_ids))


__all__ = ["HierarchyStore", "node_from_row"]
