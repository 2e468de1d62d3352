"""Read-only diagnostics over one owner's hierarchy.

- ``hierarchy_stats()``: node counts and depth, read from the closure table.
- ``verify_integrity()``: rebuild the closure from parent ids and diff it
  against the stored rows.
- ``validate_moves()``: dry-run a batch of re-parent requests.

All functions take an open session; HierarchyStore wraps them in a
transaction.
"""

from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models import ClosureEntry, HierarchyStats, IntegrityReport, MoveValidation
from ..storage import ClosureRow, NodeRow


def hierarchy_stats(s: Session, owner_id: str) -> HierarchyStats:
    by_kind = dict(
        s.execute(
            select(NodeRow.kind, func.count(NodeRow.id)).where(NodeRow.owner_id == owner_id).group_by(NodeRow.kind)
        ).all()
    )
    roots = s.execute(
        select(func.count(NodeRow.id)).where(NodeRow.owner_id == owner_id, NodeRow.parent_id.is_(None))
    ).scalar_one()
    max_depth = s.execute(
        select(func.coalesce(func.max(ClosureRow.depth), 0))
        .join(NodeRow, NodeRow.id == ClosureRow.descendant_id)
        .where(NodeRow.owner_id == owner_id)
    ).scalar_one()
    return HierarchyStats(
        total_nodes=sum(by_kind.values()),
        nodes_by_kind=by_kind,
        root_nodes=roots,
        max_depth=max_depth,
    )


def _expected_closure(parents: dict[str, Optional[str]]) -> dict[tuple[str, str], int]:
    expected: dict[tuple[str, str], int] = {}
    for node_id in parents:
        current: Optional[str] = node_id
        depth = 0
        seen: set[str] = set()
        while current is not None and current in parents and current not in seen:
            seen.add(current)
            expected[(current, node_id)] = depth
            current = parents[current]
            depth += 1
    return expected


def verify_integrity(s: Session, owner_id: str) -> IntegrityReport:
    """Compare stored closure rows for ``owner_id`` with the ones implied by parent ids."""
    parents: dict[str, Optional[str]] = dict(
        s.execute(select(NodeRow.id, NodeRow.parent_id).where(NodeRow.owner_id == owner_id)).all()
    )
    report = IntegrityReport()
    report.orphaned_parents = sorted(n for n, p in parents.items() if p is not None and p not in parents)

    expected = _expected_closure(parents)
    stored: dict[tuple[str, str], int] = {}
    if parents:
        rows = s.execute(
            select(ClosureRow.ancestor_id, ClosureRow.descendant_id, ClosureRow.depth).where(
                ClosureRow.descendant_id.in_(list(parents))
            )
        ).all()
        stored = {(a, d): depth for a, d, depth in rows}

    for (ancestor, descendant), depth in sorted(expected.items()):
        entry = ClosureEntry(ancestor_id=ancestor, descendant_id=descendant, depth=depth)
        if (ancestor, descendant) not in stored:
            report.missing.append(entry)
        elif stored[(ancestor, descendant)] != depth:
            report.wrong_depth.append(entry)
    for (ancestor, descendant), depth in sorted(stored.items()):
        if (ancestor, descendant) not in expected:
            report.extra.append(ClosureEntry(ancestor_id=ancestor, descendant_id=descendant, depth=depth))
    return report


def validate_moves(s: Session, changes: Iterable[tuple[str, Optional[str]]]) -> MoveValidation:
    """Check a batch of ``(node_id, new_parent_id)`` moves without writing.

    Moves are applied in order to a simulated parent map, so a later move may
    depend on an earlier one.
    """
    changes = list(changes)
    result = MoveValidation()
    referenced = {n for n, _ in changes} | {p for _, p in changes if p is not None}
    known = dict(
        (row.id, row.owner_id)
        for row in s.execute(select(NodeRow.id, NodeRow.owner_id).where(NodeRow.id.in_(list(referenced)))).all()
    )
    owners = set(known.values())
    parents: dict[str, Optional[str]] = {}
    if owners:
        parents = dict(
            s.execute(select(NodeRow.id, NodeRow.parent_id).where(NodeRow.owner_id.in_(list(owners)))).all()
        )

    seen: set[str] = set()
    for node_id, new_parent_id in changes:
        if node_id in seen:
            result.errors.append(f"Duplicate move for node {node_id}")
            continue
        seen.add(node_id)
        if node_id not in known:
            result.errors.append(f"Node {node_id} not found")
            continue
        if new_parent_id is not None:
            if new_parent_id not in known:
                result.errors.append(f"Parent node {new_parent_id} not found")
                continue
            if known[new_parent_id] != known[node_id]:
                result.errors.append(f"Parent node {new_parent_id} belongs to another user")
                continue
            if _creates_cycle(parents, node_id, new_parent_id):
                result.errors.append(f"Moving {node_id} under {new_parent_id} would create a cycle")
                continue
        parents[node_id] = new_parent_id

    result.is_valid = not result.errors
    return result


def _creates_cycle(parents: dict[str, Optional[str]], node_id: str, new_parent_id: str) -> bool:
    current: Optional[str] = new_parent_id
    visited: set[str] = set()
    while current is not None and current not in visited:
        if current == node_id:
            return True
        visited.add(current)
        current = parents.get(current)
    return False


__all__ = ["hierarchy_stats", "validate_moves", "verify_integrity"]
