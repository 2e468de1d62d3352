"""Parent/child kind rules for the timeline hierarchy.

Provides:
- ``ALLOWED_CHILDREN``: parent kind to the kinds it may contain.
- ``can_contain()``: check one parent/child pairing.

Only enforced when ``TimelineConfig.enforce_kind_rules`` is on; the store
otherwise accepts any pairing.
"""

from __future__ import annotations

from ..models import NodeKind

# Parent kind → child kinds. Projects are always leaves.
ALLOWED_CHILDREN: dict[NodeKind, frozenset[NodeKind]] = {
    NodeKind.JOB: frozenset({NodeKind.PROJECT, NodeKind.EVENT, NodeKind.ACTION}),
    NodeKind.EDUCATION: frozenset({NodeKind.PROJECT, NodeKind.EVENT, NodeKind.ACTION}),
    NodeKind.TRANSITION: frozenset({NodeKind.ACTION, NodeKind.EVENT, NodeKind.PROJECT}),
    NodeKind.EVENT: frozenset({NodeKind.PROJECT, NodeKind.ACTION}),
    NodeKind.ACTION: frozenset({NodeKind.PROJECT}),
    NodeKind.PROJECT: frozenset(),
}


def can_contain(parent_kind: NodeKind | str, child_kind: NodeKind | str) -> bool:
    """Check whether a ``child_kind`` node may sit directly under ``parent_kind``.

    Example::

        can_contain(NodeKind.JOB, NodeKind.PROJECT)      # True
        can_contain(NodeKind.PROJECT, NodeKind.ACTION)   # False
    """
    return NodeKind(child_kind) in ALLOWED_CHILDREN.get(NodeKind(parent_kind), frozenset())


__all__ = ["ALLOWED_CHILDREN", "can_contain"]
