"""Per-node access policies.

A policy grants (Allow) or withholds (Deny) one visibility level to one
subject on one node. Expired rows stay in the table until ``sweep_expired()``
removes them, but no read path ever returns them.

Every write drops the cached decisions of the nodes it touches before it
returns, and again once the transaction commits.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from ..exceptions import NotFoundError, ValidationError
from ..models import (
    EffectivePermissions,
    NodePolicy,
    PermissionAction,
    PolicyEffect,
    PolicySpec,
    SubjectType,
    VisibilityLevel,
    utc_now,
)
from ..storage import Database, NodeRow, PolicyRow

if TYPE_CHECKING:
    from .cache import PermissionCache

logger = logging.getLogger(__name__)


def policy_from_row(row: PolicyRow) -> NodePolicy:
    return NodePolicy(
        id=row.id,
        node_id=row.node_id,
        subject_type=SubjectType(row.subject_type),
        subject_id=row.subject_id,
        action=PermissionAction(row.action),
        level=VisibilityLevel(row.level),
        effect=PolicyEffect(row.effect),
        expires_at=row.expires_at,
        created_by=row.created_by,
        created_at=row.created_at,
    )


def parse_policy(value: PolicySpec | Mapping[str, Any]) -> PolicySpec:
    """Validate one caller-supplied policy.

    Raises:
        ValidationError: subject type/id mismatch, unknown enum value, or a
            non-view action.
    """
    if isinstance(value, PolicySpec):
        return value
    try:
        return PolicySpec.model_validate(value)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid policy: {e.errors()[0]['msg']}",
            errors=[{"loc": err["loc"], "msg": err["msg"]} for err in e.errors()],
        ) from e


def _not_expired(now: datetime):
    return or_(PolicyRow.expires_at.is_(None), PolicyRow.expires_at > now)


class PolicyStore:
    """Storage for node policies.

    Args:
        database: Shared Database.
        cache: Optional permission cache to invalidate on writes.
    """

    def __init__(self, database: Database, *, cache: Optional["PermissionCache"] = None) -> None:
        self._db = database
        self._cache = cache

    # ── Writes ─────────────────────────────────────────

    def set_policies(
        self,
        node_id: str,
        policies: Iterable[PolicySpec | Mapping[str, Any]],
        created_by: str,
        *,
        replace: bool = True,
        session: Optional[Session] = None,
    ) -> list[NodePolicy]:
        """Attach ``policies`` to ``node_id``.

        Every policy is validated before anything is written. With
        ``replace=True`` the node's existing rows are removed first, so an
        empty list clears the node's sharing.

        Raises:
            ValidationError: a policy is malformed.
            NotFoundError: ``node_id`` does not exist.
        """
        specs = [parse_policy(p) for p in policies]

        with self._db.transaction(session, operation="set_policies") as s:
            if s.get(NodeRow, node_id) is None:
                raise NotFoundError(f"Node {node_id} not found", node_id=node_id)
            if replace:
                s.execute(delete(PolicyRow).where(PolicyRow.node_id == node_id))

            now = utc_now()
            rows = [
                PolicyRow(
                    id=str(uuid.uuid4()),
                    node_id=node_id,
                    subject_type=spec.subject_type.value,
                    subject_id=spec.subject_id,
                    action=spec.action.value,
                    level=spec.level.value,
                    effect=spec.effect.value,
                    expires_at=spec.expires_at,
                    created_by=created_by,
                    created_at=now,
                )
                for spec in specs
            ]
            s.add_all(rows)
            s.flush()
            stored = [policy_from_row(r) for r in rows]
            self._invalidate(s, [node_id])

        logger.info(
            "Policies %s on node %s: %d rows by %s",
            "replaced" if replace else "added",
            node_id,
            len(stored),
            created_by,
        )
        return stored

    def delete_policy(self, node_id: str, policy_id: str, *, session: Optional[Session] = None) -> None:
        """Remove one policy from a node.

        Raises:
            NotFoundError: no policy ``policy_id`` on ``node_id``.
        """
        with self._db.transaction(session, operation="delete_policy") as s:
            result = s.execute(delete(PolicyRow).where(PolicyRow.id == policy_id, PolicyRow.node_id == node_id))
            if result.rowcount == 0:
                raise NotFoundError(
                    f"Policy {policy_id} not found on node {node_id}",
                    node_id=node_id,
                    policy_id=policy_id,
                )
            self._invalidate(s, [node_id])

        logger.info("Policy deleted: %s from node %s", policy_id, node_id)

    def delete_all_for_node(self, node_id: str, *, session: Optional[Session] = None) -> int:
        return self.delete_all_for_nodes([node_id], session=session)

    def delete_all_for_nodes(self, node_ids: Iterable[str], *, session: Optional[Session] = None) -> int:
        """Remove every policy on ``node_ids``. Returns the number of rows deleted."""
        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return 0
        with self._db.transaction(session, operation="delete_all_for_nodes") as s:
            count = s.execute(delete(PolicyRow).where(PolicyRow.node_id.in_(ids))).rowcount
            self._invalidate(s, ids)

        if count:
            logger.info("Policies deleted: %d rows on %d nodes", count, len(ids))
        return count

    def delete_policies_for_subject(
        self,
        subject_type: SubjectType | str,
        subject_id: Optional[str],
        *,
        session: Optional[Session] = None,
    ) -> int:
        """Remove every policy naming this subject on any node."""
        try:
            subject_type = SubjectType(subject_type)
        except ValueError:
            raise ValidationError(f"Unknown subject type: {subject_type!r}", field="subject_type") from None

        criteria = [PolicyRow.subject_type == subject_type.value]
        if subject_type == SubjectType.PUBLIC:
            criteria.append(PolicyRow.subject_id.is_(None))
        else:
            criteria.append(PolicyRow.subject_id == subject_id)

        with self._db.transaction(session, operation="delete_policies_for_subject") as s:
            node_ids = list(s.execute(select(PolicyRow.node_id).where(*criteria).distinct()).scalars())
            count = s.execute(delete(PolicyRow).where(*criteria)).rowcount
            self._invalidate(s, node_ids)

        logger.info("Policies deleted for %s %s: %d rows", subject_type.value, subject_id, count)
        return count

    def sweep_expired(self, now: Optional[datetime] = None, *, session: Optional[Session] = None) -> int:
        """Physically delete expired policies. Returns the number removed."""
        now = now or utc_now()
        expired = (PolicyRow.expires_at.is_not(None), PolicyRow.expires_at <= now)
        with self._db.transaction(session, operation="sweep_expired") as s:
            node_ids = list(s.execute(select(PolicyRow.node_id).where(*expired).distinct()).scalars())
            count = s.execute(delete(PolicyRow).where(*expired)).rowcount
            self._invalidate(s, node_ids)

        if count:
            logger.info("Expired policies swept: %d rows on %d nodes", count, len(node_ids))
        return count

    # ── Reads ──────────────────────────────────────────

    def get_policies(
        self,
        node_id: str,
        *,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> list[NodePolicy]:
        """Unexpired policies on ``node_id`` in creation order."""
        now = now or utc_now()
        with self._db.transaction(session, operation="get_policies") as s:
            rows = s.execute(
                select(PolicyRow)
                .where(PolicyRow.node_id == node_id, _not_expired(now))
                .order_by(PolicyRow.created_at, PolicyRow.id)
            ).scalars().all()
            return [policy_from_row(r) for r in rows]

    def get_policies_for_nodes(
        self,
        node_ids: Iterable[str],
        *,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> dict[str, list[NodePolicy]]:
        """Unexpired policies for many nodes in one query.

        Every requested id is a key of the result, mapped to an empty list
        when it has no policies.
        """
        ids = list(dict.fromkeys(node_ids))
        result: dict[str, list[NodePolicy]] = defaultdict(list)
        if not ids:
            return {}
        now = now or utc_now()
        with self._db.transaction(session, operation="get_policies_for_nodes") as s:
            rows = s.execute(
                select(PolicyRow)
                .where(PolicyRow.node_id.in_(ids), _not_expired(now))
                .order_by(PolicyRow.created_at, PolicyRow.id)
            ).scalars().all()
            for row in rows:
                result[row.node_id].append(policy_from_row(row))
        return {node_id: result.get(node_id, []) for node_id in ids}

    def get_policy(self, policy_id: str, *, session: Optional[Session] = None) -> NodePolicy:
        """Fetch one policy by id, expired or not."""
        with self._db.transaction(session, operation="get_policy") as s:
            row = s.get(PolicyRow, policy_id)
            if row is None:
                raise NotFoundError(f"Policy {policy_id} not found", policy_id=policy_id)
            return policy_from_row(row)

    def effective_permissions(
        self,
        node_id: str,
        *,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> EffectivePermissions:
        """Best unexpired Allow level per audience on ``node_id``.

        Subjects with a matching Deny are left out of their audience.
        """
        summary = EffectivePermissions()
        policies = self.get_policies(node_id, now=now, session=session)
        denied = {(p.subject_type, p.subject_id) for p in policies if p.effect == PolicyEffect.DENY}

        for p in policies:
            if p.effect != PolicyEffect.ALLOW or (p.subject_type, p.subject_id) in denied:
                continue
            if p.subject_type == SubjectType.PUBLIC:
                if summary.public is None or p.level > summary.public:
                    summary.public = p.level
                continue
            audience = summary.users if p.subject_type == SubjectType.USER else summary.organizations
            current = audience.get(p.subject_id)
            if current is None or p.level > current:
                audience[p.subject_id] = p.level
        return summary

    # ── Internals ──────────────────────────────────────

    def _invalidate(self, s: Session, node_ids: list[str]) -> None:
        if self._cache is None or not node_ids:
            return
        cache = self._cache
        cache.invalidate_nodes(node_ids)
        Database.after_commit(s, lambda: cache.invalidate_nodes(node_ids))


__all__ = ["PolicyStore", "parse_policy", "policy_from_row"]
