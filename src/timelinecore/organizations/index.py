"""Organization registry and membership index.

Organizations are unique by (name, type); creating one that already exists
returns the stored row. Membership answers "is user U in org O", which the
resolver needs for every organization-subject policy.

Membership changes drop the member's cached decisions, and deleting an
organization also drops every policy that targets it.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import NotFoundError, StoreError, ValidationError
from ..models import (
    Organization,
    OrganizationType,
    OrgMember,
    OrgRole,
    SubjectType,
    utc_now,
)
from ..storage import Database, OrganizationRow, OrgMemberRow, PolicyRow

if TYPE_CHECKING:
    from ..permissions.cache import PermissionCache

logger = logging.getLogger(__name__)


def _org_type(value: OrganizationType | str) -> OrganizationType:
    try:
        return OrganizationType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown organization type: {value!r}",
            field="type",
            allowed=[t.value for t in OrganizationType],
        ) from None


def _role(value: OrgRole | str) -> OrgRole:
    try:
        return OrgRole(value)
    except ValueError:
        raise ValidationError(
            f"Unknown member role: {value!r}",
            field="role",
            allowed=[r.value for r in OrgRole],
        ) from None


def organization_from_row(row: OrganizationRow) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        type=OrganizationType(row.type),
        metadata=dict(row.meta or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def member_from_row(row: OrgMemberRow) -> OrgMember:
    return OrgMember(org_id=row.org_id, user_id=row.user_id, role=OrgRole(row.role), joined_at=row.joined_at)


class OrganizationIndex:
    """Organizations and their members.

    Args:
        database: Shared Database.
        cache: Optional permission cache to invalidate on membership changes.
    """

    def __init__(self, database: Database, *, cache: Optional["PermissionCache"] = None) -> None:
        self._db = database
        self._cache = cache

    # ── Organizations ──────────────────────────────────

    def create_organization(
        self,
        name: str,
        type: OrganizationType | str,
        metadata: Optional[dict[str, Any]] = None,
        *,
        session: Optional[Session] = None,
    ) -> Organization:
        """Create an organization, or return the existing one with the same (name, type).

        An existing organization is returned unchanged; ``metadata`` is ignored
        in that case.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Organization name is required", field="name")
        org_type = _org_type(type)

        try:
            with self._db.transaction(session, operation="create_organization") as s:
                existing = self._find_row(s, name, org_type)
                if existing is not None:
                    return organization_from_row(existing)

                now = utc_now()
                row = OrganizationRow(
                    id=str(uuid.uuid4()),
                    name=name,
                    type=org_type.value,
                    meta=dict(metadata or {}),
                    created_at=now,
                    updated_at=now,
                )
                s.add(row)
                s.flush()
                org = organization_from_row(row)
        except StoreError as e:
            # Lost a race with a concurrent create of the same (name, type)
            if session is not None or not isinstance(e.__cause__, IntegrityError):
                raise
            found = self.find_organization(name, org_type)
            if found is None:
                raise
            return found

        logger.info("Organization created: %s (%s, %s)", org.id, name, org_type.value)
        return org

    def get_organization(self, org_id: str, *, session: Optional[Session] = None) -> Organization:
        with self._db.transaction(session, operation="get_organization") as s:
            return organization_from_row(self._get_row(s, org_id))

    def find_organization(
        self,
        name: str,
        type: OrganizationType | str,
        *,
        session: Optional[Session] = None,
    ) -> Optional[Organization]:
        org_type = _org_type(type)
        with self._db.transaction(session, operation="find_organization") as s:
            row = self._find_row(s, (name or "").strip(), org_type)
            return organization_from_row(row) if row is not None else None

    def update_organization(
        self,
        org_id: str,
        *,
        name: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        session: Optional[Session] = None,
    ) -> Organization:
        """Rename an organization and/or replace its metadata.

        Raises:
            NotFoundError: unknown ``org_id``.
            ValidationError: another organization of the same type has ``name``.
        """
        with self._db.transaction(session, operation="update_organization") as s:
            row = self._get_row(s, org_id)
            if name is not None:
                name = name.strip()
                if not name:
                    raise ValidationError("Organization name is required", field="name")
                clash = self._find_row(s, name, OrganizationType(row.type))
                if clash is not None and clash.id != org_id:
                    raise ValidationError(
                        f"An organization named {name!r} of type {row.type} already exists",
                        field="name",
                        existing_id=clash.id,
                    )
                row.name = name
            if metadata is not None:
                row.meta = dict(metadata)
            row.updated_at = utc_now()
            s.flush()
            org = organization_from_row(row)

        logger.info("Organization updated: %s", org_id)
        return org

    def delete_organization(self, org_id: str, *, session: Optional[Session] = None) -> None:
        """Delete an organization, its memberships and every policy targeting it."""
        with self._db.transaction(session, operation="delete_organization") as s:
            self._get_row(s, org_id)
            members = list(s.execute(select(OrgMemberRow.user_id).where(OrgMemberRow.org_id == org_id)).scalars())
            policy_filter = (
                PolicyRow.subject_type == SubjectType.ORGANIZATION.value,
                PolicyRow.subject_id == org_id,
            )
            node_ids = list(s.execute(select(PolicyRow.node_id).where(*policy_filter).distinct()).scalars())
            s.execute(delete(PolicyRow).where(*policy_filter))
            s.execute(delete(OrgMemberRow).where(OrgMemberRow.org_id == org_id))
            s.execute(delete(OrganizationRow).where(OrganizationRow.id == org_id))
            self._invalidate(s, subjects=members, node_ids=node_ids)

        logger.info(
            "Organization deleted: %s (%d members, %d nodes with policies)",
            org_id,
            len(members),
            len(node_ids),
        )

    def search_organizations(
        self,
        query: str,
        type: Optional[OrganizationType | str] = None,
        *,
        limit: int = 20,
        session: Optional[Session] = None,
    ) -> list[Organization]:
        """Case-insensitive name search; prefix matches sort before substring matches."""
        needle = (query or "").strip().lower()
        with self._db.transaction(session, operation="search_organizations") as s:
            stmt = select(OrganizationRow)
            if needle:
                stmt = stmt.where(OrganizationRow.name.icontains(needle, autoescape=True))
            if type is not None:
                stmt = stmt.where(OrganizationRow.type == _org_type(type).value)
            rows = s.execute(stmt.order_by(OrganizationRow.name, OrganizationRow.id)).scalars().all()
            rows = sorted(rows, key=lambda r: not r.name.lower().startswith(needle))
            return [organization_from_row(r) for r in rows[:limit]]

    # ── Membership ─────────────────────────────────────

    def add_member(
        self,
        org_id: str,
        user_id: str,
        role: OrgRole | str = OrgRole.MEMBER,
        *,
        session: Optional[Session] = None,
    ) -> OrgMember:
        """Add ``user_id`` to ``org_id``. Re-adding an existing member updates the role.

        Raises:
            NotFoundError: unknown organization or empty user id.
        """
        member_role = _role(role)
        if not user_id:
            raise NotFoundError("User id is required for membership", org_id=org_id)
        with self._db.transaction(session, operation="add_member") as s:
            self._get_row(s, org_id)
            row = s.get(OrgMemberRow, (org_id, user_id))
            if row is None:
                row = OrgMemberRow(org_id=org_id, user_id=user_id, role=member_role.value, joined_at=utc_now())
                s.add(row)
            else:
                row.role = member_role.value
            s.flush()
            member = member_from_row(row)
            self._invalidate(s, subjects=[user_id])

        logger.info("Member added: user=%s org=%s role=%s", user_id, org_id, member_role.value)
        return member

    def remove_member(self, org_id: str, user_id: str, *, session: Optional[Session] = None) -> None:
        with self._db.transaction(session, operation="remove_member") as s:
            row = s.get(OrgMemberRow, (org_id, user_id))
            if row is None:
                raise NotFoundError(
                    f"User {user_id} is not a member of organization {org_id}",
                    org_id=org_id,
                    user_id=user_id,
                )
            s.delete(row)
            s.flush()
            self._invalidate(s, subjects=[user_id])

        logger.info("Member removed: user=%s org=%s", user_id, org_id)

    def update_member_role(
        self,
        org_id: str,
        user_id: str,
        role: OrgRole | str,
        *,
        session: Optional[Session] = None,
    ) -> OrgMember:
        member_role = _role(role)
        with self._db.transaction(session, operation="update_member_role") as s:
            row = s.get(OrgMemberRow, (org_id, user_id))
            if row is None:
                raise NotFoundError(
                    f"User {user_id} is not a member of organization {org_id}",
                    org_id=org_id,
                    user_id=user_id,
                )
            row.role = member_role.value
            s.flush()
            member = member_from_row(row)

        logger.info("Member role changed: user=%s org=%s role=%s", user_id, org_id, member_role.value)
        return member

    def is_member(self, user_id: str, org_id: str, *, session: Optional[Session] = None) -> bool:
        if not user_id:
            return False
        with self._db.transaction(session, operation="is_member") as s:
            return s.get(OrgMemberRow, (org_id, user_id)) is not None

    def list_members(self, org_id: str, *, session: Optional[Session] = None) -> list[OrgMember]:
        with self._db.transaction(session, operation="list_members") as s:
            self._get_row(s, org_id)
            rows = s.execute(
                select(OrgMemberRow)
                .where(OrgMemberRow.org_id == org_id)
                .order_by(OrgMemberRow.joined_at, OrgMemberRow.user_id)
            ).scalars().all()
            return [member_from_row(r) for r in rows]

    def list_organizations_for_user(self, user_id: str, *, session: Optional[Session] = None) -> list[Organization]:
        with self._db.transaction(session, operation="list_organizations_for_user") as s:
            rows = s.execute(
                select(OrganizationRow)
                .join(OrgMemberRow, OrgMemberRow.org_id == OrganizationRow.id)
                .where(OrgMemberRow.user_id == user_id)
                .order_by(OrganizationRow.name, OrganizationRow.id)
            ).scalars().all()
            return [organization_from_row(r) for r in rows]

    def organization_ids_for_user(
        self,
        user_id: Optional[str],
        *,
        session: Optional[Session] = None,
    ) -> frozenset[str]:
        """Ids of every organization ``user_id`` belongs to (empty for anonymous)."""
        if not user_id:
            return frozenset()
        with self._db.transaction(session, operation="organization_ids_for_user") as s:
            return frozenset(
                s.execute(select(OrgMemberRow.org_id).where(OrgMemberRow.user_id == user_id)).scalars()
            )

    # ── Internals ──────────────────────────────────────

    @staticmethod
    def _find_row(s: Session, name: str, org_type: OrganizationType) -> Optional[OrganizationRow]:
        return s.execute(
            select(OrganizationRow).where(
                OrganizationRow.name == name,
                OrganizationRow.type == org_type.value,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _get_row(s: Session, org_id: str) -> OrganizationRow:
        row = s.get(OrganizationRow, org_id)
        if row is None:
            raise NotFoundError(f"Organization {org_id} not found", org_id=org_id)
        return row

    def _invalidate(
        self,
        s: Session,
        *,
        subjects: Iterable[str] = (),
        node_ids: Iterable[str] = (),
    ) -> None:
        if self._cache is None:
            return
        cache = self._cache
        subjects, node_ids = list(subjects), list(node_ids)

        def drop() -> None:
            if subjects:
                cache.invalidate_subjects(subjects)
            if node_ids:
                cache.invalidate_nodes(node_ids)

        drop()
        Database.after_commit(s, drop)


__all__ = ["OrganizationIndex", "member_from_row", "organization_from_row"]
