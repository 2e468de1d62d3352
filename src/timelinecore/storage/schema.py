"""SQLAlchemy table definitions.

Five tables back the core: nodes, the ancestor/descendant closure, node
policies, organizations and organization members. Enumerations are stored as
their string values so the schema is portable between SQLite and Postgres.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()

ID_LENGTH = 64


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    Values are written as naive UTC and read back with ``tzinfo=UTC``, so
    expiry comparisons behave the same on SQLite (no timezone support) and
    Postgres.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class NodeRow(Base):
    __tablename__ = "timeline_nodes"
    __table_args__ = (
        Index("ix_timeline_nodes_owner_id", "owner_id"),
        Index("ix_timeline_nodes_parent_id", "parent_id"),
        Index("ix_timeline_nodes_owner_kind", "owner_id", "kind"),
    )

    id = Column(String(ID_LENGTH), primary_key=True)
    owner_id = Column(String(ID_LENGTH), nullable=False)
    kind = Column(String(32), nullable=False)
    meta = Column(JSON, nullable=False, default=dict)
    parent_id = Column(String(ID_LENGTH), ForeignKey("timeline_nodes.id", ondelete="CASCADE"), nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


class ClosureRow(Base):
    __tablename__ = "timeline_node_closure"
    __table_args__ = (
        PrimaryKeyConstraint("ancestor_id", "descendant_id", name="pk_timeline_node_closure"),
        Index("ix_timeline_node_closure_descendant", "descendant_id", "depth"),
    )

    ancestor_id = Column(String(ID_LENGTH), ForeignKey("timeline_nodes.id", ondelete="CASCADE"), nullable=False)
    descendant_id = Column(String(ID_LENGTH), ForeignKey("timeline_nodes.id", ondelete="CASCADE"), nullable=False)
    depth = Column(Integer, nullable=False, default=0)


class PolicyRow(Base):
    __tablename__ = "node_policies"
    __table_args__ = (
        Index("ix_node_policies_subject", "node_id", "subject_type", "subject_id"),
        Index("ix_node_policies_expires_at", "expires_at"),
    )

    id = Column(String(ID_LENGTH), primary_key=True)
    node_id = Column(String(ID_LENGTH), ForeignKey("timeline_nodes.id", ondelete="CASCADE"), nullable=False)
    subject_type = Column(String(32), nullable=False)
    subject_id = Column(String(ID_LENGTH), nullable=True)
    action = Column(String(32), nullable=False)
    level = Column(String(32), nullable=False)
    effect = Column(String(16), nullable=False)
    expires_at = Column(UTCDateTime, nullable=True)
    created_by = Column(String(ID_LENGTH), nullable=False)
    created_at = Column(UTCDateTime, nullable=False)


class OrganizationRow(Base):
    __tablename__ = "organizations"
    __table_args__ = (UniqueConstraint("name", "type", name="uq_organizations_name_type"),)

    id = Column(String(ID_LENGTH), primary_key=True)
    name = Column(Text, nullable=False)
    type = Column(String(64), nullable=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


class OrgMemberRow(Base):
    __tablename__ = "org_members"
    __table_args__ = (
        PrimaryKeyConstraint("org_id", "user_id", name="pk_org_members"),
        Index("ix_org_members_user_id", "user_id"),
    )

    org_id = Column(String(ID_LENGTH), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(ID_LENGTH), nullable=False)
    role = Column(String(16), nullable=False)
    joined_at = Column(UTCDateTime, nullable=False)


__all__ = [
    "Base",
    "ClosureRow",
    "NodeRow",
    "OrgMemberRow",
    "OrganizationRow",
    "PolicyRow",
    "UTCDateTime",
]
