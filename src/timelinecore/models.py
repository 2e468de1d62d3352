"""Core data models for timelinecore.

Pydantic models shared by the hierarchy store, organization index, policy
store and resolver. Storage rows are converted to these at the store
boundary; nothing above the stores sees SQLAlchemy objects.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ───────────────────────────────────────


class NodeKind(str, Enum):
    """Kind of career timeline item."""

    JOB = "job"
    EDUCATION = "education"
    PROJECT = "project"
    EVENT = "event"
    ACTION = "action"
    TRANSITION = "transition"


class VisibilityLevel(str, Enum):
    """Detail granted on a node.

    Members are declared in ascending order and compare by that order, so a
    new intermediate level is added by inserting a member at the right place.
    """

    OVERVIEW = "overview"
    FULL = "full"

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    @classmethod
    def highest(cls) -> "VisibilityLevel":
        return list(cls)[-1]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, VisibilityLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, VisibilityLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, VisibilityLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, VisibilityLevel):
            return NotImplemented
        return self.rank >= other.rank


class PermissionAction(str, Enum):
    """Actions a subject may attempt on a node.

    Policies may only carry VIEW; EDIT is granted by ownership alone.
    """

    VIEW = "view"
    EDIT = "edit"


class SubjectType(str, Enum):
    USER = "user"
    ORGANIZATION = "organization"
    PUBLIC = "public"


class PolicyEffect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class OrganizationType(str, Enum):
    COMPANY = "company"
    EDUCATIONAL_INSTITUTION = "educational_institution"
    COMMUNITY = "community"
    OTHER = "other"


class OrgRole(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"


class DecisionSource(str, Enum):
    """What produced an access decision."""

    OWNER = "owner"
    USER = "user"
    ORGANIZATION = "organization"
    PUBLIC = "public"
    DENY = "deny"  # an applicable Deny policy
    DEFAULT = "default"  # nothing applicable


# ── Node metadata (tagged by kind) ─────────────────────

_DATE_PATTERN = r"^\d{4}-\d{2}(-\d{2})?$"


class _NodeMetaBase(BaseModel):
    model_config = {"extra": "forbid"}

    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    start_date: Optional[str] = Field(default=None, pattern=_DATE_PATTERN)
    end_date: Optional[str] = Field(default=None, pattern=_DATE_PATTERN)


class JobMeta(_NodeMetaBase):
    kind: Literal["job"] = "job"
    org_id: Optional[str] = None
    role: Optional[str] = None
    location: Optional[str] = None
    employment_type: Optional[
        Literal["full-time", "part-time", "contract", "internship", "freelance"]
    ] = None
    skills: list[str] = Field(default_factory=list)


class EducationMeta(_NodeMetaBase):
    kind: Literal["education"] = "education"
    org_id: Optional[str] = None
    degree: Optional[str] = None
    field: Optional[str] = None
    location: Optional[str] = None
    gpa: Optional[float] = Field(default=None, ge=0, le=4)
    honors: list[str] = Field(default_factory=list)


class ProjectMeta(_NodeMetaBase):
    kind: Literal["project"] = "project"
    role: Optional[str] = None
    technologies: list[str] = Field(default_factory=list)
    status: Optional[Literal["planning", "active", "completed", "archived"]] = None
    team_size: Optional[int] = Field(default=None, gt=0)


class EventMeta(_NodeMetaBase):
    kind: Literal["event"] = "event"
    event_type: Optional[
        Literal["conference", "certification", "award", "publication", "speaking", "training", "interview", "other"]
    ] = None
    location: Optional[str] = None
    organizer: Optional[str] = None
    outcome: Optional[str] = None


class ActionMeta(_NodeMetaBase):
    kind: Literal["action"] = "action"
    category: Optional[
        Literal["skill-development", "networking", "application", "interview", "research", "other"]
    ] = None
    impact: Optional[Literal["high", "medium", "low"]] = None
    status: Optional[Literal["planned", "in-progress", "completed", "cancelled"]] = None
    outcome: Optional[str] = None


class TransitionMeta(_NodeMetaBase):
    kind: Literal["transition"] = "transition"
    from_role: Optional[str] = None
    to_role: Optional[str] = None
    reason: Optional[str] = None
    learnings: list[str] = Field(default_factory=list)


NodeMeta = Annotated[
    Union[JobMeta, EducationMeta, ProjectMeta, EventMeta, ActionMeta, TransitionMeta],
    Field(discriminator="kind"),
]

_node_meta_adapter: TypeAdapter[Any] = TypeAdapter(NodeMeta)


def parse_node_meta(kind: NodeKind | str, payload: Any = None) -> Any:
    """Validate a metadata payload for ``kind``.

    Accepts None, a dict, or an already-built meta model. A ``kind`` key in
    the payload must agree with ``kind``.

    Raises:
        ValidationError: unknown kind or malformed payload.
    """
    try:
        kind = NodeKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown node kind: {kind!r}", field="kind")

    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    data = dict(payload or {})
    given = data.get("kind", kind.value)
    data["kind"] = getattr(given, "value", given)
    if data["kind"] != kind.value:
        raise ValidationError(
            f"Metadata kind {data['kind']!r} does not match node kind {kind.value!r}",
            field="kind",
        )
    try:
        return _node_meta_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {kind.value} metadata: {e.error_count()} error(s)", errors=e.errors()) from e


# ── Hierarchy records ──────────────────────────────────


class TimelineNode(BaseModel):
    """A single career item. Children are derived from the closure table."""

    id: str
    owner_id: str
    kind: NodeKind
    meta: NodeMeta
    parent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _meta_matches_kind(self) -> "TimelineNode":
        if self.meta.kind != self.kind.value:
            raise ValueError(f"meta kind {self.meta.kind!r} does not match node kind {self.kind.value!r}")
        return self


class ClosureEntry(BaseModel):
    """Materialized ancestor→descendant pair."""

    model_config = {"frozen": True}

    ancestor_id: str
    descendant_id: str
    depth: int = Field(ge=0)


class HierarchyStats(BaseModel):
    total_nodes: int = 0
    nodes_by_kind: dict[str, int] = Field(default_factory=dict)
    root_nodes: int = 0
    max_depth: int = 0


class IntegrityReport(BaseModel):
    """Difference between the stored closure and the one implied by parent ids."""

    missing: list[ClosureEntry] = Field(default_factory=list)
    extra: list[ClosureEntry] = Field(default_factory=list)
    wrong_depth: list[ClosureEntry] = Field(default_factory=list)
    orphaned_parents: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing or self.extra or self.wrong_depth or self.orphaned_parents)


class MoveValidation(BaseModel):
    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)


# ── Organizations ──────────────────────────────────────


class Organization(BaseModel):
    id: str
    name: str
    type: OrganizationType
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class OrgMember(BaseModel):
    org_id: str
    user_id: str
    role: OrgRole = OrgRole.MEMBER
    joined_at: datetime = Field(default_factory=utc_now)


# ── Policies ───────────────────────────────────────────


class PolicySpec(BaseModel):
    """A policy as supplied by a caller, before it is attached to a node."""

    model_config = {"extra": "forbid"}

    subject_type: SubjectType
    subject_id: Optional[str] = None
    action: PermissionAction = PermissionAction.VIEW
    level: VisibilityLevel = VisibilityLevel.OVERVIEW
    effect: PolicyEffect = PolicyEffect.ALLOW
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_subject(self) -> "PolicySpec":
        if self.subject_type == SubjectType.PUBLIC:
            if self.subject_id is not None:
                raise ValueError("subject_id must be absent for public policies")
        elif not self.subject_id:
            raise ValueError(f"subject_id is required for {self.subject_type.value} policies")
        if self.action != PermissionAction.VIEW:
            raise ValueError(f"policies may only grant {PermissionAction.VIEW.value!r}")
        if self.expires_at is not None and self.expires_at.tzinfo is None:
            self.expires_at = self.expires_at.replace(tzinfo=timezone.utc)
        return self


class NodePolicy(PolicySpec):
    """A stored access rule attached to one node."""

    model_config = {"extra": "ignore"}

    id: str
    node_id: str
    created_by: str
    created_at: datetime = Field(default_factory=utc_now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())

    def matches_subject(self, subject_id: Optional[str], organization_ids: frozenset[str] | set[str]) -> bool:
        """True if this policy targets ``subject_id`` (anonymous is None)."""
        if self.subject_type == SubjectType.PUBLIC:
            return True
        if subject_id is None:
            return False
        if self.subject_type == SubjectType.USER:
            return self.subject_id == subject_id
        return self.subject_id in organization_ids


class EffectivePermissions(BaseModel):
    """Best Allow level per audience on one node."""

    public: Optional[VisibilityLevel] = None
    organizations: dict[str, VisibilityLevel] = Field(default_factory=dict)
    users: dict[str, VisibilityLevel] = Field(default_factory=dict)


# ── Decisions ──────────────────────────────────────────


class AccessDecision(BaseModel):
    """Result of a single (node, subject, action) evaluation."""

    model_config = {"frozen": True}

    allowed: bool
    level: Optional[VisibilityLevel] = None
    source: DecisionSource = DecisionSource.DEFAULT
    policy_id: Optional[str] = None

    @classmethod
    def owner(cls) -> "AccessDecision":
        return cls(allowed=True, level=VisibilityLevel.highest(), source=DecisionSource.OWNER)

    @classmethod
    def deny(cls, source: DecisionSource = DecisionSource.DEFAULT, policy_id: Optional[str] = None) -> "AccessDecision":
        return cls(allowed=False, level=None, source=source, policy_id=policy_id)


class VisibleNode(BaseModel):
    node: TimelineNode
    level: VisibilityLevel


class BatchAuthorization(BaseModel):
    authorized: list[str] = Field(default_factory=list)
    unauthorized: list[str] = Field(default_factory=list)
    not_found: list[str] = Field(default_factory=list)


__all__ = [
    "AccessDecision",
    "ActionMeta",
    "BatchAuthorization",
    "ClosureEntry",
    "DecisionSource",
    "EducationMeta",
    "EffectivePermissions",
    "EventMeta",
    "HierarchyStats",
    "IntegrityReport",
    "JobMeta",
    "MoveValidation",
    "NodeKind",
    "NodeMeta",
    "NodePolicy",
    "OrgMember",
    "OrgRole",
    "Organization",
    "OrganizationType",
    "PermissionAction",
    "PolicyEffect",
    "PolicySpec",
    "ProjectMeta",
    "SubjectType",
    "TimelineNode",
    "TransitionMeta",
    "VisibilityLevel",
    "VisibleNode",
    "parse_node_meta",
    "utc_now",
]
