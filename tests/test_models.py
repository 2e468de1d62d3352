"""Tests for timelinecore.models."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from timelinecore.exceptions import ValidationError
from timelinecore.models import (
    AccessDecision,
    DecisionSource,
    JobMeta,
    NodeKind,
    NodePolicy,
    PolicySpec,
    SubjectType,
    TimelineNode,
    VisibilityLevel,
    parse_node_meta,
)


class TestVisibilityLevel:
    """Ordering of visibility levels."""

    def test_full_above_overview(self):
        assert VisibilityLevel.FULL > VisibilityLevel.OVERVIEW
        assert VisibilityLevel.OVERVIEW < VisibilityLevel.FULL
        assert VisibilityLevel.FULL >= VisibilityLevel.FULL

    def test_highest(self):
        assert VisibilityLevel.highest() == VisibilityLevel.FULL

    def test_max_uses_rank(self):
        """Ordering follows declaration, not string comparison."""
        assert max([VisibilityLevel.FULL, VisibilityLevel.OVERVIEW]) == VisibilityLevel.FULL

    def test_value_round_trip(self):
        assert VisibilityLevel("overview") is VisibilityLevel.OVERVIEW


class TestNodeMeta:
    """Tagged metadata union."""

    def test_kind_selects_model(self):
        meta = parse_node_meta("job", {"title": "Engineer", "role": "Backend"})
        assert isinstance(meta, JobMeta)
        assert meta.kind == "job"

    def test_none_gives_empty_meta(self):
        meta = parse_node_meta(NodeKind.PROJECT)
        assert meta.kind == "project"
        assert meta.title is None

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            parse_node_meta("project", {"salary": 100})

    def test_kind_mismatch_rejected(self):
        with pytest.raises(ValidationError, match="does not match"):
            parse_node_meta("job", {"kind": "project"})

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError, match="Unknown node kind"):
            parse_node_meta("hobby", {})

    def test_date_pattern(self):
        assert parse_node_meta("job", {"start_date": "2021-03"}).start_date == "2021-03"
        with pytest.raises(ValidationError):
            parse_node_meta("job", {"start_date": "March 2021"})

    def test_node_meta_must_match_kind(self):
        with pytest.raises(PydanticValidationError):
            TimelineNode(id="n", owner_id="u", kind=NodeKind.JOB, meta=parse_node_meta("project"))


class TestPolicySpec:
    """Subject type/id pairing and action rules."""

    def test_public_without_subject(self):
        spec = PolicySpec(subject_type="public")
        assert spec.subject_id is None
        assert spec.level == VisibilityLevel.OVERVIEW

    def test_public_with_subject_rejected(self):
        with pytest.raises(PydanticValidationError, match="must be absent"):
            PolicySpec(subject_type="public", subject_id="u1")

    @pytest.mark.parametrize("subject_type", ["user", "organization"])
    def test_subject_required(self, subject_type):
        with pytest.raises(PydanticValidationError, match="subject_id is required"):
            PolicySpec(subject_type=subject_type)

    def test_edit_action_rejected(self):
        with pytest.raises(PydanticValidationError, match="may only grant"):
            PolicySpec(subject_type="user", subject_id="u1", action="edit")

    def test_unknown_level_rejected(self):
        with pytest.raises(PydanticValidationError):
            PolicySpec(subject_type="public", level="secret")

    def test_naive_expiry_is_utc(self):
        spec = PolicySpec(subject_type="public", expires_at=datetime(2030, 1, 1))
        assert spec.expires_at.tzinfo == timezone.utc


class TestNodePolicy:
    """Expiry and subject matching."""

    def _policy(self, **kwargs) -> NodePolicy:
        base = {"id": "p1", "node_id": "n1", "created_by": "owner", "subject_type": "public"}
        base.update(kwargs)
        return NodePolicy(**base)

    def test_expiry(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert self._policy(expires_at=now - timedelta(seconds=1)).is_expired(now)
        assert self._policy(expires_at=now).is_expired(now)
        assert not self._policy(expires_at=now + timedelta(days=1)).is_expired(now)
        assert not self._policy().is_expired(now)

    def test_public_matches_anonymous(self):
        assert self._policy().matches_subject(None, set())

    def test_user_match(self):
        p = self._policy(subject_type=SubjectType.USER, subject_id="u1")
        assert p.matches_subject("u1", set())
        assert not p.matches_subject("u2", set())
        assert not p.matches_subject(None, set())

    def test_organization_match_needs_membership(self):
        p = self._policy(subject_type=SubjectType.ORGANIZATION, subject_id="org-1")
        assert p.matches_subject("u1", {"org-1"})
        assert not p.matches_subject("u1", {"org-2"})


class TestAccessDecision:
    def test_owner(self):
        d = AccessDecision.owner()
        assert d.allowed and d.level == VisibilityLevel.FULL and d.source == DecisionSource.OWNER

    def test_deny(self):
        d = AccessDecision.deny(DecisionSource.DENY, policy_id="p9")
        assert not d.allowed and d.level is None and d.policy_id == "p9"
