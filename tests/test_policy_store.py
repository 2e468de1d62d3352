"""Tests for the node policy store."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from timelinecore.exceptions import NotFoundError, ValidationError
from timelinecore.models import PolicyEffect, SubjectType, VisibilityLevel, utc_now
from timelinecore.permissions import PolicyStore

from conftest import OWNER


def public(level="overview", **kwargs):
    return {"subject_type": "public", "level": level, **kwargs}


def user(subject_id, level="overview", **kwargs):
    return {"subject_type": "user", "subject_id": subject_id, "level": level, **kwargs}


class TestSetPolicies:
    """Writing policies."""

    def test_replace_is_default(self, policies, career):
        policies.set_policies("J1", [public()], OWNER)
        policies.set_policies("J1", [user("u1", "full")], OWNER)

        stored = policies.get_policies("J1")
        assert len(stored) == 1
        assert stored[0].subject_id == "u1"
        assert stored[0].level == VisibilityLevel.FULL
        assert stored[0].created_by == OWNER

    def test_append(self, policies, career):
        policies.set_policies("J1", [public()], OWNER)
        policies.set_policies("J1", [user("u1")], OWNER, replace=False)
        assert len(policies.get_policies("J1")) == 2

    def test_empty_replace_clears(self, policies, career):
        policies.set_policies("J1", [public()], OWNER)
        policies.set_policies("J1", [], OWNER)
        assert policies.get_policies("J1") == []

    @pytest.mark.parametrize(
        "bad",
        [
            {"subject_type": "public", "subject_id": "u1"},
            {"subject_type": "user"},
            {"subject_type": "organization", "subject_id": ""},
            {"subject_type": "user", "subject_id": "u1", "action": "edit"},
            {"subject_type": "robot", "subject_id": "r1"},
            {"subject_type": "public", "level": "secret"},
            {"subject_type": "public", "effect": "maybe"},
        ],
    )
    def test_malformed_rejected(self, policies, career, bad):
        with pytest.raises(ValidationError):
            policies.set_policies("J1", [bad], OWNER)

    def test_validation_happens_before_writes(self, policies, career):
        policies.set_policies("J1", [public()], OWNER)
        with pytest.raises(ValidationError):
            policies.set_policies("J1", [user("u1"), {"subject_type": "user"}], OWNER)
        assert [p.subject_type for p in policies.get_policies("J1")] == [SubjectType.PUBLIC]

    def test_missing_node(self, policies):
        with pytest.raises(NotFoundError):
            policies.set_policies("ghost", [public()], OWNER)


class TestReads:
    def test_expired_excluded(self, policies, career):
        past = utc_now() - timedelta(hours=1)
        future = utc_now() + timedelta(hours=1)
        policies.set_policies("J1", [public(expires_at=past), user("u1", expires_at=future)], OWNER)

        assert [p.subject_id for p in policies.get_policies("J1")] == ["u1"]

    def test_explicit_now(self, policies, career):
        expiry = utc_now() + timedelta(days=1)
        policies.set_policies("J1", [public(expires_at=expiry)], OWNER)
        assert policies.get_policies("J1", now=expiry + timedelta(seconds=1)) == []
        assert len(policies.get_policies("J1", now=expiry - timedelta(seconds=1))) == 1

    def test_for_nodes(self, policies, career):
        policies.set_policies("J1", [public()], OWNER)
        policies.set_policies("P1", [user("u1"), user("u2")], OWNER)

        by_node = policies.get_policies_for_nodes(["J1", "P1", "E1"])
        assert list(by_node) == ["J1", "P1", "E1"]
        assert len(by_node["J1"]) == 1
        assert len(by_node["P1"]) == 2
        assert by_node["E1"] == []
        assert policies.get_policies_for_nodes([]) == {}

    def test_get_policy(self, policies, career):
        [stored] = policies.set_policies("J1", [public()], OWNER)
        assert policies.get_policy(stored.id).node_id == "J1"
        with pytest.raises(NotFoundError):
            policies.get_policy("ghost")


class TestDeletes:
    def test_delete_policy(self, policies, career):
        [stored] = policies.set_policies("J1", [public()], OWNER)
        with pytest.raises(NotFoundError):
            policies.delete_policy("P1", stored.id)
        policies.delete_policy("J1", stored.id)
        assert policies.get_policies("J1") == []
        with pytest.raises(NotFoundError):
            policies.delete_policy("J1", stored.id)

    def test_delete_all_for_node(self, policies, career):
        policies.set_policies("J1", [public(), user("u1")], OWNER)
        policies.set_policies("P1", [public()], OWNER)
        assert policies.delete_all_for_node("J1") == 2
        assert policies.get_policies("J1") == []
        assert len(policies.get_policies("P1")) == 1

    def test_delete_for_subject(self, policies, career):
        policies.set_policies("J1", [public(), user("u1")], OWNER)
        policies.set_policies("P1", [user("u1"), user("u2")], OWNER)
        assert policies.delete_policies_for_subject("user", "u1") == 2
        assert [p.subject_id for p in policies.get_policies("P1")] == ["u2"]
        assert policies.delete_policies_for_subject(SubjectType.PUBLIC, None) == 1

    def test_sweep_expired(self, policies, career):
        past = utc_now() - timedelta(minutes=5)
        policies.set_policies("J1", [public(expires_at=past), user("u1")], OWNER)
        policies.set_policies("P1", [user("u2", expires_at=past)], OWNER)

        assert policies.sweep_expired() == 2
        assert policies.sweep_expired() == 0
        assert len(policies.get_policies("J1")) == 1


class TestEffectivePermissions:
    def test_summary(self, policies, career):
        policies.set_policies(
            "J1",
            [
                public(),
                user("u1"),
                user("u1", "full"),
                {"subject_type": "organization", "subject_id": "org-1", "level": "full"},
                user("u2", "full"),
                user("u2", effect=PolicyEffect.DENY),
            ],
            OWNER,
        )
        summary = policies.effective_permissions("J1")
        assert summary.public == VisibilityLevel.OVERVIEW
        assert summary.users == {"u1": VisibilityLevel.FULL}
        assert summary.organizations == {"org-1": VisibilityLevel.FULL}


class TestCacheInvalidation:
    def test_writes_drop_node(self, db, career):
        cache = MagicMock()
        store = PolicyStore(db, cache=cache)
        store.set_policies("J1", [public()], OWNER)
        cache.invalidate_nodes.assert_called_with(["J1"])
        assert cache.invalidate_nodes.call_count == 2
