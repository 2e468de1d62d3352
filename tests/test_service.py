"""Tests for the TimelineService facade."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from timelinecore import TimelineConfig, TimelineService
from timelinecore.exceptions import InvalidParentError, NotFoundError, UnauthorizedError, ValidationError
from timelinecore.models import DecisionSource, VisibilityLevel
from timelinecore.permissions import MemoryPermissionCache

from conftest import OWNER, VIEWER


@pytest.fixture
def items(service):
    j1 = service.create_item(OWNER, "job", {"title": "Engineer"})
    p1 = service.create_item(OWNER, "project", {"title": "Search"}, j1.id)
    j2 = service.create_item(OWNER, "job", {"title": "Staff Engineer"})
    return j1, p1, j2


class TestOwnershipGate:
    """Every mutation is owner-only."""

    def test_update_move_delete_rejected_for_others(self, service, items):
        j1, p1, j2 = items
        with pytest.raises(UnauthorizedError):
            service.update_item(VIEWER, p1.id, {"title": "Hacked"})
        with pytest.raises(UnauthorizedError):
            service.move_item(VIEWER, p1.id, j2.id)
        with pytest.raises(UnauthorizedError):
            service.delete_item(VIEWER, j1.id)
        with pytest.raises(UnauthorizedError):
            service.set_sharing(VIEWER, j1.id, [{"subject_type": "public"}])
        assert service.hierarchy.get_node(p1.id).parent_id == j1.id

    def test_missing_node(self, service):
        with pytest.raises(NotFoundError):
            service.update_item(OWNER, "ghost", {})

    def test_invalid_policy_rejected_before_gate(self, service, items):
        with pytest.raises(ValidationError):
            service.set_sharing(VIEWER, items[0].id, [{"subject_type": "user"}])


class TestItems:
    def test_move_scenario(self, service, items):
        """P1 moves from J1 to J2; the closure follows."""
        j1, p1, j2 = items
        service.move_item(OWNER, p1.id, j2.id)

        assert [n.id for n in service.hierarchy.get_ancestors(p1.id)] == [j2.id]
        entries = {(e.ancestor_id, e.depth) for e in service.hierarchy.closure_entries(node_ids=[p1.id])}
        assert (j1.id, 1) not in entries
        assert (j2.id, 1) in entries

    def test_delete_removes_policies(self, service, items):
        j1, p1, _ = items
        service.share_subtree(OWNER, j1.id, [{"subject_type": "public"}])

        deleted = service.delete_item(OWNER, j1.id)

        assert set(deleted) == {j1.id, p1.id}
        assert service.policies.get_policies_for_nodes([j1.id, p1.id]) == {j1.id: [], p1.id: []}

    def test_get_item(self, service, items):
        j1, p1, _ = items
        service.set_sharing(OWNER, j1.id, [{"subject_type": "user", "subject_id": VIEWER, "level": "full"}])
        assert service.get_item(VIEWER, j1.id).level == VisibilityLevel.FULL
        with pytest.raises(UnauthorizedError):
            service.get_item(VIEWER, p1.id)


class TestSharing:
    def test_share_then_revoke(self, service, items):
        j1 = items[0]
        [grant] = service.set_sharing(OWNER, j1.id, [{"subject_type": "public"}])
        assert service.check_access(j1.id, None).allowed

        service.delete_policy(OWNER, j1.id, grant.id)
        assert not service.check_access(j1.id, None).allowed

    def test_share_subtree_writes_every_node(self, service, items):
        j1, p1, j2 = items
        written = service.share_subtree(OWNER, j1.id, [{"subject_type": "user", "subject_id": VIEWER}])
        assert set(written) == {j1.id, p1.id}
        assert service.access_level(p1.id, VIEWER) == VisibilityLevel.OVERVIEW
        assert service.access_level(j2.id, VIEWER) is None

    def test_get_sharing_owner_only(self, service, items):
        j1 = items[0]
        service.set_sharing(OWNER, j1.id, [{"subject_type": "public"}])
        assert len(service.get_sharing(OWNER, j1.id)) == 1
        with pytest.raises(UnauthorizedError):
            service.get_sharing(VIEWER, j1.id)

    def test_membership_change_visible_through_cache(self, service, items):
        j1 = items[0]
        org = service.create_organization("Acme", "company")
        service.set_sharing(OWNER, j1.id, [{"subject_type": "organization", "subject_id": org.id}])

        assert not service.check_access(j1.id, VIEWER).allowed
        service.add_member(org.id, VIEWER)
        assert service.check_access(j1.id, VIEWER).source == DecisionSource.ORGANIZATION
        service.remove_member(org.id, VIEWER)
        assert not service.check_access(j1.id, VIEWER).allowed

    def test_revoke_committed_during_check(self, service, items):
        """A revoke that commits while a check is reading is not undone by the cache."""
        j1 = items[0]
        service.set_sharing(OWNER, j1.id, [{"subject_type": "user", "subject_id": VIEWER, "level": "full"}])
        read = service.policies.get_policies

        def read_then_revoke(node_id, **kwargs):
            loaded = read(node_id, **kwargs)
            service.set_sharing(OWNER, node_id, [])
            return loaded

        with patch.object(service.policies, "get_policies", side_effect=read_then_revoke):
            service.check_access(j1.id, VIEWER)

        assert not service.check_access(j1.id, VIEWER).allowed


class TestViews:
    def test_visible_timeline(self, service, items):
        j1, p1, j2 = items
        service.set_sharing(OWNER, j2.id, [{"subject_type": "public", "level": "full"}])
        service.set_sharing(OWNER, j1.id, [{"subject_type": "public"}])

        visible = service.visible_timeline(OWNER, None)
        assert [(v.node.id, v.level) for v in visible] == [
            (j1.id, VisibilityLevel.OVERVIEW),
            (j2.id, VisibilityLevel.FULL),
        ]
        assert len(service.visible_timeline(OWNER, OWNER)) == 3
        assert [v.node.id for v in service.visible_timeline(OWNER, None, min_level="full")] == [j2.id]

    def test_batch_check(self, service, items):
        j1, p1, _ = items
        result = service.batch_check([j1.id, p1.id, "ghost"], OWNER, "edit")
        assert result.authorized == [j1.id, p1.id]
        assert result.not_found == ["ghost"]

    def test_memberships(self, service):
        org = service.create_organization("Acme", "company")
        service.add_member(org.id, VIEWER, "admin")
        assert [o.id for o in service.list_memberships(VIEWER)] == [org.id]
        assert service.get_organization(org.id).name == "Acme"


class TestFromConfig:
    def test_builds_working_service(self):
        service = TimelineService.from_config(
            TimelineConfig(permission_cache_enabled=True, enforce_kind_rules=True, max_depth=3)
        )
        try:
            assert isinstance(service.cache, MemoryPermissionCache)
            assert service.hierarchy.enforce_kind_rules is True
            job = service.create_item(OWNER, "job")
            with pytest.raises(InvalidParentError):
                service.create_item(OWNER, "job", None, job.id)
        finally:
            service.close()
