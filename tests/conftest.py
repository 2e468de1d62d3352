"""Shared fixtures: a fresh in-memory database and stores per test."""

from __future__ import annotations

import pytest

from timelinecore import (
    BatchAccessFilter,
    Database,
    HierarchyStore,
    MemoryPermissionCache,
    OrganizationIndex,
    PermissionResolver,
    PolicyStore,
    TimelineService,
)

OWNER = "user-owner"
VIEWER = "user-viewer"


@pytest.fixture
def db():
    database = Database("sqlite+pysqlite:///:memory:")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def hierarchy(db):
    return HierarchyStore(db)


@pytest.fixture
def policies(db):
    return PolicyStore(db)


@pytest.fixture
def orgs(db):
    return OrganizationIndex(db)


@pytest.fixture
def resolver(db, hierarchy, policies, orgs):
    return PermissionResolver(db, hierarchy, policies, orgs)


@pytest.fixture
def batch(db, hierarchy, policies, orgs):
    return BatchAccessFilter(db, hierarchy, policies, orgs)


@pytest.fixture
def cache():
    return MemoryPermissionCache(ttl_seconds=60)


@pytest.fixture
def service(db, cache):
    return TimelineService(db, cache=cache)


@pytest.fixture
def career(hierarchy):
    """J1 (job) → P1 (project) and J1 → E1 (event) → A1 (action), owned by OWNER."""
    j1 = hierarchy.create_node(OWNER, "job", {"title": "Engineer", "role": "Backend"}, node_id="J1")
    p1 = hierarchy.create_node(OWNER, "project", {"title": "Search"}, "J1", node_id="P1")
    e1 = hierarchy.create_node(OWNER, "event", {"title": "Launch"}, "J1", node_id="E1")
    a1 = hierarchy.create_node(OWNER, "action", {"title": "Wrote RFC"}, "E1", node_id="A1")
    return {"J1": j1, "P1": p1, "E1": e1, "A1": a1}
