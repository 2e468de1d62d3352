"""Tests for Database transactions and error translation."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from timelinecore.exceptions import DatabaseConnectionError, StoreError
from timelinecore.models import utc_now
from timelinecore.storage import Database, OrganizationRow, translate_error


def _org(org_id: str, name: str = "Acme") -> OrganizationRow:
    now = utc_now()
    return OrganizationRow(id=org_id, name=name, type="company", meta={}, created_at=now, updated_at=now)


class TestTransaction:
    def test_commit(self, db):
        with db.transaction() as s:
            s.add(_org("o1"))
        with db.transaction() as s:
            assert s.get(OrganizationRow, "o1") is not None

    def test_rollback_on_error(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction() as s:
                s.add(_org("o1"))
                s.flush()
                raise RuntimeError("boom")
        with db.transaction() as s:
            assert s.get(OrganizationRow, "o1") is None

    def test_sqlalchemy_errors_become_store_errors(self, db):
        with pytest.raises(StoreError) as exc_info:
            with db.transaction(operation="create_org") as s:
                s.add(_org("o1"))
                s.add(_org("o2"))  # same (name, type)
        assert isinstance(exc_info.value.__cause__, IntegrityError)
        assert exc_info.value.details["operation"] == "create_org"

    def test_joined_session_defers_commit(self, db):
        with db.transaction() as outer:
            with db.transaction(outer) as inner:
                assert inner is outer
                inner.add(_org("o1"))
            assert outer.execute(select(OrganizationRow.id)).scalars().all() == ["o1"]

    def test_timestamps_are_utc_aware(self, db):
        with db.transaction() as s:
            s.add(_org("o1"))
        with db.transaction() as s:
            assert s.get(OrganizationRow, "o1").created_at.tzinfo is not None


class TestAfterCommit:
    def test_runs_on_commit(self, db):
        callback = MagicMock()
        with db.transaction() as s:
            Database.after_commit(s, callback)
            callback.assert_not_called()
        callback.assert_called_once_with()

    def test_discarded_on_rollback(self, db):
        callback = MagicMock()
        with pytest.raises(RuntimeError):
            with db.transaction() as s:
                Database.after_commit(s, callback)
                raise RuntimeError("boom")
        callback.assert_not_called()


class TestTranslateError:
    def test_connection_lost(self):
        error = DBAPIError("SELECT 1", {}, Exception("gone"), connection_invalidated=True)
        assert isinstance(translate_error(error, "check"), DatabaseConnectionError)

    def test_other_errors(self):
        error = OperationalError("SELECT 1", {}, Exception("locked"))
        translated = translate_error(error, "check")
        assert type(translated) is StoreError
        assert "OperationalError" in translated.message
