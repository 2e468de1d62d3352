"""Engine, session and transaction handling.

All stores share one Database. ``Database.transaction()`` is the only place
sessions are opened, committed and rolled back, and the only place SQLAlchemy
exceptions are translated into StoreError. Stores accept an optional session
so a caller can run several store calls inside one transaction.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import TimelineConfig
from ..exceptions import DatabaseConnectionError, StoreError
from .schema import Base

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith("sqlite:")):
        # One shared connection so every session sees the same in-memory database
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


_AFTER_COMMIT = "timelinecore.after_commit"


def _run_after_commit(session: Session) -> None:
    for callback in session.info.pop(_AFTER_COMMIT, []):
        callback()


def _discard_after_commit(session: Session) -> None:
    session.info.pop(_AFTER_COMMIT, None)


def translate_error(error: SQLAlchemyError, operation: str) -> StoreError:
    """Map a SQLAlchemy failure to the store error taxonomy."""
    if isinstance(error, DisconnectionError) or (
        isinstance(error, DBAPIError) and error.connection_invalidated
    ):
        return DatabaseConnectionError(f"{operation}: database connection lost", operation=operation)
    return StoreError(f"{operation}: {type(error).__name__}", operation=operation)


class Database:
    """Owns the engine and hands out transactional sessions.

    Args:
        url: SQLAlchemy database URL.
        echo: Echo SQL statements.
        engine: Pre-built engine (overrides ``url``/``echo``).
    """

    def __init__(
        self,
        url: str = "sqlite+pysqlite:///:memory:",
        *,
        echo: bool = False,
        engine: Optional[Engine] = None,
    ) -> None:
        self.engine = engine or create_engine(url, echo=echo, future=True, **_engine_options(url))
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        event.listen(self._sessionmaker, "after_commit", _run_after_commit)
        event.listen(self._sessionmaker, "after_rollback", _discard_after_commit)

    @classmethod
    def from_config(cls, config: TimelineConfig) -> "Database":
        return cls(config.database_url, echo=config.database_echo)

    def create_all(self) -> None:
        """Create all tables (idempotent)."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise translate_error(e, "create_all") from e

    def drop_all(self) -> None:
        try:
            Base.metadata.drop_all(self.engine)
        except SQLAlchemyError as e:
            raise translate_error(e, "drop_all") from e

    @contextmanager
    def transaction(self, session: Optional[Session] = None, operation: str = "transaction") -> Iterator[Session]:
        """Yield a session inside a transaction.

        When ``session`` is given the block joins that caller's transaction and
        leaves commit/rollback to it. Otherwise a new session is opened,
        committed on success and rolled back on any exception.

        Raises:
            StoreError: on any SQLAlchemy failure (chained).
        """
        if session is not None:
            yield session
            return

        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("%s failed, rolled back: %s", operation, e)
            raise translate_error(e, operation) from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def after_commit(session: Session, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the session's outermost transaction commits.

        Callbacks are discarded if the transaction rolls back.
        """
        session.info.setdefault(_AFTER_COMMIT, []).append(callback)

    def dispose(self) -> None:
        self.engine.dispose()


__all__ = ["Database", "translate_error"]
