from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker


Base = declarative_base()

SQLITE_BUSY_TIMEOUT_SECONDS = 30


class DatabaseSessionManager:
    """Owns the engine shared by request handlers and the background workers."""

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        """Creates the engine for ``database_url``.

        SQLite connections may be used from the worker threads FastAPI runs
        sync code on, and wait on a locked database instead of failing.

        Args:
            database_url: The SQLAlchemy-compatible URL for the database connection.
            echo: Log every statement (debugging aid).
        """
        url = make_url(database_url)
        connect_args: Dict[str, Any] = {}
        if url.get_backend_name() == "sqlite":
            connect_args = {
                "check_same_thread": False,
                "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
            }
        self._engine = create_engine(
            url, connect_args=connect_args, pool_pre_ping=True, echo=echo
        )
        # Rows returned by the repository are read after their session closes.
        self._session_factory = sessionmaker(
            bind=self._engine, autoflush=False, expire_on_commit=False
        )

    @property
    def dialect_name(self) -> str:
        """Backend name used to pick the upsert construct (``sqlite``, ``postgresql``)."""
        return self._engine.dialect.name

    def create_all(self) -> None:
        Base.metadata.create_all(self._engine, checkfirst=True)

    def dispose(self) -> None:
        self._engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """One unit of work: committed on exit, rolled back if the block raises."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
