"""Database engine and session management for quark.

Engines and sessions for the cache database that lives beside the
staged artifacts, plus the declarative base for its models.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from quark.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for CacheEntry and BuildRecord."""


def get_engine(db_url: str | None = None) -> Engine:
    """Open an engine for the cache database.

    Args:
        db_url: Database URL; defaults to Settings.effective_db_url.

    Returns:
        Engine bound to db_url.
    """
    if db_url is None:
        db_url = get_settings().effective_db_url

    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # The default database lives inside the staging directory
        db_path = db_url.removeprefix("sqlite:///")
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(
        db_url,
        connect_args=connect_args,
        echo=False,
    )


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Build a sessionmaker whose objects stay usable after commit.

    Args:
        engine: Engine to bind; one is opened from settings when omitted.

    Returns:
        Configured sessionmaker.
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Yield a session, committing on success and rolling back on error.

    Args:
        session_factory: Factory to draw from; settings-based when omitted.

    Yields:
        Open Session.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the cache and build-record tables if missing.

    Args:
        engine: Engine to bind; one is opened from settings when omitted.
    """
    # Register models with the mapper before creating tables
    from quark.builds import models as builds_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
