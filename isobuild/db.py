"""Run-record storage for isobuild.

Pipeline runs and their artifacts live in one SQLAlchemy database, a SQLite
file under the data directory unless ``ISOBUILD_DB_URL`` points elsewhere.

A failed pipeline run is still a record worth keeping: ``get_session`` can be
told which errors leave the transaction committed, so the run marked
``failed`` survives the exception that reports it.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from isobuild.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for PipelineRun and Artifact."""

    pass


def _sqlite_file(db_url: str) -> Path | None:
    if not db_url.startswith("sqlite:///") or ":memory:" in db_url:
        return None
    return Path(db_url.removeprefix("sqlite:///"))


def get_engine(db_url: str | None = None) -> Any:
    """Open the run database.

    Args:
        db_url: SQLAlchemy URL; defaults to ``Settings.db_url``.

    Returns:
        SQLAlchemy Engine. For a SQLite file, its directory is created.
    """
    if db_url is None:
        db_url = get_settings().db_url

    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        # FastAPI runs sync handlers and dependencies in a thread pool
        connect_args["check_same_thread"] = False
        sqlite_file = _sqlite_file(db_url)
        if sqlite_file is not None:
            sqlite_file.parent.mkdir(parents=True, exist_ok=True)

    return create_engine(db_url, connect_args=connect_args, echo=False)


def get_session_factory(engine: Any | None = None) -> sessionmaker[Session]:
    """Session factory bound to the run database.

    Objects stay loaded after commit, so a run returned by the service can
    still be rendered once its session has committed.
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _raised_from(exc: BaseException, kinds: tuple[type[BaseException], ...]) -> bool:
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, kinds):
            return True
        current = current.__cause__
    return False


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
    keep_on: tuple[type[BaseException], ...] = (),
) -> Generator[Session, None, None]:
    """Transactional scope for one unit of work.

    The session commits when the block finishes. An exception rolls it back,
    unless the exception is (or was raised from) one of ``keep_on``; then the
    session commits before the exception propagates.

    Args:
        session_factory: Factory to use; defaults to one from settings.
        keep_on: Exception types whose writes are kept.

    Yields:
        SQLAlchemy Session.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        if keep_on and _raised_from(e, keep_on):
            session.commit()
        else:
            session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any | None = None) -> None:
    """Create the run and artifact tables if they are missing."""
    # Registers PipelineRun and Artifact on Base.metadata
    from isobuild.pipeline import models as pipeline_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


def drop_all_tables(engine: Any | None = None) -> None:
    """Drop the run and artifact tables. Used by tests."""
    if engine is None:
        engine = get_engine()
    Base.metadata.drop_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "drop_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
