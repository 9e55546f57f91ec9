"""Request-scoped database sessions for the isobuild API.

Each request gets one session from the factory the app built at startup
(``app.state.session_factory``). It commits when the handler returns and
rolls back when the handler raises, with one exception: a handler error
raised from a ``PipelineExecutionError`` still commits, so the run record
marked ``failed`` is kept alongside the error response.
"""

from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from isobuild.db import get_session
from isobuild.pipeline.stages import PipelineExecutionError

# Errors whose run records outlive the request
KEPT_ON = (PipelineExecutionError,)


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Session factory stored on the app during lifespan startup."""
    factory: sessionmaker[Session] = request.app.state.session_factory
    return factory


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Yield the request's session inside ``isobuild.db.get_session``."""
    with get_session(session_factory, keep_on=KEPT_ON) as session:
        yield session
