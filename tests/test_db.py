"""Tests for database engine and session helpers."""

import os
from unittest.mock import patch

import pytest
from sqlalchemy import inspect

from isobuild.db import (
    create_all_tables,
    drop_all_tables,
    get_engine,
    get_session,
    get_session_factory,
)
from isobuild.pipeline.models import PipelineRun
from isobuild.pipeline.stages import PipelineExecutionError
from isobuild.types import FailureKind


class TestEngine:
    """Tests for get_engine and table management."""

    def test_engine_from_settings(self, tmp_path) -> None:
        """The engine uses ISOBUILD_DB_URL and creates the parent directory."""
        db_file = tmp_path / "nested" / "db.sqlite"
        with patch.dict(os.environ, {"ISOBUILD_DB_URL": f"sqlite:///{db_file}"}):
            engine = get_engine()
            create_all_tables(engine)

        assert db_file.parent.is_dir()
        assert "pipeline_runs" in inspect(engine).get_table_names()
        engine.dispose()

    def test_create_and_drop(self) -> None:
        """Tables can be created and dropped again."""
        engine = get_engine("sqlite:///:memory:")
        create_all_tables(engine)
        assert set(inspect(engine).get_table_names()) >= {"pipeline_runs", "artifacts"}

        drop_all_tables(engine)
        assert inspect(engine).get_table_names() == []


class TestGetSession:
    """Tests for the get_session transactional scope."""

    @pytest.fixture
    def factory(self, tmp_path):
        engine = get_engine(f"sqlite:///{tmp_path / 'session.sqlite'}")
        create_all_tables(engine)
        yield get_session_factory(engine)
        engine.dispose()

    def test_commits_on_success(self, factory) -> None:
        """Work done in the scope is committed."""
        with get_session(factory) as session:
            session.add(PipelineRun(recipe_name="tws-rust", cache_key="sha256:a"))

        with factory() as session:
            assert session.query(PipelineRun).count() == 1

    def test_rolls_back_on_error(self, factory) -> None:
        """An exception rolls the scope back and propagates."""
        with pytest.raises(RuntimeError), get_session(factory) as session:
            session.add(PipelineRun(recipe_name="tws-rust", cache_key="sha256:a"))
            session.flush()
            raise RuntimeError("boom")

        with factory() as session:
            assert session.query(PipelineRun).count() == 0

    def test_keeps_writes_on_listed_error(self, factory) -> None:
        """A keep_on error commits the scope before propagating."""
        with (
            pytest.raises(PipelineExecutionError),
            get_session(factory, keep_on=(PipelineExecutionError,)) as session,
        ):
            session.add(PipelineRun(recipe_name="tws-rust", cache_key="sha256:a"))
            raise PipelineExecutionError("compile failed", kind=FailureKind.COMPILATION)

        with factory() as session:
            assert session.query(PipelineRun).count() == 1

    def test_keeps_writes_on_error_raised_from_listed_error(self, factory) -> None:
        """An error raised from a keep_on error also keeps the writes."""

        class HandlerError(Exception):
            pass

        with (
            pytest.raises(HandlerError),
            get_session(factory, keep_on=(PipelineExecutionError,)) as session,
        ):
            session.add(PipelineRun(recipe_name="tws-rust", cache_key="sha256:a"))
            try:
                raise PipelineExecutionError("bad layer", kind=FailureKind.INVARIANT)
            except PipelineExecutionError as e:
                raise HandlerError("422") from e

        with factory() as session:
            assert session.query(PipelineRun).count() == 1

    def test_other_errors_still_roll_back(self, factory) -> None:
        """Errors outside keep_on roll back as usual."""
        with (
            pytest.raises(ValueError),
            get_session(factory, keep_on=(PipelineExecutionError,)) as session,
        ):
            session.add(PipelineRun(recipe_name="tws-rust", cache_key="sha256:a"))
            raise ValueError("bad input")

        with factory() as session:
            assert session.query(PipelineRun).count() == 0
