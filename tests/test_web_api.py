"""Tests for FastAPI web API.

Uses TestClient to test all endpoints. Pipeline runs use in-process
stages instead of the container engine.
"""

import os
import uuid
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from isobuild import __version__
from isobuild.db import Base
from isobuild.pipeline import service
from isobuild.types import FailureKind
from web.routers import config, health, recipes, runs

REFERENCE_RECIPE = Path(__file__).parent.parent / "pipelines" / "tws-rust.yaml"


def create_test_app() -> FastAPI:
    """Create a minimal FastAPI app for testing without lifespan."""
    application = FastAPI(title="isobuild API", version=__version__)

    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(recipes.router, prefix="/recipes", tags=["recipes"])
    application.include_router(runs.router, prefix="/runs", tags=["runs"])

    return application


@pytest.fixture
def client(tmp_path):
    """Create a test client with a fresh SQLite database in tmp_path."""
    db_file = tmp_path / f"test_{uuid.uuid4().hex[:8]}.db"
    engine = create_engine(
        f"sqlite:///{db_file}", echo=False, connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)

    app = create_test_app()
    app.state.session_factory = sessionmaker(bind=engine)

    env = {
        "ISOBUILD_WORK_DIR": str(tmp_path / "work"),
        "ISOBUILD_ARTIFACTS_DIR": str(tmp_path / "runs"),
    }
    with patch.dict(os.environ, env), TestClient(app) as test_client:
        yield test_client

    engine.dispose()


@pytest.fixture
def fake_stages(fake_producer, fake_assembler):
    """Route run requests through in-process stages."""
    state = {"producer_kwargs": {}}

    def _run_or_reuse(**kwargs):
        return service.run_or_reuse(
            **kwargs,
            producer=fake_producer(**state["producer_kwargs"]),
            assembler=fake_assembler(),
        )

    with patch("web.routers.runs.run_or_reuse", side_effect=_run_or_reuse):
        yield state


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health(self, client):
        """Health returns status and version."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": __version__}

    def test_root(self, client):
        """Root returns the API name."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["name"] == "isobuild API"


class TestConfigEndpoint:
    """Tests for the config endpoint."""

    def test_get_config(self, client, tmp_path):
        """Effective settings are returned."""
        response = client.get("/config")
        assert response.status_code == 200
        data = response.json()
        assert data["work_dir"] == str(tmp_path / "work")
        assert data["container_engine"] == "docker"


class TestRecipeEndpoints:
    """Tests for recipe endpoints."""

    def test_validate(self, client, recipe_data):
        """A valid recipe is returned resolved."""
        response = client.post("/recipes/validate", json=recipe_data)
        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["recipe"]["runtime"]["artifact_destination"] == (
            "/usr/local/bin/tws-rust"
        )

    def test_validate_invalid(self, client, recipe_data):
        """Invalid recipes return 422 with field errors."""
        recipe_data["builder"]["flags"]["crypto_lib_dir"] = None
        response = client.post("/recipes/validate", json=recipe_data)
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "recipe_invalid"
        assert detail["errors"]

    def test_render_json(self, client, recipe_data):
        """Rendered Dockerfile comes with its hash."""
        response = client.post("/recipes/render", json=recipe_data)
        assert response.status_code == 200
        data = response.json()
        assert data["recipe"] == "tws-rust"
        assert "FROM provision AS builder" in data["dockerfile"]
        assert len(data["sha256"]) == 64

    def test_render_text(self, client, recipe_data):
        """output=text returns the raw Dockerfile."""
        response = client.post("/recipes/render?output=text", json=recipe_data)
        assert response.status_code == 200
        assert response.text.endswith('CMD ["tws-rust"]\n')


class TestRunEndpoints:
    """Tests for run endpoints."""

    def test_start_run(self, client, recipe_data, source_dir, fake_stages):
        """A run is packaged and its artifacts returned."""
        response = client.post(
            "/runs", json={"recipe": recipe_data, "source_dir": str(source_dir)}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "packaged"
        assert data["is_cache_hit"] is False
        assert data["image_tag"] == "isobuild/tws-rust:test"
        assert len(data["artifacts"]) == 3

        again = client.post(
            "/runs", json={"recipe": recipe_data, "source_dir": str(source_dir)}
        )
        assert again.json()["is_cache_hit"] is True
        assert again.json()["id"] == data["id"]

        listed = client.get("/runs")
        assert [r["id"] for r in listed.json()] == [data["id"]]

        detail = client.get(f"/runs/{data['id']}")
        assert detail.json()["inspection"]["stripped"] is True

        artifacts = client.get(f"/runs/{data['id']}/artifacts")
        executable = [a for a in artifacts.json() if a["kind"] == "executable"]
        assert executable[0]["linkage"] == "static"

    def test_start_run_from_path(self, client, source_dir, fake_stages):
        """Recipes can be referenced by path."""
        response = client.post(
            "/runs",
            json={"recipe_path": str(REFERENCE_RECIPE), "source_dir": str(source_dir)},
        )
        assert response.status_code == 200
        assert response.json()["recipe"] == "tws-rust"

    def test_failed_run_kept(self, client, recipe_data, source_dir, fake_stages):
        """A failing stage returns 422 and the failed run is listed."""
        fake_stages["producer_kwargs"] = {"fail_with": FailureKind.COMPILATION}
        response = client.post(
            "/runs", json={"recipe": recipe_data, "source_dir": str(source_dir)}
        )
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "compilation"

        failed = client.get("/runs?state=failed").json()
        assert len(failed) == 1
        assert failed[0]["failure_kind"] == "compilation"
        assert failed[0]["image_tag"] is None

    def test_both_recipe_and_path(self, client, recipe_data, source_dir):
        """recipe and recipe_path are mutually exclusive."""
        response = client.post(
            "/runs",
            json={
                "recipe": recipe_data,
                "recipe_path": "x.yaml",
                "source_dir": str(source_dir),
            },
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_request"

    def test_missing_source(self, client, recipe_data, tmp_path):
        """A missing source directory returns 400."""
        response = client.post(
            "/runs", json={"recipe": recipe_data, "source_dir": str(tmp_path / "nope")}
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "source_not_found"

    def test_invalid_state_filter(self, client):
        """Unknown states return 400."""
        response = client.get("/runs?state=done")
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_state"

    def test_run_not_found(self, client):
        """Unknown runs return 404."""
        assert client.get("/runs/999").status_code == 404
        response = client.get("/runs/999/artifacts")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "run_not_found"
