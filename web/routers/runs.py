"""Pipeline run endpoints.

- GET /runs - List runs
- GET /runs/{id} - Get run by ID
- GET /runs/{id}/artifacts - Get artifacts for a run
- POST /runs - Run a recipe (or reuse a cached run)
"""

from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from isobuild.config import get_settings
from isobuild.pipeline.context import ContextStagingError
from isobuild.pipeline.models import Artifact, PipelineRun
from isobuild.pipeline.service import (
    PipelineServiceError,
    RunNotFoundError,
    get_run,
    get_run_artifacts,
    list_runs,
    run_or_reuse,
)
from isobuild.pipeline.stages import PipelineExecutionError
from isobuild.recipes.io import RecipeError, load_recipe
from isobuild.types import PipelineState
from web.deps import get_db
from web.routers.recipes import parse_or_422

router = APIRouter()


class RunRequest(BaseModel):
    """Request body for starting a run.

    Exactly one of ``recipe`` (inline document) or ``recipe_path`` is given.
    """

    recipe: dict[str, Any] | None = None
    recipe_path: str | None = None
    source_dir: str
    tag: str | None = None
    force: bool = False


def _run_to_dict(run: PipelineRun) -> dict[str, Any]:
    """Convert a run record to a dictionary."""
    return {
        "id": run.id,
        "recipe": run.recipe_name,
        "state": run.state,
        "cache_key": run.cache_key,
        "is_cache_hit": run.is_cache_hit,
        "image_tag": run.image_tag,
        "image_id": run.image_id,
        "requested_at": run.requested_at.isoformat() if run.requested_at else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "run_dir": run.run_dir,
        "log_path": run.log_path,
        "failure_kind": run.failure_kind,
        "error_message": run.error_message,
        "inspection": run.inspection,
        "artifact_count": len(run.artifacts),
    }


def _artifact_to_dict(artifact: Artifact) -> dict[str, Any]:
    """Convert an artifact to a dictionary."""
    return {
        "id": artifact.id,
        "run_id": artifact.run_id,
        "kind": artifact.kind,
        "filename": artifact.filename,
        "relative_path": artifact.relative_path,
        "absolute_path": artifact.absolute_path,
        "size_bytes": artifact.size_bytes,
        "sha256": artifact.sha256,
        "linkage": artifact.linkage,
        "stripped": artifact.stripped,
    }


def _not_found(run_id: int) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={"code": "run_not_found", "message": f"Run not found: {run_id}"},
    )


@router.get("")
def list_runs_endpoint(
    recipe: str | None = Query(None, description="Filter by recipe name"),
    state: str | None = Query(None, description="Filter by state"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List pipeline runs, newest first."""
    state_filter: PipelineState | None = None
    if state:
        try:
            state_filter = PipelineState(state)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_state",
                    "message": f"Invalid state: {state}. "
                    "Valid values: pending, building, packaged, failed",
                },
            ) from None

    runs = list_runs(db, recipe_name=recipe, state=state_filter, limit=limit)
    return [_run_to_dict(r) for r in runs]


@router.get("/{run_id}")
def get_run_endpoint(
    run_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a run record by ID.

    Raises:
        HTTPException: If the run is not found.
    """
    try:
        return _run_to_dict(get_run(db, run_id))
    except RunNotFoundError:
        raise _not_found(run_id) from None


@router.get("/{run_id}/artifacts")
def get_run_artifacts_endpoint(
    run_id: int,
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """Get artifacts for a run.

    Raises:
        HTTPException: If the run is not found.
    """
    try:
        artifacts = get_run_artifacts(db, run_id)
    except RunNotFoundError:
        raise _not_found(run_id) from None
    return [_artifact_to_dict(a) for a in artifacts]


@router.post("")
def start_run_endpoint(
    request: RunRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Run a recipe's pipeline, or reuse a packaged run with the same inputs.

    The request blocks until the run is packaged or has failed. Failed
    runs are recorded before the error response is returned.

    Raises:
        HTTPException: 400 on bad input, 422 on an invalid recipe or a
            failed pipeline stage, 409 when the run lock is held.
    """
    if (request.recipe is None) == (request.recipe_path is None):
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "invalid_request",
                "message": "Provide exactly one of recipe or recipe_path",
            },
        )

    if request.recipe is not None:
        recipe = parse_or_422(request.recipe)
    else:
        try:
            recipe = load_recipe(Path(request.recipe_path or ""))
        except RecipeError as e:
            raise HTTPException(
                status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"code": e.code, "message": str(e), "errors": e.errors},
            ) from None

    try:
        run, is_cache_hit = run_or_reuse(
            session=db,
            recipe=recipe,
            source_dir=Path(request.source_dir),
            settings=get_settings(),
            tag=request.tag,
            force=request.force,
        )
    except ContextStagingError as e:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except PipelineServiceError as e:
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except PipelineExecutionError as e:
        # Raised from e so get_db keeps the failed run record
        raise HTTPException(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": e.code,
                "message": str(e),
                "log_path": str(e.log_path) if e.log_path else None,
            },
        ) from e

    result = _run_to_dict(run)
    result["is_cache_hit"] = is_cache_hit
    result["artifacts"] = [_artifact_to_dict(a) for a in run.artifacts]
    return result
