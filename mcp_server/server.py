"""MCP server implementation.

This module creates the FastMCP server and registers all tools.
Tools are thin wrappers around core isobuild services:
- Tools are idempotent where applicable
- Errors are returned as structured dicts with stable codes
- run_pipeline has cache-aware build-or-reuse semantics
"""

from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from mcp_server.errors import (
    INSPECTION_ERROR,
    INTERNAL_ERROR,
    make_error,
    pipeline_error,
    run_not_found,
    validation_error,
)
from mcp_server.schemas import (
    ArtifactSummary,
    GetRunResponse,
    InspectArtifactResponse,
    ListRunsResponse,
    RenderDockerfileResponse,
    RunDetail,
    RunPipelineResponse,
    RunSummary,
    ValidateRecipeResponse,
)

if TYPE_CHECKING:
    from isobuild.pipeline.models import Artifact, PipelineRun
    from isobuild.recipes.schema import RecipeSchema

# Create the FastMCP server instance
mcp = FastMCP(
    name="isobuild",
)


def _get_session_factory() -> Any:
    """Get the database session factory.

    Returns:
        Session factory callable.
    """
    from isobuild.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    return get_session_factory(engine)


def _load_recipe(
    recipe: dict[str, Any] | None,
    recipe_path: str | None,
) -> "RecipeSchema":
    """Load a recipe from an inline document or a file path.

    Raises:
        RecipeError: If the recipe is missing, unreadable or invalid.
    """
    from isobuild.recipes.io import RecipeError, load_recipe, parse_recipe_data

    if (recipe is None) == (recipe_path is None):
        raise RecipeError(
            "Provide exactly one of recipe or recipe_path", code="invalid_request"
        )
    if recipe is not None:
        return parse_recipe_data(recipe)
    return load_recipe(Path(recipe_path or ""))


def _artifact_summary(a: "Artifact") -> ArtifactSummary:
    return ArtifactSummary(
        id=a.id,
        filename=a.filename,
        kind=a.kind,
        size_bytes=a.size_bytes,
        sha256=a.sha256,
        relative_path=a.relative_path,
        linkage=a.linkage,
        stripped=a.stripped,
    )


def _run_fields(r: "PipelineRun") -> dict[str, Any]:
    return {
        "id": r.id,
        "recipe_name": r.recipe_name,
        "state": r.state,
        "cache_key": r.cache_key,
        "is_cache_hit": r.is_cache_hit,
        "image_tag": r.image_tag,
        "requested_at": r.requested_at.isoformat() if r.requested_at else None,
        "started_at": r.started_at.isoformat() if r.started_at else None,
        "finished_at": r.finished_at.isoformat() if r.finished_at else None,
        "artifact_count": len(r.artifacts),
        "failure_kind": r.failure_kind,
        "error_message": r.error_message,
        "log_path": r.log_path,
    }


@mcp.tool()
def validate_recipe(
    recipe: Annotated[
        dict[str, Any] | None, Field(description="Inline recipe document")
    ] = None,
    recipe_path: Annotated[
        str | None, Field(description="Path to a YAML or JSON recipe file")
    ] = None,
) -> ValidateRecipeResponse:
    """Validate a pipeline recipe.

    Returns:
        ValidateRecipeResponse with the resolved recipe or validation errors.
    """
    from isobuild.recipes.io import RecipeError, recipe_to_dict

    try:
        parsed = _load_recipe(recipe, recipe_path)
    except RecipeError as e:
        return ValidateRecipeResponse(
            success=False,
            error=make_error(e.code, str(e), {"errors": e.errors}).to_dict(),
        )
    return ValidateRecipeResponse(
        success=True, recipe=recipe_to_dict(parsed.resolved())
    )


@mcp.tool()
def render_dockerfile(
    recipe: Annotated[
        dict[str, Any] | None, Field(description="Inline recipe document")
    ] = None,
    recipe_path: Annotated[
        str | None, Field(description="Path to a YAML or JSON recipe file")
    ] = None,
) -> RenderDockerfileResponse:
    """Render the two-stage Dockerfile (builder + runtime) for a recipe.

    Returns:
        RenderDockerfileResponse with the Dockerfile text and its hash.
    """
    from isobuild.pipeline.dockerfile import dockerfile_hash
    from isobuild.pipeline.dockerfile import render_dockerfile as render
    from isobuild.pipeline.stages import Pipeline
    from isobuild.recipes.io import RecipeError

    try:
        parsed = _load_recipe(recipe, recipe_path)
    except RecipeError as e:
        return RenderDockerfileResponse(
            success=False,
            error=make_error(e.code, str(e), {"errors": e.errors}).to_dict(),
        )

    content = render(Pipeline.from_recipe(parsed))
    return RenderDockerfileResponse(
        success=True,
        recipe_name=parsed.name,
        dockerfile=content,
        sha256=dockerfile_hash(content),
    )


@mcp.tool()
def run_pipeline(
    source_dir: Annotated[str, Field(description="Service source tree to build")],
    recipe_path: Annotated[
        str | None, Field(description="Path to a YAML or JSON recipe file")
    ] = None,
    recipe: Annotated[
        dict[str, Any] | None, Field(description="Inline recipe document")
    ] = None,
    tag: Annotated[str | None, Field(description="Runtime image tag")] = None,
    force: Annotated[bool, Field(description="Run even if cached")] = False,
) -> RunPipelineResponse:
    """Run the builder and runtime stages for a recipe.

    This tool implements run-or-reuse behavior:
    - By default, returns the packaged run with identical inputs (idempotent)
    - Use force=True to run again

    Failures carry the failure kind as error code: environment_provisioning,
    compilation, artifact_handoff, invariant, build_timeout or
    execution_error.

    Returns:
        RunPipelineResponse with run state, image tag, artifacts, or error.
    """
    from isobuild.config import get_settings
    from isobuild.pipeline.context import ContextStagingError
    from isobuild.pipeline.service import PipelineServiceError, run_or_reuse
    from isobuild.pipeline.stages import PipelineExecutionError
    from isobuild.recipes.io import RecipeError

    try:
        parsed = _load_recipe(recipe, recipe_path)
    except RecipeError as e:
        return RunPipelineResponse(
            success=False,
            error=make_error(e.code, str(e), {"errors": e.errors}).to_dict(),
        )

    try:
        factory = _get_session_factory()
        with factory() as session:
            try:
                run, is_cache_hit = run_or_reuse(
                    session=session,
                    recipe=parsed,
                    source_dir=Path(source_dir),
                    settings=get_settings(),
                    tag=tag,
                    force=force,
                )
                session.commit()
            except PipelineExecutionError as e:
                session.commit()
                log_path = str(e.log_path) if e.log_path else None
                return RunPipelineResponse(
                    success=False,
                    state="failed",
                    log_path=log_path,
                    error=pipeline_error(e.code, str(e), log_path).to_dict(),
                )
            except (ContextStagingError, PipelineServiceError) as e:
                return RunPipelineResponse(
                    success=False,
                    error=make_error(e.code, str(e)).to_dict(),
                )

            return RunPipelineResponse(
                success=run.is_packaged(),
                run_id=run.id,
                cache_hit=is_cache_hit,
                state=run.state,
                image_tag=run.image_tag,
                artifacts=[_artifact_summary(a) for a in run.artifacts],
                log_path=run.log_path,
            )

    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return RunPipelineResponse(success=False, error=error.to_dict())


@mcp.tool()
def list_runs(
    recipe_name: Annotated[str | None, Field(description="Filter by recipe")] = None,
    state: Annotated[
        str | None,
        Field(description="Filter by state (pending/building/packaged/failed)"),
    ] = None,
    limit: Annotated[int, Field(description="Maximum results", ge=1, le=1000)] = 50,
) -> ListRunsResponse:
    """List pipeline runs, newest first.

    Returns:
        ListRunsResponse with run summaries or error.
    """
    from isobuild.pipeline.service import list_runs as svc_list_runs
    from isobuild.types import PipelineState

    state_filter: PipelineState | None = None
    if state:
        try:
            state_filter = PipelineState(state)
        except ValueError:
            return ListRunsResponse(
                success=False,
                runs=[],
                total=0,
                error=validation_error(
                    f"Invalid state: {state}",
                    {"valid": [s.value for s in PipelineState]},
                ).to_dict(),
            )

    try:
        factory = _get_session_factory()
        with factory() as session:
            runs = svc_list_runs(
                session, recipe_name=recipe_name, state=state_filter, limit=limit
            )
            summaries = [RunSummary(**_run_fields(r)) for r in runs]
            return ListRunsResponse(success=True, runs=summaries, total=len(summaries))

    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return ListRunsResponse(success=False, runs=[], total=0, error=error.to_dict())


@mcp.tool()
def get_run(
    run_id: Annotated[int, Field(description="Run ID to retrieve")],
) -> GetRunResponse:
    """Get a pipeline run with its artifacts and inspection summary.

    Returns:
        GetRunResponse with run details or error.
    """
    from isobuild.pipeline.service import RunNotFoundError
    from isobuild.pipeline.service import get_run as svc_get_run

    try:
        factory = _get_session_factory()
        with factory() as session:
            try:
                run = svc_get_run(session, run_id)
            except RunNotFoundError:
                return GetRunResponse(success=False, error=run_not_found(run_id).to_dict())

            detail = RunDetail(
                **_run_fields(run),
                run_dir=run.run_dir,
                image_id=run.image_id,
                inspection=run.inspection,
                artifacts=[_artifact_summary(a) for a in run.artifacts],
            )
            return GetRunResponse(success=True, run=detail)

    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return GetRunResponse(success=False, error=error.to_dict())


@mcp.tool()
def inspect_artifact(
    path: Annotated[str, Field(description="Path to a compiled ELF executable")],
    crypto_libraries: Annotated[
        list[str] | None,
        Field(description="Crypto library names to check (default: ssl, crypto)"),
    ] = None,
) -> InspectArtifactResponse:
    """Report linkage mode and strip state of a compiled executable.

    Returns:
        InspectArtifactResponse with ELF facts or error.
    """
    from isobuild.pipeline.inspection import InspectionError
    from isobuild.pipeline.inspection import inspect_artifact as svc_inspect

    try:
        inspection = svc_inspect(
            Path(path), crypto_libraries=tuple(crypto_libraries or ("ssl", "crypto"))
        )
    except InspectionError as e:
        return InspectArtifactResponse(
            success=False,
            path=path,
            error=make_error(
                e.code or INSPECTION_ERROR, str(e), {"path": path}
            ).to_dict(),
        )
    return InspectArtifactResponse(success=True, path=path, inspection=inspection.to_dict())


__all__ = [
    "get_run",
    "inspect_artifact",
    "list_runs",
    "mcp",
    "render_dockerfile",
    "run_pipeline",
    "validate_recipe",
]
