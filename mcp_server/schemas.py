"""Pydantic schemas for MCP tool responses.

These schemas define the structured output formats for MCP tools,
ensuring consistent JSON responses across all tools.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict


class ValidateRecipeResponse(BaseModel):
    """Response for validate_recipe tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    recipe: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class RenderDockerfileResponse(BaseModel):
    """Response for render_dockerfile tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    recipe_name: str | None = None
    dockerfile: str | None = None
    sha256: str | None = None
    error: dict[str, Any] | None = None


class ArtifactSummary(BaseModel):
    """Summary of a run artifact."""

    model_config = ConfigDict(extra="forbid")

    id: int
    filename: str
    kind: str | None = None
    size_bytes: int
    sha256: str
    relative_path: str
    linkage: str | None = None
    stripped: bool | None = None


class RunSummary(BaseModel):
    """Summary of a pipeline run."""

    model_config = ConfigDict(extra="forbid")

    id: int
    recipe_name: str
    state: str
    cache_key: str
    is_cache_hit: bool
    image_tag: str | None = None
    requested_at: str | None
    started_at: str | None
    finished_at: str | None
    artifact_count: int
    failure_kind: str | None = None
    error_message: str | None = None
    log_path: str | None = None


class RunDetail(RunSummary):
    """Full run details."""

    model_config = ConfigDict(extra="forbid")

    run_dir: str | None = None
    image_id: str | None = None
    inspection: dict[str, Any] | None = None
    artifacts: list[ArtifactSummary] = []


class RunPipelineResponse(BaseModel):
    """Response for run_pipeline tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    run_id: int | None = None
    cache_hit: bool = False
    state: str | None = None
    image_tag: str | None = None
    artifacts: list[ArtifactSummary] | None = None
    log_path: str | None = None
    error: dict[str, Any] | None = None


class ListRunsResponse(BaseModel):
    """Response for list_runs tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    runs: list[RunSummary]
    total: int
    error: dict[str, Any] | None = None


class GetRunResponse(BaseModel):
    """Response for get_run tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    run: RunDetail | None = None
    error: dict[str, Any] | None = None


class InspectArtifactResponse(BaseModel):
    """Response for inspect_artifact tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    path: str
    inspection: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


__all__ = [
    "ArtifactSummary",
    "GetRunResponse",
    "InspectArtifactResponse",
    "ListRunsResponse",
    "RenderDockerfileResponse",
    "RunDetail",
    "RunPipelineResponse",
    "RunSummary",
    "ValidateRecipeResponse",
]
