"""Pipeline service module.

This module provides the high-level pipeline API:
- run_or_reuse(): Main entry point - run a recipe with cache awareness
- Cache lookup by key
- Locking to prevent duplicate runs
- Run record and artifact persistence
- Comparing the artifacts of two packaged runs
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import tempfile
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from isobuild.config import get_settings
from isobuild.pipeline.artifacts import (
    describe_executable,
    describe_file,
    generate_manifest,
    get_executable,
    write_manifest,
)
from isobuild.pipeline.cache_key import compute_cache_key_from_recipe
from isobuild.pipeline.context import (
    DOCKERFILE_NAME,
    ContextStagingError,
    compute_tree_hash,
    stage_context,
)
from isobuild.pipeline.dockerfile import dockerfile_hash, render_dockerfile
from isobuild.pipeline.models import Artifact, PipelineRun
from isobuild.pipeline.runner import DockerArtifactProducer, DockerImageAssembler
from isobuild.pipeline.stages import Pipeline, PipelineExecutionError
from isobuild.types import ArtifactInfo, ArtifactKind, PipelineState

if TYPE_CHECKING:
    from isobuild.config import Settings
    from isobuild.pipeline.stages import ArtifactProducer, ImageAssembler
    from isobuild.recipes.schema import RecipeSchema

logger = logging.getLogger(__name__)

LOG_NAME = "build.log"
MANIFEST_NAME = "manifest.json"


class RunNotFoundError(Exception):
    """Raised when a pipeline run is not found."""

    def __init__(self, run_id: int, code: str = "run_not_found") -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id
        self.code = code


class PipelineServiceError(Exception):
    """Base error for pipeline service operations."""

    def __init__(self, message: str, code: str = "pipeline_service_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class RunComparison:
    """Comparison of the executables of two packaged runs.

    Two artifacts are behaviorally equivalent when they agree on linkage
    mode and stripped state; byte identity is reported separately.
    """

    run_a: int
    run_b: int
    linkage_a: str | None
    linkage_b: str | None
    stripped_a: bool | None
    stripped_b: bool | None
    sha256_a: str
    sha256_b: str

    @property
    def equivalent(self) -> bool:
        return self.linkage_a == self.linkage_b and self.stripped_a == self.stripped_b

    @property
    def identical(self) -> bool:
        return self.sha256_a == self.sha256_b

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_a": self.run_a,
            "run_b": self.run_b,
            "equivalent": self.equivalent,
            "identical": self.identical,
            "linkage": {"a": self.linkage_a, "b": self.linkage_b},
            "stripped": {"a": self.stripped_a, "b": self.stripped_b},
            "sha256": {"a": self.sha256_a, "b": self.sha256_b},
        }


@contextmanager
def run_lock(
    lock_dir: Path,
    cache_key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock for a pipeline cache key.

    Uses a file-based lock to prevent concurrent runs with the same key.

    Args:
        lock_dir: Directory for lock files.
        cache_key: Cache key to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    safe_key = cache_key.replace(":", "_").replace("/", "_")[:64]
    lock_file = lock_dir / f"run_{safe_key}.lock"

    logger.debug("Acquiring run lock for key: %s", cache_key[:32])

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for run lock on {cache_key[:32]}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Run lock acquired for key: %s", cache_key[:32])
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Run lock released for key: %s", cache_key[:32])
        os.close(fd)


def default_image_tag(settings: Settings, recipe_name: str, cache_key: str) -> str:
    """Derive the runtime image tag from the recipe name and cache key."""
    digest = cache_key.split(":", 1)[-1]
    return f"{settings.image_prefix}/{recipe_name.lower()}:{digest[:12]}"


def _get_cached_run(session: Session, cache_key: str) -> PipelineRun | None:
    """Find the latest packaged run with the same cache key."""
    stmt = (
        select(PipelineRun)
        .where(
            PipelineRun.cache_key == cache_key,
            PipelineRun.state == PipelineState.PACKAGED.value,
        )
        .order_by(PipelineRun.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def _create_artifact_record(
    session: Session,
    run: PipelineRun,
    artifact_info: ArtifactInfo,
    absolute_path: Path,
) -> Artifact:
    artifact = Artifact(
        run_id=run.id,
        kind=artifact_info.kind,
        relative_path=artifact_info.relative_path,
        absolute_path=str(absolute_path),
        filename=artifact_info.filename,
        size_bytes=artifact_info.size_bytes,
        sha256=artifact_info.sha256,
        linkage=artifact_info.linkage,
        stripped=artifact_info.stripped,
    )
    run.artifacts.append(artifact)
    session.add(artifact)
    return artifact


def run_or_reuse(
    session: Session,
    recipe: RecipeSchema,
    source_dir: Path,
    settings: Settings | None = None,
    tag: str | None = None,
    force: bool = False,
    producer: ArtifactProducer | None = None,
    assembler: ImageAssembler | None = None,
) -> tuple[PipelineRun, bool]:
    """Run a recipe's pipeline or reuse an earlier packaged run.

    This is the main entry point for the pipeline. It:
    1. Renders the Dockerfile and hashes the source tree
    2. Computes the cache key from all inputs
    3. Checks for a packaged run with the same cache key
    4. If not found (or force), stages the context and runs both stages
    5. Persists the PipelineRun, its Artifact records and the manifest

    Args:
        session: Database session.
        recipe: Validated recipe.
        source_dir: Service source tree (the build context).
        settings: Application settings.
        tag: Runtime image tag; derived from the cache key if not given.
        force: Run even if a packaged run with the same key exists.
        producer: Artifact producer; defaults to the container engine.
        assembler: Image assembler; defaults to the container engine.

    Returns:
        Tuple of (PipelineRun, is_cache_hit).

    Raises:
        ContextStagingError: If the source tree cannot be staged.
        PipelineExecutionError: If a stage fails; the run is marked
            failed before the error propagates.
        PipelineServiceError: If the run lock cannot be acquired.
    """
    if settings is None:
        settings = get_settings()

    if not source_dir.is_dir():
        raise ContextStagingError(
            f"Source directory not found: {source_dir}", code="source_not_found"
        )

    pipeline = Pipeline.from_recipe(recipe)
    dockerfile = render_dockerfile(pipeline)

    cache_key, inputs = compute_cache_key_from_recipe(
        recipe=recipe,
        dockerfile_hash=dockerfile_hash(dockerfile),
        source_hash=compute_tree_hash(source_dir),
    )
    logger.info("Computed cache key: %s", cache_key[:32])

    lock_dir = settings.work_dir / ".locks"

    try:
        with run_lock(lock_dir, cache_key, timeout=settings.lock_timeout):
            if not force:
                cached = _get_cached_run(session, cache_key)
                if cached is not None:
                    logger.info(
                        "Cache hit for key %s, reusing run %d",
                        cache_key[:32],
                        cached.id,
                    )
                    return cached, True

            return (
                _execute_run(
                    session=session,
                    recipe=recipe,
                    pipeline=pipeline,
                    dockerfile=dockerfile,
                    source_dir=source_dir,
                    settings=settings,
                    cache_key=cache_key,
                    inputs=inputs.to_dict(),
                    tag=tag or default_image_tag(settings, recipe.name, cache_key),
                    producer=producer,
                    assembler=assembler,
                ),
                False,
            )
    except TimeoutError as e:
        raise PipelineServiceError(str(e), code="lock_timeout") from e


def _execute_run(
    session: Session,
    recipe: RecipeSchema,
    pipeline: Pipeline,
    dockerfile: str,
    source_dir: Path,
    settings: Settings,
    cache_key: str,
    inputs: dict[str, Any],
    tag: str,
    producer: ArtifactProducer | None,
    assembler: ImageAssembler | None,
) -> PipelineRun:
    """Stage the context, run both stages and persist the outcome."""
    settings.work_dir.mkdir(parents=True, exist_ok=True)
    staging_dir = Path(tempfile.mkdtemp(prefix="ctx_", dir=settings.work_dir))

    try:
        staged_dockerfile = stage_context(staging_dir, source_dir, dockerfile)

        run = PipelineRun(
            recipe_name=recipe.name,
            cache_key=cache_key,
            recipe_snapshot=inputs,
            source_dir=str(source_dir),
            state=PipelineState.PENDING.value,
        )
        session.add(run)
        session.flush()
        logger.info("Created pipeline run %d", run.id)

        run_dir = (
            settings.artifacts_dir
            / recipe.name
            / f"{run.id:08d}_{uuid.uuid4().hex[:8]}"
        )
        run_dir.mkdir(parents=True, exist_ok=True)
        log_path = run_dir / LOG_NAME
        dockerfile_path = run_dir / DOCKERFILE_NAME
        dockerfile_path.write_text(dockerfile, encoding="utf-8")

        run.run_dir = str(run_dir)
        run.log_path = str(log_path)
        session.flush()

        if producer is None:
            producer = DockerArtifactProducer(
                engine=settings.container_engine,
                context_dir=staging_dir,
                dockerfile=staged_dockerfile,
                run_dir=run_dir,
                log_path=log_path,
                timeout=settings.build_timeout,
            )
        if assembler is None:
            assembler = DockerImageAssembler(
                engine=settings.container_engine,
                context_dir=staging_dir,
                dockerfile=staged_dockerfile,
                run_dir=run_dir,
                log_path=log_path,
                tag=tag,
                timeout=settings.build_timeout,
            )

        def on_transition(state: PipelineState) -> None:
            if state == PipelineState.BUILDING:
                run.mark_building()
                session.flush()
            logger.info("Run %d is %s", run.id, state.value)

        try:
            image = pipeline.run(producer, assembler, on_transition=on_transition)
        except PipelineExecutionError as e:
            run.mark_failed(failure_kind=e.code, message=str(e))
            session.flush()
            logger.error("Run %d failed (%s): %s", run.id, e.code, e)
            raise

        outputs = [
            (
                describe_executable(image.artifact, root=run_dir),
                image.artifact.local_path,
            ),
            (
                describe_file(dockerfile_path, ArtifactKind.DOCKERFILE, run_dir),
                dockerfile_path,
            ),
        ]
        if log_path.exists():
            outputs.append(
                (describe_file(log_path, ArtifactKind.LOG, run_dir), log_path)
            )

        manifest = generate_manifest(
            artifacts=[info for info, _ in outputs],
            run_id=run.id,
            cache_key=cache_key,
            recipe_name=recipe.name,
            image=image,
            pipeline_inputs=inputs,
        )
        manifest_path = write_manifest(manifest, run_dir / MANIFEST_NAME)
        outputs.append(
            (
                describe_file(manifest_path, ArtifactKind.MANIFEST, run_dir),
                manifest_path,
            )
        )

        for artifact_info, path in outputs:
            _create_artifact_record(
                session=session,
                run=run,
                artifact_info=artifact_info,
                absolute_path=path,
            )

        if image.artifact.inspection is not None:
            run.inspection = image.artifact.inspection.to_dict()
        run.mark_packaged(image_tag=image.tag or tag, image_id=image.image_id)
        session.flush()

        logger.info(
            "Run %d packaged as %s with %d artifacts",
            run.id,
            run.image_tag,
            len(outputs),
        )
        return run

    finally:
        if settings.keep_context:
            logger.info("Keeping build context at %s", staging_dir)
        else:
            shutil.rmtree(staging_dir, ignore_errors=True)


def get_run(session: Session, run_id: int) -> PipelineRun:
    """Get a pipeline run by ID.

    Raises:
        RunNotFoundError: If the run is not found.
    """
    run = session.get(PipelineRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def list_runs(
    session: Session,
    recipe_name: str | None = None,
    state: PipelineState | None = None,
    limit: int = 100,
) -> list[PipelineRun]:
    """List pipeline runs with optional filters, newest first.

    Args:
        session: Database session.
        recipe_name: Filter by recipe name.
        state: Filter by state.
        limit: Maximum results to return.

    Returns:
        List of PipelineRun instances.
    """
    stmt = select(PipelineRun)

    if recipe_name is not None:
        stmt = stmt.where(PipelineRun.recipe_name == recipe_name)
    if state is not None:
        stmt = stmt.where(PipelineRun.state == state.value)

    stmt = stmt.order_by(PipelineRun.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def get_run_artifacts(session: Session, run_id: int) -> list[Artifact]:
    """Get artifacts for a run.

    Raises:
        RunNotFoundError: If the run is not found.
    """
    run = get_run(session, run_id)
    return list(run.artifacts)


def _executable_of(run: PipelineRun) -> ArtifactInfo:
    if not run.is_packaged():
        raise PipelineServiceError(
            f"Run {run.id} is {run.state}, not packaged", code="run_not_packaged"
        )
    infos = [
        ArtifactInfo(
            filename=a.filename,
            relative_path=a.relative_path,
            size_bytes=a.size_bytes,
            sha256=a.sha256,
            kind=a.kind,
            linkage=a.linkage,
            stripped=a.stripped,
        )
        for a in run.artifacts
    ]
    executable = get_executable(infos)
    if executable is None:
        raise PipelineServiceError(
            f"Run {run.id} has no executable artifact", code="artifact_missing"
        )
    return executable


def compare_runs(session: Session, run_a_id: int, run_b_id: int) -> RunComparison:
    """Compare the executables of two packaged runs.

    Args:
        session: Database session.
        run_a_id: First run ID.
        run_b_id: Second run ID.

    Returns:
        RunComparison of the two executables.

    Raises:
        RunNotFoundError: If either run is not found.
        PipelineServiceError: If either run is not packaged.
    """
    a = _executable_of(get_run(session, run_a_id))
    b = _executable_of(get_run(session, run_b_id))
    return RunComparison(
        run_a=run_a_id,
        run_b=run_b_id,
        linkage_a=a.linkage,
        linkage_b=b.linkage,
        stripped_a=a.stripped,
        stripped_b=b.stripped,
        sha256_a=a.sha256,
        sha256_b=b.sha256,
    )


__all__ = [
    "PipelineServiceError",
    "RunComparison",
    "RunNotFoundError",
    "compare_runs",
    "default_image_tag",
    "get_run",
    "get_run_artifacts",
    "list_runs",
    "run_lock",
    "run_or_reuse",
]
