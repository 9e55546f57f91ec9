"""Container engine runner for pipeline stages.

This module handles:
- Composing engine ``build`` commands for each named Dockerfile stage
- Executing them with subprocess, appending output to one build log
- Extracting the compiled artifact from the builder stage
- Reading the runtime image's config and saving it for layer checks
- Tagging the runtime image once it passes verification
- Engine-backed ArtifactProducer and ImageAssembler implementations

Each engine failure is attributed to the stage that failed: provision
(environment provisioning), builder (compilation) or runtime (artifact
handoff).
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from isobuild.pipeline.artifacts import compute_file_hash
from isobuild.pipeline.dockerfile import BUILDER_STAGE, PROVISION_STAGE, RUNTIME_STAGE
from isobuild.pipeline.inspection import InspectionError, inspect_artifact
from isobuild.pipeline.layers import LayerVerificationError, verify_runtime_image
from isobuild.pipeline.stages import (
    BuildEnvironment,
    CompiledArtifact,
    PipelineExecutionError,
    RuntimeImage,
)
from isobuild.types import FailureKind

if TYPE_CHECKING:
    from isobuild.pipeline.stages import RuntimeStage

logger = logging.getLogger(__name__)

STAGE_FAILURE_KINDS = {
    PROVISION_STAGE: FailureKind.ENVIRONMENT_PROVISIONING,
    BUILDER_STAGE: FailureKind.COMPILATION,
    RUNTIME_STAGE: FailureKind.ARTIFACT_HANDOFF,
}

# Containers are only created to copy files out, never started
PLACEHOLDER_COMMAND = "true"

IMAGE_ARCHIVE_NAME = "image.tar"


def compose_engine_build_command(
    engine: str,
    context_dir: Path,
    dockerfile: Path,
    target: str,
    tag: str | None = None,
    iidfile: Path | None = None,
) -> list[str]:
    """Compose an engine ``build`` command for one Dockerfile stage.

    Args:
        engine: Container engine executable.
        context_dir: Staged build context.
        dockerfile: Rendered Dockerfile path.
        target: Stage name to build up to.
        tag: Optional image tag.
        iidfile: Optional file receiving the built image ID.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [engine, "build", "--file", str(dockerfile), "--target", target]
    if tag:
        cmd.extend(["--tag", tag])
    if iidfile is not None:
        cmd.extend(["--iidfile", str(iidfile)])
    cmd.append(str(context_dir))
    return cmd


def _append_log(log_path: Path, text: str) -> None:
    with log_path.open("a") as log_file:
        log_file.write(text)


def run_logged(
    cmd: list[str],
    log_path: Path,
    kind: FailureKind,
    cwd: Path | None = None,
    timeout: int | None = None,
    capture: bool = False,
) -> str:
    """Run a command, appending its output to the build log.

    Args:
        cmd: Command to run.
        log_path: Build log to append to.
        kind: Failure kind reported when the command exits non-zero.
        cwd: Optional working directory.
        timeout: Timeout in seconds (None = no timeout).
        capture: Return stdout instead of only logging it.

    Returns:
        Captured stdout when ``capture`` is set, else an empty string.

    Raises:
        PipelineExecutionError: On non-zero exit, timeout, or launch failure.
    """
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    started_at = datetime.now(timezone.utc)
    output = ""

    try:
        with log_path.open("a") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            if cwd is not None:
                log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            if capture:
                result = subprocess.run(
                    cmd,
                    cwd=cwd,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    check=False,
                )
                output = result.stdout or ""
                log_file.write(output)
                log_file.write(result.stderr or "")
            else:
                result = subprocess.run(
                    cmd,
                    cwd=cwd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=timeout,
                    check=False,
                )

    except subprocess.TimeoutExpired as e:
        message = f"Command timed out after {timeout} seconds: {cmd_str}"
        logger.error("%s. See log: %s", message, log_path)
        _append_log(log_path, f"\n# TIMEOUT after {timeout} seconds\n\n")
        raise PipelineExecutionError(
            message,
            kind=FailureKind.BUILD_TIMEOUT,
            exit_code=-1,
            log_path=log_path,
        ) from e

    except OSError as e:
        message = f"Failed to execute {cmd[0]}: {e}"
        logger.error(message)
        raise PipelineExecutionError(
            message,
            kind=FailureKind.EXECUTION_ERROR,
            log_path=log_path,
        ) from e

    finished_at = datetime.now(timezone.utc)
    duration = (finished_at - started_at).total_seconds()
    _append_log(
        log_path,
        f"\n# Finished: {finished_at.isoformat()}\n"
        f"# Exit code: {result.returncode}\n"
        f"# Duration: {duration:.1f}s\n\n",
    )

    if result.returncode != 0:
        message = f"{cmd_str} failed with exit code {result.returncode}"
        logger.error("%s. See log: %s", message, log_path)
        raise PipelineExecutionError(
            message,
            kind=kind,
            exit_code=result.returncode,
            log_path=log_path,
        )

    return output


def run_stage_build(
    engine: str,
    context_dir: Path,
    dockerfile: Path,
    target: str,
    log_path: Path,
    timeout: int | None = None,
    iidfile: Path | None = None,
) -> str | None:
    """Build one named stage, attributing failure to that stage.

    Returns:
        Image ID read from ``iidfile``, when one was requested.

    Raises:
        PipelineExecutionError: If the stage build fails.
    """
    cmd = compose_engine_build_command(
        engine, context_dir, dockerfile, target, iidfile=iidfile
    )
    run_logged(
        cmd,
        log_path,
        kind=STAGE_FAILURE_KINDS[target],
        cwd=context_dir,
        timeout=timeout,
    )

    if iidfile is not None and iidfile.exists():
        return iidfile.read_text().strip() or None
    return None


def extract_artifact(
    engine: str,
    image: str,
    source_path: str,
    dest_path: Path,
    log_path: Path,
    timeout: int | None = None,
) -> Path:
    """Copy the artifact out of a built image.

    A stopped container is created from the image, the artifact is copied
    out, and the container is removed again.

    Args:
        engine: Container engine executable.
        image: Image (ID or tag) holding the artifact.
        source_path: Artifact path inside the image.
        dest_path: Host path to copy to.
        log_path: Build log.
        timeout: Timeout per engine command.

    Returns:
        The host path of the extracted artifact.

    Raises:
        PipelineExecutionError: If the artifact cannot be extracted.
    """
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    container_id = run_logged(
        [engine, "create", image, PLACEHOLDER_COMMAND],
        log_path,
        kind=FailureKind.EXECUTION_ERROR,
        timeout=timeout,
        capture=True,
    ).strip()

    try:
        run_logged(
            [engine, "cp", f"{container_id}:{source_path}", str(dest_path)],
            log_path,
            kind=FailureKind.ARTIFACT_HANDOFF,
            timeout=timeout,
        )
    finally:
        try:
            run_logged(
                [engine, "rm", container_id],
                log_path,
                kind=FailureKind.EXECUTION_ERROR,
                timeout=timeout,
            )
        except PipelineExecutionError as e:
            logger.warning("Failed to remove container %s: %s", container_id, e)

    if not dest_path.is_file():
        raise PipelineExecutionError(
            f"Artifact {source_path} was not extracted to {dest_path}",
            kind=FailureKind.ARTIFACT_HANDOFF,
            log_path=log_path,
        )
    return dest_path


def inspect_image_config(
    engine: str,
    image: str,
    log_path: Path,
    timeout: int | None = None,
) -> dict[str, Any]:
    """Read an image's config (Cmd, Env, ...) via ``image inspect``.

    Raises:
        PipelineExecutionError: If the engine fails or returns bad JSON.
    """
    output = run_logged(
        [engine, "image", "inspect", "--format", "{{json .Config}}", image],
        log_path,
        kind=FailureKind.EXECUTION_ERROR,
        timeout=timeout,
        capture=True,
    )
    try:
        config = json.loads(output)
    except json.JSONDecodeError as e:
        raise PipelineExecutionError(
            f"Unparseable image config for {image}: {e}",
            kind=FailureKind.EXECUTION_ERROR,
            log_path=log_path,
        ) from e
    return config or {}


def save_image(
    engine: str,
    image: str,
    output_path: Path,
    log_path: Path,
    timeout: int | None = None,
) -> Path:
    """Save an image to a tar archive.

    Raises:
        PipelineExecutionError: If the engine fails.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    run_logged(
        [engine, "save", "--output", str(output_path), image],
        log_path,
        kind=FailureKind.EXECUTION_ERROR,
        timeout=timeout,
    )
    return output_path


def tag_image(
    engine: str,
    image: str,
    tag: str,
    log_path: Path,
    timeout: int | None = None,
) -> None:
    """Point ``tag`` at an image.

    Raises:
        PipelineExecutionError: If the engine fails.
    """
    run_logged(
        [engine, "tag", image, tag],
        log_path,
        kind=FailureKind.EXECUTION_ERROR,
        timeout=timeout,
    )


class DockerArtifactProducer:
    """Produces the compiled artifact by building the builder stages.

    Args:
        engine: Container engine executable.
        context_dir: Staged build context.
        dockerfile: Rendered Dockerfile inside the context.
        run_dir: Directory receiving the extracted artifact.
        log_path: Build log.
        timeout: Timeout per engine command.
    """

    def __init__(
        self,
        engine: str,
        context_dir: Path,
        dockerfile: Path,
        run_dir: Path,
        log_path: Path,
        timeout: int | None = None,
    ) -> None:
        self.engine = engine
        self.context_dir = context_dir
        self.dockerfile = dockerfile
        self.run_dir = run_dir
        self.log_path = log_path
        self.timeout = timeout

    def produce(self, environment: BuildEnvironment) -> CompiledArtifact:
        run_stage_build(
            self.engine,
            self.context_dir,
            self.dockerfile,
            PROVISION_STAGE,
            self.log_path,
            timeout=self.timeout,
        )
        iidfile = self.run_dir / f"{BUILDER_STAGE}.iid"
        image_id = run_stage_build(
            self.engine,
            self.context_dir,
            self.dockerfile,
            BUILDER_STAGE,
            self.log_path,
            timeout=self.timeout,
            iidfile=iidfile,
        )
        if not image_id:
            raise PipelineExecutionError(
                "Engine did not report the builder image ID",
                kind=FailureKind.EXECUTION_ERROR,
                log_path=self.log_path,
            )

        source_path = environment.artifact_path
        local_path = extract_artifact(
            self.engine,
            image_id,
            source_path,
            self.run_dir / Path(source_path).name,
            self.log_path,
            timeout=self.timeout,
        )

        try:
            inspection = inspect_artifact(
                local_path, crypto_libraries=environment.flags.crypto_libraries
            )
        except InspectionError as e:
            raise PipelineExecutionError(
                f"Extracted artifact is unusable: {e}",
                kind=FailureKind.INVARIANT,
                log_path=self.log_path,
            ) from e

        return CompiledArtifact(
            source_path=source_path,
            local_path=local_path,
            sha256=compute_file_hash(local_path),
            size_bytes=local_path.stat().st_size,
            inspection=inspection,
        )


class DockerImageAssembler:
    """Assembles the runtime image by building the runtime stage.

    The runtime stage is built untagged. Its config and saved top layer are
    read back by image ID and verified: the layer must add only the
    artifact, and the image must run the entry command. Only a verified
    image receives the tag.

    Args:
        engine: Container engine executable.
        context_dir: Staged build context.
        dockerfile: Rendered Dockerfile inside the context.
        run_dir: Directory for the image ID file and image archive.
        log_path: Build log.
        tag: Tag for the runtime image.
        timeout: Timeout per engine command.
        keep_archive: Keep the saved image archive after verification.
    """

    def __init__(
        self,
        engine: str,
        context_dir: Path,
        dockerfile: Path,
        run_dir: Path,
        log_path: Path,
        tag: str,
        timeout: int | None = None,
        keep_archive: bool = False,
    ) -> None:
        self.engine = engine
        self.context_dir = context_dir
        self.dockerfile = dockerfile
        self.run_dir = run_dir
        self.log_path = log_path
        self.tag = tag
        self.timeout = timeout
        self.keep_archive = keep_archive

    def assemble(self, stage: RuntimeStage, artifact: CompiledArtifact) -> RuntimeImage:
        # Built untagged; the tag is applied only once verification passes
        image_id = run_stage_build(
            self.engine,
            self.context_dir,
            self.dockerfile,
            RUNTIME_STAGE,
            self.log_path,
            timeout=self.timeout,
            iidfile=self.run_dir / f"{RUNTIME_STAGE}.iid",
        )
        if not image_id:
            raise PipelineExecutionError(
                "Engine did not report the runtime image ID",
                kind=FailureKind.EXECUTION_ERROR,
                log_path=self.log_path,
            )

        config = inspect_image_config(
            self.engine, image_id, self.log_path, timeout=self.timeout
        )

        archive = save_image(
            self.engine,
            image_id,
            self.run_dir / IMAGE_ARCHIVE_NAME,
            self.log_path,
            timeout=self.timeout,
        )
        try:
            report = verify_runtime_image(
                archive, stage.destination, stage.entry_command, image_config=config
            )
        except LayerVerificationError as e:
            raise PipelineExecutionError(
                f"Runtime image failed verification ({e.code}): {e}",
                kind=FailureKind.INVARIANT,
                log_path=self.log_path,
            ) from e
        finally:
            if not self.keep_archive:
                archive.unlink(missing_ok=True)

        tag_image(self.engine, image_id, self.tag, self.log_path, timeout=self.timeout)

        return RuntimeImage(
            base_image=stage.base_image,
            artifact=artifact,
            destination=stage.destination,
            entry_command=stage.entry_command,
            tag=self.tag,
            image_id=image_id,
            added_files=tuple(report.added_files + report.whiteouts),
            declared_command=tuple(report.cmd) if report.cmd is not None else None,
        )


__all__ = [
    "DockerArtifactProducer",
    "DockerImageAssembler",
    "STAGE_FAILURE_KINDS",
    "compose_engine_build_command",
    "extract_artifact",
    "inspect_image_config",
    "run_logged",
    "run_stage_build",
    "save_image",
    "tag_image",
]
