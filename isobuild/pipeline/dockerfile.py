"""Render a pipeline into a two-stage Dockerfile.

This module handles:
- Composing the package installation step (with cache purge)
- Composing the build step with its environment prefix
- Rendering the provision, builder and runtime stages

The builder side is split into two named stages, ``provision`` and
``builder``, so a failing engine build can be attributed to package
installation or to compilation. The runtime stage copies nothing but the
artifact path.
"""

from __future__ import annotations

import hashlib
import json
import shlex
from typing import TYPE_CHECKING

from isobuild.types import PackageManager

if TYPE_CHECKING:
    from isobuild.pipeline.stages import BuildEnvironment, Pipeline, RuntimeStage

PROVISION_STAGE = "provision"
BUILDER_STAGE = "builder"
RUNTIME_STAGE = "runtime"

# Ordered as the engine must build them
STAGE_ORDER = (PROVISION_STAGE, BUILDER_STAGE, RUNTIME_STAGE)

CONTINUATION = " \\\n    "

APT_CACHE_PATHS = ("/var/lib/apt/lists/*", "/tmp/*", "/var/tmp/*")


def compose_install_command(
    packages: tuple[str, ...] | list[str],
    package_manager: PackageManager = PackageManager.APT,
) -> str | None:
    """Compose the shell command installing native packages.

    Package-manager caches are purged in the same command so they never
    land in a layer.

    Args:
        packages: Package names to install.
        package_manager: Package manager of the toolchain image.

    Returns:
        Shell command string, or None when there is nothing to install.
    """
    if not packages:
        return None

    package_list = " ".join(shlex.quote(p) for p in packages)

    if package_manager == PackageManager.APK:
        return f"apk add --no-cache{CONTINUATION}{package_list}"

    return (
        f"apt-get update && apt-get -y --no-install-recommends install"
        f"{CONTINUATION}{package_list}"
        f"{CONTINUATION}&& apt-get clean"
        f"{CONTINUATION}&& rm -rf {' '.join(APT_CACHE_PATHS)}"
    )


def compose_build_command(environment: BuildEnvironment) -> str:
    """Compose the build command with its environment prefix.

    Each variable goes on its own continued line ahead of the command.

    Args:
        environment: Builder environment.

    Returns:
        Shell command string.
    """
    parts = [f"{name}={shlex.quote(value)}" for name, value in environment.env]
    parts.append(shlex.join(environment.build_command))
    return CONTINUATION.join(parts)


def render_builder_stages(environment: BuildEnvironment) -> str:
    """Render the provision and builder stages.

    Args:
        environment: Builder environment.

    Returns:
        Dockerfile fragment.
    """
    lines = [f"FROM {environment.toolchain_image} AS {PROVISION_STAGE}"]
    install = compose_install_command(
        environment.packages, environment.package_manager
    )
    if install:
        lines.append(f"RUN {install}")

    lines.append("")
    lines.append(f"FROM {PROVISION_STAGE} AS {BUILDER_STAGE}")
    lines.append(f"WORKDIR {environment.workdir}")
    lines.append("COPY . .")
    lines.append("")
    lines.append(f"RUN {compose_build_command(environment)}")
    return "\n".join(lines) + "\n"


def render_runtime_stage(stage: RuntimeStage, artifact_path: str) -> str:
    """Render the runtime stage.

    Args:
        stage: Runtime stage definition.
        artifact_path: Path of the artifact in the builder stage.

    Returns:
        Dockerfile fragment.
    """
    lines = [
        f"FROM {stage.base_image} AS {RUNTIME_STAGE}",
        f"COPY --from={BUILDER_STAGE} {artifact_path} {stage.destination}",
        f"CMD {json.dumps(list(stage.entry_command))}",
    ]
    return "\n".join(lines) + "\n"


def render_dockerfile(pipeline: Pipeline) -> str:
    """Render the complete two-stage Dockerfile for a pipeline.

    Rendering is deterministic: identical pipelines give identical text.

    Args:
        pipeline: Pipeline to render.

    Returns:
        Dockerfile content.
    """
    environment = pipeline.builder.environment
    return (
        render_builder_stages(environment)
        + "\n"
        + render_runtime_stage(pipeline.runtime, environment.artifact_path)
    )


def dockerfile_hash(content: str) -> str:
    """Return the SHA-256 hex digest of rendered Dockerfile content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


__all__ = [
    "BUILDER_STAGE",
    "PROVISION_STAGE",
    "RUNTIME_STAGE",
    "STAGE_ORDER",
    "compose_build_command",
    "compose_install_command",
    "dockerfile_hash",
    "render_builder_stages",
    "render_dockerfile",
    "render_runtime_stage",
]
