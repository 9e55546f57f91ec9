"""Shared type definitions for isobuild.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class PipelineState(str, Enum):
    """State of a pipeline run.

    A run moves pending -> building -> packaged, or stops in failed.
    There are no retries and no transitions out of a terminal state.
    """

    PENDING = "pending"
    BUILDING = "building"
    PACKAGED = "packaged"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are allowed."""
        return self in (PipelineState.PACKAGED, PipelineState.FAILED)


class FailureKind(str, Enum):
    """Classification of a pipeline failure."""

    ENVIRONMENT_PROVISIONING = "environment_provisioning"
    COMPILATION = "compilation"
    ARTIFACT_HANDOFF = "artifact_handoff"
    INVARIANT = "invariant"
    EXECUTION_ERROR = "execution_error"
    BUILD_TIMEOUT = "build_timeout"


class LinkageMode(str, Enum):
    """Linkage of the compiled artifact against the cryptography library."""

    STATIC = "static"
    DYNAMIC = "dynamic"


class PackageManager(str, Enum):
    """Package manager used to provision the build environment."""

    APT = "apt"
    APK = "apk"


class ArtifactKind(str, Enum):
    """Kind of file recorded for a run."""

    EXECUTABLE = "executable"
    DOCKERFILE = "dockerfile"
    MANIFEST = "manifest"
    LOG = "log"


@dataclass
class ArtifactInfo:
    """Information about a file produced by a run."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None
    linkage: str | None = None
    stripped: bool | None = None


__all__ = [
    "ArtifactInfo",
    "ArtifactKind",
    "FailureKind",
    "LinkageMode",
    "PackageManager",
    "PipelineState",
]
