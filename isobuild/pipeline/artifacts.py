"""Run artifact records and manifest generation.

This module handles:
- Computing checksums of run outputs
- Describing the executable, Dockerfile, log and manifest of a run
- Generating and writing the run manifest
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from isobuild.types import ArtifactInfo, ArtifactKind

if TYPE_CHECKING:
    from isobuild.pipeline.stages import CompiledArtifact, RuntimeImage

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 64 * 1024  # 64KB
MANIFEST_VERSION = "1.0"


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def describe_file(
    path: Path,
    kind: ArtifactKind,
    root: Path | None = None,
) -> ArtifactInfo:
    """Describe a run output file.

    Args:
        path: File to describe.
        kind: What the file is.
        root: Root for the relative path; defaults to the file's parent.

    Returns:
        ArtifactInfo for the file.
    """
    if root is None:
        root = path.parent
    try:
        relative_path = path.relative_to(root).as_posix()
    except ValueError:
        relative_path = path.name

    return ArtifactInfo(
        filename=path.name,
        relative_path=relative_path,
        size_bytes=path.stat().st_size,
        sha256=compute_file_hash(path),
        kind=kind.value,
    )


def describe_executable(
    artifact: CompiledArtifact,
    root: Path | None = None,
) -> ArtifactInfo:
    """Describe the compiled executable with its linkage facts.

    Args:
        artifact: Compiled artifact extracted from the builder stage.
        root: Root for the relative path.

    Returns:
        ArtifactInfo including linkage mode and strip state.
    """
    info = describe_file(artifact.local_path, ArtifactKind.EXECUTABLE, root)
    info.linkage = artifact.linkage.value if artifact.linkage else None
    info.stripped = artifact.stripped
    return info


def generate_manifest(
    artifacts: list[ArtifactInfo],
    run_id: int | None = None,
    cache_key: str | None = None,
    recipe_name: str | None = None,
    image: RuntimeImage | None = None,
    pipeline_inputs: dict[str, Any] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a run manifest.

    Args:
        artifacts: Files produced by the run.
        run_id: Optional database run ID.
        cache_key: Optional cache key.
        recipe_name: Optional recipe name.
        image: Optional assembled runtime image.
        pipeline_inputs: Optional pipeline inputs dictionary.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": now.isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }

    if run_id is not None:
        manifest["run_id"] = run_id
    if cache_key:
        manifest["cache_key"] = cache_key
    if recipe_name:
        manifest["recipe"] = recipe_name
    if image is not None:
        manifest["image"] = {
            "tag": image.tag,
            "image_id": image.image_id,
            "base_image": image.base_image,
            "destination": image.destination,
            "entry_command": list(image.entry_command),
        }
        if image.artifact.inspection is not None:
            manifest["inspection"] = image.artifact.inspection.to_dict()
    if pipeline_inputs:
        manifest["pipeline_inputs"] = pipeline_inputs
    if extra_metadata:
        manifest["metadata"] = extra_metadata

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
        "kinds": sorted({a.kind for a in artifacts if a.kind}),
    }

    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


def get_executable(artifacts: list[ArtifactInfo]) -> ArtifactInfo | None:
    """Return the executable among a run's artifacts, if any."""
    for artifact in artifacts:
        if artifact.kind == ArtifactKind.EXECUTABLE.value:
            return artifact
    return None


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_VERSION",
    "compute_file_hash",
    "describe_executable",
    "describe_file",
    "generate_manifest",
    "get_executable",
    "write_manifest",
]
