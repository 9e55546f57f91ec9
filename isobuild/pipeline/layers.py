"""Runtime image verification from a saved image archive.

This module handles:
- Reading ``docker save`` archives (legacy and OCI layouts)
- Listing what the runtime stage's top layer adds
- Verifying the layer holds only the artifact and no build-time content
- Verifying the declared entry command

The runtime stage contributes exactly one filesystem layer (the artifact
copy; ``CMD`` only touches the image config), so the top layer of the
saved image is the whole of what the pipeline added to the base image.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."

# Paths that only ever come from a build environment
FORBIDDEN_PATTERNS = (
    "usr/bin/cc",
    "usr/bin/c++",
    "usr/bin/gcc*",
    "usr/bin/g++*",
    "usr/bin/ld",
    "usr/bin/ld.*",
    "usr/local/cargo/*",
    "usr/local/rustup/*",
    "*/bin/rustc",
    "*/bin/cargo",
    "usr/include/*",
    "usr/local/include/*",
    "var/lib/apt/lists/*",
    "var/cache/apt/*",
    "var/cache/apk/*",
    "*/target/release/*",
)


class LayerVerificationError(Exception):
    """Raised when a runtime image fails verification."""

    def __init__(self, message: str, code: str = "layer_verification_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class LayerReport:
    """What the runtime stage added to its base image.

    Attributes:
        layer: Archive member name of the inspected layer.
        added_files: Absolute paths of regular files (and links) added.
        whiteouts: Absolute paths deleted from lower layers.
        forbidden: Added paths matching build-time-only patterns.
        cmd: Image config ``Cmd``, if recorded.
    """

    layer: str
    added_files: list[str] = field(default_factory=list)
    whiteouts: list[str] = field(default_factory=list)
    forbidden: list[str] = field(default_factory=list)
    cmd: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "layer": self.layer,
            "added_files": self.added_files,
            "whiteouts": self.whiteouts,
            "forbidden": self.forbidden,
            "cmd": self.cmd,
        }


def _normalize_member_path(name: str) -> str:
    """Turn a layer member name into an absolute POSIX path."""
    name = name.removeprefix("./").strip("/")
    return "/" + name


def is_forbidden(path: str) -> bool:
    """Check whether an image path can only come from a build environment."""
    rel = path.lstrip("/")
    return any(fnmatch.fnmatch(rel, pattern) for pattern in FORBIDDEN_PATTERNS)


def _read_json_member(archive: tarfile.TarFile, name: str) -> Any:
    member = archive.extractfile(name)
    if member is None:
        raise LayerVerificationError(
            f"Archive member is not a file: {name}", code="invalid_image_archive"
        )
    with member:
        return json.load(member)


def read_image_manifest(archive: tarfile.TarFile) -> dict[str, Any]:
    """Read the first image entry of a saved archive's manifest.json.

    Raises:
        LayerVerificationError: If the archive has no usable manifest.
    """
    try:
        manifest = _read_json_member(archive, "manifest.json")
    except KeyError:
        raise LayerVerificationError(
            "Image archive has no manifest.json", code="invalid_image_archive"
        ) from None
    except json.JSONDecodeError as e:
        raise LayerVerificationError(
            f"Invalid manifest.json in image archive: {e}",
            code="invalid_image_archive",
        ) from e

    if not isinstance(manifest, list) or not manifest:
        raise LayerVerificationError(
            "Image archive manifest lists no images", code="invalid_image_archive"
        )
    entry = manifest[0]
    if not entry.get("Layers"):
        raise LayerVerificationError(
            "Image archive manifest lists no layers", code="invalid_image_archive"
        )
    return entry


def list_layer_files(layer: tarfile.TarFile) -> tuple[list[str], list[str]]:
    """List added files and whiteouts of a single layer.

    Directory entries are skipped; they carry no content of their own.

    Returns:
        Tuple of (added file paths, whiteout paths), both sorted.
    """
    added: list[str] = []
    whiteouts: list[str] = []
    for member in layer.getmembers():
        if member.isdir():
            continue
        path = _normalize_member_path(member.name)
        base = path.rsplit("/", 1)[-1]
        if base.startswith(WHITEOUT_PREFIX):
            whiteouts.append(path)
            continue
        added.append(path)
    return sorted(added), sorted(whiteouts)


def read_runtime_layer(image_tar: Path) -> LayerReport:
    """Report what the top layer of a saved image adds.

    Args:
        image_tar: Archive written by ``<engine> save``.

    Returns:
        LayerReport for the top layer, with ``Cmd`` from the image config.

    Raises:
        LayerVerificationError: If the archive cannot be read.
    """
    if not image_tar.exists():
        raise LayerVerificationError(
            f"Image archive not found: {image_tar}", code="image_archive_missing"
        )

    try:
        with tarfile.open(image_tar, mode="r:*") as archive:
            entry = read_image_manifest(archive)
            layer_name = entry["Layers"][-1]

            layer_file = archive.extractfile(layer_name)
            if layer_file is None:
                raise LayerVerificationError(
                    f"Layer is not a file: {layer_name}",
                    code="invalid_image_archive",
                )
            with layer_file, tarfile.open(fileobj=layer_file, mode="r:*") as layer:
                added, whiteouts = list_layer_files(layer)

            cmd: list[str] | None = None
            config_name = entry.get("Config")
            if config_name:
                config = _read_json_member(archive, config_name)
                cmd = (config.get("config") or {}).get("Cmd")
    except (tarfile.TarError, KeyError, OSError) as e:
        raise LayerVerificationError(
            f"Failed to read image archive {image_tar}: {e}",
            code="invalid_image_archive",
        ) from e

    report = LayerReport(
        layer=layer_name,
        added_files=added,
        whiteouts=whiteouts,
        forbidden=[p for p in added if is_forbidden(p)],
        cmd=cmd,
    )
    logger.debug(
        "Top layer %s adds %d file(s), %d whiteout(s)",
        layer_name,
        len(added),
        len(whiteouts),
    )
    return report


def verify_runtime_image(
    image_tar: Path,
    destination: str,
    entry_command: list[str] | tuple[str, ...],
    image_config: dict[str, Any] | None = None,
) -> LayerReport:
    """Verify a runtime image adds only the artifact and runs it.

    Args:
        image_tar: Archive written by ``<engine> save``.
        destination: Declared artifact destination path.
        entry_command: Declared entry command.
        image_config: Optional ``image inspect`` config; its ``Cmd`` takes
            precedence over the one stored in the archive.

    Returns:
        LayerReport of the verified layer.

    Raises:
        LayerVerificationError: If any check fails.
    """
    report = read_runtime_layer(image_tar)

    if image_config is not None:
        report.cmd = image_config.get("Cmd")

    if report.forbidden:
        raise LayerVerificationError(
            "Runtime layer contains build-time content: "
            + ", ".join(report.forbidden),
            code="forbidden_content",
        )
    if report.whiteouts:
        raise LayerVerificationError(
            "Runtime layer removes base image content: "
            + ", ".join(report.whiteouts),
            code="unexpected_whiteout",
        )
    if destination not in report.added_files:
        raise LayerVerificationError(
            f"Artifact {destination} not present in runtime layer",
            code="artifact_not_in_layer",
        )
    if report.added_files != [destination]:
        extra = [p for p in report.added_files if p != destination]
        raise LayerVerificationError(
            "Runtime layer adds files besides the artifact: " + ", ".join(extra),
            code="extra_files",
        )
    if report.cmd is not None and list(report.cmd) != list(entry_command):
        raise LayerVerificationError(
            f"Image Cmd {report.cmd} does not match entry command "
            f"{list(entry_command)}",
            code="cmd_mismatch",
        )

    logger.info("Runtime image verified: only %s added", destination)
    return report


__all__ = [
    "FORBIDDEN_PATTERNS",
    "LayerReport",
    "LayerVerificationError",
    "is_forbidden",
    "list_layer_files",
    "read_image_manifest",
    "read_runtime_layer",
    "verify_runtime_image",
]
