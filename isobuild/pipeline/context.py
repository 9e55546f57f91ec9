"""Build context staging and hashing.

This module handles:
- Copying the service source tree into a private build context
- Writing the rendered Dockerfile and a .dockerignore next to it
- Computing a deterministic hash of the source tree

The staged directory is what the container engine receives, so a stale
``target/`` directory or VCS metadata never reaches the builder stage.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import shutil
import stat
from collections.abc import Iterable
from pathlib import Path

logger = logging.getLogger(__name__)

DOCKERFILE_NAME = "Dockerfile"
DOCKERIGNORE_NAME = ".dockerignore"

# Never part of a build context: VCS metadata and local build output
DEFAULT_EXCLUDES = (".git", ".hg", ".svn", "target", DOCKERFILE_NAME, DOCKERIGNORE_NAME)


class ContextStagingError(Exception):
    """Raised when build context staging fails."""

    def __init__(self, message: str, code: str = "context_staging_error") -> None:
        super().__init__(message)
        self.code = code


def is_excluded(rel_path: Path, excludes: Iterable[str]) -> bool:
    """Check whether a relative path falls under an exclude pattern.

    A pattern matches when it matches the whole relative path or any one
    of its components, so nested workspace members' ``target/`` output is
    skipped as well as the top-level one.

    Args:
        rel_path: Path relative to the source root.
        excludes: Glob patterns.

    Returns:
        True if the path should not be staged.
    """
    posix = rel_path.as_posix()
    return any(
        fnmatch.fnmatch(posix, pattern)
        or any(fnmatch.fnmatch(part, pattern) for part in rel_path.parts)
        for pattern in excludes
    )


def iter_source_files(
    source_dir: Path,
    excludes: Iterable[str] = DEFAULT_EXCLUDES,
) -> list[Path]:
    """List files of a source tree in sorted order, minus excludes.

    Args:
        source_dir: Root of the source tree.
        excludes: Glob patterns to skip.

    Returns:
        Sorted list of file paths (absolute, under source_dir).

    Raises:
        ContextStagingError: If a symlink escapes the source tree.
    """
    patterns = tuple(excludes)
    source_resolved = source_dir.resolve()
    files: list[Path] = []

    for path in sorted(source_dir.rglob("*")):
        rel_path = path.relative_to(source_dir)
        if is_excluded(rel_path, patterns):
            continue

        if path.is_symlink():
            target = path.resolve()
            try:
                target.relative_to(source_resolved)
            except ValueError:
                raise ContextStagingError(
                    f"Symlink {path} points outside source tree: {target}",
                    code="symlink_escape",
                ) from None

        if path.is_file():
            files.append(path)

    return files


def compute_tree_hash(
    source_dir: Path,
    excludes: Iterable[str] = DEFAULT_EXCLUDES,
) -> str:
    """Compute a deterministic hash of a source tree.

    The hash covers sorted relative paths, file modes (permission bits)
    and file contents.

    Args:
        source_dir: Directory to hash.
        excludes: Glob patterns to skip.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    if not source_dir.exists():
        return hasher.hexdigest()

    for path in iter_source_files(source_dir, excludes):
        rel_path = path.relative_to(source_dir).as_posix()
        mode = stat.S_IMODE(path.stat().st_mode)

        # path\0mode\0content\0
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(f"{mode:o}".encode())
        hasher.update(b"\0")
        hasher.update(path.read_bytes())
        hasher.update(b"\0")

    return hasher.hexdigest()


def stage_context(
    staging_dir: Path,
    source_dir: Path,
    dockerfile: str,
    excludes: Iterable[str] = DEFAULT_EXCLUDES,
) -> Path:
    """Stage a build context: source tree plus Dockerfile.

    Args:
        staging_dir: Directory to stage into (created if missing).
        source_dir: Root of the service source tree.
        dockerfile: Rendered Dockerfile content.
        excludes: Glob patterns to leave out of the context.

    Returns:
        Path to the staged Dockerfile.

    Raises:
        ContextStagingError: If the source is missing or copying fails.
    """
    if not source_dir.exists():
        raise ContextStagingError(
            f"Source directory not found: {source_dir}", code="source_not_found"
        )
    if not source_dir.is_dir():
        raise ContextStagingError(
            f"Source path is not a directory: {source_dir}", code="source_not_dir"
        )

    patterns = tuple(excludes)
    staging_dir.mkdir(parents=True, exist_ok=True)

    try:
        count = 0
        for path in iter_source_files(source_dir, patterns):
            dest = staging_dir / path.relative_to(source_dir)
            dest.parent.mkdir(parents=True, exist_ok=True)
            # Symlinks inside the tree are staged as their content
            shutil.copy2(path.resolve(), dest)
            count += 1

        dockerfile_path = staging_dir / DOCKERFILE_NAME
        dockerfile_path.write_text(dockerfile, encoding="utf-8")
        (staging_dir / DOCKERIGNORE_NAME).write_text(
            "\n".join(patterns) + "\n",
            encoding="utf-8",
        )
    except OSError as e:
        raise ContextStagingError(
            f"Failed to stage build context from {source_dir}: {e}",
            code="context_copy_error",
        ) from e

    logger.debug("Staged %d source files into %s", count, staging_dir)
    return dockerfile_path


__all__ = [
    "DEFAULT_EXCLUDES",
    "DOCKERFILE_NAME",
    "DOCKERIGNORE_NAME",
    "ContextStagingError",
    "compute_tree_hash",
    "is_excluded",
    "iter_source_files",
    "stage_context",
]
