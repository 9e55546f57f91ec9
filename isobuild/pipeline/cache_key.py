"""Cache key computation for pipeline runs.

This module handles:
- Canonical input snapshot creation from recipes
- Deterministic hash computation over normalized inputs

Runs with identical inputs (toolchain, package set, flags, rendered
Dockerfile and source tree) share a cache key, which is what makes
rebuilds idempotent.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from isobuild.recipes.schema import RecipeSchema

# Bump when the cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"


@dataclass
class PipelineInputs:
    """Canonical representation of all pipeline inputs.

    Attributes:
        schema_version: Version of cache key schema.
        recipe_snapshot: Normalized recipe data.
        dockerfile_hash: SHA-256 of the rendered Dockerfile.
        source_hash: SHA-256 of the staged source tree.
        options: Additional run options that affect output.
    """

    schema_version: str = CACHE_KEY_SCHEMA_VERSION
    recipe_snapshot: dict[str, Any] = field(default_factory=dict)
    dockerfile_hash: str = ""
    source_hash: str = ""
    options: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def normalize_recipe_snapshot(recipe: RecipeSchema) -> dict[str, Any]:
    """Create a normalized recipe snapshot for the cache key.

    Only fields that affect the produced artifact or image are kept;
    package lists and extra environment are sorted so ordering in the
    recipe file does not change the key.

    Args:
        recipe: RecipeSchema instance.

    Returns:
        Dictionary with normalized recipe data.
    """
    flags = recipe.builder.flags
    snapshot: dict[str, Any] = {
        "binary": recipe.binary,
        "toolchain_image": recipe.builder.toolchain_image,
        "package_manager": recipe.builder.package_manager.value,
        "packages": sorted(recipe.builder.packages),
        "workdir": recipe.builder.workdir,
        "build_command": list(recipe.builder.build_command),
        "artifact_path": recipe.artifact_path,
        "flags": {
            "strip_symbols": flags.strip_symbols,
            "static_crypto": flags.static_crypto,
            "crypto_env_prefix": flags.crypto_env_prefix,
            "crypto_lib_dir": flags.crypto_lib_dir,
            "crypto_include_dir": flags.crypto_include_dir,
            "crypto_libraries": sorted(flags.crypto_libraries),
            "linker_args": list(flags.linker_args),
            "extra_env": dict(sorted(flags.extra_env.items())),
        },
        "base_image": recipe.runtime.base_image,
        "artifact_destination": recipe.artifact_destination,
        "entry_command": recipe.entry_command,
    }
    return snapshot


def create_pipeline_inputs(
    recipe: RecipeSchema,
    dockerfile_hash: str,
    source_hash: str,
    options: dict[str, Any] | None = None,
) -> PipelineInputs:
    """Create canonical pipeline inputs.

    Args:
        recipe: RecipeSchema instance.
        dockerfile_hash: Hash of the rendered Dockerfile.
        source_hash: Hash of the source tree.
        options: Additional run options.

    Returns:
        PipelineInputs instance.
    """
    return PipelineInputs(
        schema_version=CACHE_KEY_SCHEMA_VERSION,
        recipe_snapshot=normalize_recipe_snapshot(recipe),
        dockerfile_hash=dockerfile_hash,
        source_hash=source_hash,
        options=options or {},
    )


def compute_cache_key(inputs: PipelineInputs) -> str:
    """Compute a cache key from pipeline inputs.

    Args:
        inputs: PipelineInputs instance.

    Returns:
        Cache key as ``sha256:<hex>``.
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def compute_cache_key_from_recipe(
    recipe: RecipeSchema,
    dockerfile_hash: str,
    source_hash: str,
    options: dict[str, Any] | None = None,
) -> tuple[str, PipelineInputs]:
    """Compute the cache key directly from a recipe.

    Returns:
        Tuple of (cache_key, PipelineInputs).
    """
    inputs = create_pipeline_inputs(
        recipe=recipe,
        dockerfile_hash=dockerfile_hash,
        source_hash=source_hash,
        options=options,
    )
    return compute_cache_key(inputs), inputs


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "PipelineInputs",
    "compute_cache_key",
    "compute_cache_key_from_recipe",
    "create_pipeline_inputs",
    "normalize_recipe_snapshot",
]
