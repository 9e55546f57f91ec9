"""Image registry module.

This module handles:
- Parsing image references
- Resolving tags to manifest digests over the registry HTTP API
- Pinning a recipe's toolchain and base images to digests
"""

from isobuild.registry.resolve import (
    ImageReference,
    RegistryError,
    parse_image_reference,
    pin_recipe,
    resolve_digest,
)

__all__ = [
    "ImageReference",
    "RegistryError",
    "parse_image_reference",
    "pin_recipe",
    "resolve_digest",
]
