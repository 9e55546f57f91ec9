"""isobuild - Isolated two-stage build pipeline for static service binaries.

This package renders pipeline recipes into two-stage container build
definitions, drives the container engine through the builder and runtime
stages, and verifies the delivered artifact and image.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
