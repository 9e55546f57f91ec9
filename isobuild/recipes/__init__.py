"""Pipeline recipe module.

This module handles:
- Recipe schema validation (toolchain, packages, flags, runtime)
- Loading recipes from YAML/JSON files and dumping them back
"""

from isobuild.recipes.io import RecipeError, load_recipe, parse_recipe_data
from isobuild.recipes.schema import (
    BuilderSchema,
    BuildFlagsSchema,
    RecipeSchema,
    RuntimeSchema,
)

__all__ = [
    "BuildFlagsSchema",
    "BuilderSchema",
    "RecipeError",
    "RecipeSchema",
    "RuntimeSchema",
    "load_recipe",
    "parse_recipe_data",
]
