"""Recipe import/export functionality.

This module provides helpers for loading pipeline recipes from YAML/JSON
files and dumping validated recipes back to file formats.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from isobuild.recipes.schema import RecipeSchema

YAML_SUFFIXES = (".yaml", ".yml")
JSON_SUFFIXES = (".json",)


class RecipeError(Exception):
    """Raised when a recipe cannot be loaded or validated."""

    def __init__(
        self,
        message: str,
        code: str = "recipe_invalid",
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.errors = errors or []


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_recipe_data(data: dict[str, Any]) -> RecipeSchema:
    """Parse and validate recipe data.

    Args:
        data: Dictionary containing recipe data.

    Returns:
        Validated RecipeSchema instance.

    Raises:
        RecipeError: If data does not match the schema.
    """
    try:
        return RecipeSchema.model_validate(data)
    except ValidationError as e:
        raise RecipeError(
            f"Invalid recipe: {e.error_count()} validation error(s)",
            errors=[
                {"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()
            ],
        ) from e


def load_recipe(path: Path) -> RecipeSchema:
    """Load and validate a recipe from a YAML or JSON file.

    File format is determined by extension.

    Args:
        path: Path to the recipe file.

    Returns:
        Validated RecipeSchema instance.

    Raises:
        RecipeError: If the file is missing, unreadable, has an unsupported
            extension, or fails validation.
    """
    suffix = path.suffix.lower()
    try:
        if suffix in YAML_SUFFIXES:
            data = load_yaml(path)
        elif suffix in JSON_SUFFIXES:
            data = load_json(path)
        else:
            raise RecipeError(
                f"Unsupported recipe format: {suffix or '(none)'}",
                code="recipe_format",
            )
    except FileNotFoundError as e:
        raise RecipeError(f"Recipe not found: {path}", code="recipe_not_found") from e
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        raise RecipeError(f"Cannot parse recipe {path}: {e}", code="recipe_parse") from e

    return parse_recipe_data(data)


def recipe_to_dict(recipe: RecipeSchema) -> dict[str, Any]:
    """Convert a recipe to a plain dict, dropping unset optional fields.

    Args:
        recipe: RecipeSchema instance.

    Returns:
        JSON/YAML serializable dictionary.
    """
    return recipe.model_dump(mode="json", exclude_none=True)


def dump_recipe_yaml(recipe: RecipeSchema) -> str:
    """Serialize a recipe as YAML.

    Args:
        recipe: RecipeSchema instance.

    Returns:
        YAML document string.
    """
    return yaml.safe_dump(recipe_to_dict(recipe), sort_keys=False)


def dump_recipe_json(recipe: RecipeSchema) -> str:
    """Serialize a recipe as JSON.

    Args:
        recipe: RecipeSchema instance.

    Returns:
        JSON document string.
    """
    return json.dumps(recipe_to_dict(recipe), indent=2)


def write_recipe(recipe: RecipeSchema, path: Path) -> Path:
    """Write a recipe to a file, choosing the format by extension.

    Args:
        recipe: RecipeSchema instance.
        path: Output path (.yaml, .yml or .json).

    Returns:
        Path to the written file.

    Raises:
        RecipeError: If the extension is not supported.
    """
    suffix = path.suffix.lower()
    if suffix in YAML_SUFFIXES:
        content = dump_recipe_yaml(recipe)
    elif suffix in JSON_SUFFIXES:
        content = dump_recipe_json(recipe) + "\n"
    else:
        raise RecipeError(
            f"Unsupported recipe format: {suffix or '(none)'}", code="recipe_format"
        )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


__all__ = [
    "RecipeError",
    "dump_recipe_json",
    "dump_recipe_yaml",
    "load_json",
    "load_recipe",
    "load_yaml",
    "parse_recipe_data",
    "recipe_to_dict",
    "write_recipe",
]
