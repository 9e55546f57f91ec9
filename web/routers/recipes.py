"""Recipe endpoints.

- POST /recipes/validate - Validate a recipe document
- POST /recipes/render - Render the two-stage Dockerfile for a recipe
"""

from typing import Any

from fastapi import APIRouter, HTTPException, Query
from fastapi import status as http_status
from fastapi.responses import PlainTextResponse

from isobuild.pipeline.dockerfile import dockerfile_hash, render_dockerfile
from isobuild.pipeline.stages import Pipeline
from isobuild.recipes.io import RecipeError, parse_recipe_data, recipe_to_dict
from isobuild.recipes.schema import RecipeSchema

router = APIRouter()


def parse_or_422(data: dict[str, Any]) -> RecipeSchema:
    """Parse a recipe document, mapping validation errors to HTTP 422."""
    try:
        return parse_recipe_data(data)
    except RecipeError as e:
        raise HTTPException(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": e.code, "message": str(e), "errors": e.errors},
        ) from None


@router.post("/validate")
def validate_recipe_endpoint(data: dict[str, Any]) -> dict[str, Any]:
    """Validate a recipe document.

    Returns:
        The recipe with derived defaults filled in.
    """
    recipe = parse_or_422(data)
    return {"valid": True, "recipe": recipe_to_dict(recipe.resolved())}


@router.post("/render")
def render_recipe_endpoint(
    data: dict[str, Any],
    output: str = Query("json", pattern="^(json|text)$", description="json or text"),
) -> Any:
    """Render the Dockerfile for a recipe.

    Args:
        data: Recipe document.
        output: ``json`` (content plus hash) or ``text`` (raw Dockerfile).
    """
    recipe = parse_or_422(data)
    content = render_dockerfile(Pipeline.from_recipe(recipe))
    if output == "text":
        return PlainTextResponse(content)
    return {
        "recipe": recipe.name,
        "dockerfile": content,
        "sha256": dockerfile_hash(content),
    }
