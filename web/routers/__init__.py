"""Router modules for FastAPI web API."""

from web.routers import config, health, recipes, runs

__all__ = ["config", "health", "recipes", "runs"]
