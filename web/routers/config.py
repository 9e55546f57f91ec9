"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter

from isobuild.config import get_settings

router = APIRouter()


@router.get("")
def get_config() -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    settings = get_settings()
    return {
        "work_dir": str(settings.work_dir),
        "artifacts_dir": str(settings.artifacts_dir),
        "db_url": settings.db_url,
        "container_engine": settings.container_engine,
        "image_prefix": settings.image_prefix,
        "registry_url": settings.registry_url,
        "offline": settings.offline,
        "keep_context": settings.keep_context,
        "log_level": settings.log_level,
        "build_timeout": settings.build_timeout,
        "registry_timeout": settings.registry_timeout,
        "lock_timeout": settings.lock_timeout,
    }
