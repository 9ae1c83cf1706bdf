from typing import Annotated

from fastapi import APIRouter, Depends

from therapy_scheduler.core.config import Settings, get_settings
from therapy_scheduler.services.rules import ConstraintConfig, load_default_rules

router = APIRouter()


@router.get("/settings")
async def read_settings(
    settings: Annotated[Settings, Depends(get_settings)]
) -> dict[str, str | int | float | None]:
    """Expose basic runtime metadata for diagnostics."""
    return {
        "environment": settings.environment,
        "project": settings.project_name,
        "version": settings.version,
        "grid_resolution_minutes": settings.grid_resolution_minutes,
        "score_cache_ttl_seconds": settings.score_cache_ttl_seconds,
    }


@router.get("/constraints", response_model=ConstraintConfig)
async def read_default_constraints() -> ConstraintConfig:
    return load_default_rules().constraints
