import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from therapy_scheduler.api.routes import api_router
from therapy_scheduler.core.config import get_settings
from therapy_scheduler.services.cache import CompatibilityCache

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """Configure logging based on settings."""
    settings = get_settings()
    log_level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def create_application() -> FastAPI:
    settings = get_settings()
    setup_logging()
    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        description="API for proposing conflict-free therapy session schedules.",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Process-wide score cache; every scheduling request sweeps expired entries before it runs.
    app.state.score_cache = CompatibilityCache(default_ttl=settings.score_cache_ttl_seconds)
    app.include_router(api_router, prefix="/api")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Simple health endpoint for infrastructure monitoring."""
        return {"status": "ok"}

    logger.info("Created %s %s (%s)", settings.project_name, settings.version, settings.environment)
    return app


app = create_application()
