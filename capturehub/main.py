"""
CaptureHub - FastAPI Application Entry Point

Main application module with logging infrastructure,
middleware configuration, and route mounting.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from capturehub import __version__
from capturehub.agents.registry import AgentRegistry
from capturehub.config import settings
from capturehub.filters.presets import FilterPresetStore
from capturehub.log import configure_logging

# Configure logging on module load
configure_logging()

logger = structlog.get_logger(__name__)


# =============================================================================
# Application Lifespan
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Builds the agent registry and preset store, runs the roster refresh
    loop while the app is up and tears every poller down on shutdown.
    """
    logger.info(
        "capturehub_starting",
        version=__version__,
        host=settings.host,
        port=settings.port,
        directory_url=settings.directory_url,
    )

    settings.ensure_presets_dir()
    app.state.presets = FilterPresetStore()
    app.state.registry = AgentRegistry(auto_watch=settings.watch_all_agents)

    await app.state.registry.refresh()
    app.state.registry.start()
    logger.info("registry_ready", agents=len(app.state.registry))

    yield

    await app.state.registry.aclose()
    logger.info("capturehub_shutdown")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="CaptureHub",
    description="Coordinator for remote packet capture agents",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check() -> dict:
    """Service status and directory connectivity."""
    registry = getattr(app.state, "registry", None)
    return {
        "status": "healthy",
        "service": "capturehub",
        "version": __version__,
        "directory_url": settings.directory_url,
        "agents": len(registry) if registry is not None else 0,
        "directory_error": registry.last_error if registry is not None else "",
    }


# =============================================================================
# API Routes
# =============================================================================

from capturehub.api.routes import router as api_router  # noqa: E402

app.include_router(api_router, prefix="/api")


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "capturehub.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
