"""
Main application entry point for the hybrid spaced-repetition engine.

Usage:
    - Direct: python -m hybrid_srs.main
    - ASGI server: uvicorn --factory hybrid_srs.main:app_factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hybrid_srs.api import register_exception_handlers
from hybrid_srs.common.logger import app_logger, configure_from_settings
from hybrid_srs.config import AppConfig, load_config
from hybrid_srs.container import EngineContainer
from hybrid_srs.routes import ROUTERS

# Setup module logger
logger = app_logger.getChild("main")


def create_app(config: Optional[AppConfig] = None, container: Optional[EngineContainer] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Application configuration; loaded from file/env when omitted
        container: Pre-built service container, mainly for tests

    Returns:
        Configured FastAPI app. Services start in the lifespan handler.
    """
    config = config or (container.config if container else load_config())
    configure_from_settings(config.logging)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = container or EngineContainer(config)
        app.state.container = engine
        try:
            await engine.start(run_training=not config.is_testing)
            logger.info("Application startup complete")
        except Exception as e:
            logger.error(f"Failed to initialize application: {e}")
            raise
        try:
            yield
        finally:
            await engine.close()
            logger.info("Application shutdown complete")

    app = FastAPI(
        title=config.app_name,
        description="Hybrid SM-2 and graph-enhanced spaced repetition engine",
        version=config.version,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    for router in ROUTERS:
        app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"message": f"Welcome to {config.app_name}", "version": config.version}

    logger.info(f"Application initialized with {len(app.routes)} routes (environment: {config.environment})")
    return app


def app_factory() -> FastAPI:
    """Entry point for ASGI servers: reads .env, then builds the app from file and environment."""
    load_dotenv()
    return create_app()


if __name__ == "__main__":
    import uvicorn

    load_dotenv()
    settings = load_config()
    logger.info(f"Starting server on {settings.api.host}:{settings.api.port} (reload: {settings.api.reload})")

    uvicorn.run(
        "hybrid_srs.main:app_factory",
        factory=True,
        host=settings.api.host,
        port=settings.api.port,
        reload=settings.api.reload,
        log_level=settings.logging.level.lower()
    )
