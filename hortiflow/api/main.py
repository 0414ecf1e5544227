"""HortiFlow FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hortiflow.api.routers import engine as engine_router
from hortiflow.api.routers import rules
from hortiflow.core import setup_logging
from hortiflow.core.config import get_settings
from hortiflow.core.engine import RulesEngine
from hortiflow.core.scheduler import EngineScheduler
from hortiflow.models import Base
from hortiflow.models.base import create_session_factory

logger = logging.getLogger("hortiflow.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler — startup and shutdown."""
    settings = get_settings()
    setup_logging(settings.log_level)

    # Database
    db_engine, SessionFactory = create_session_factory(settings.database_url)

    # Create tables (idempotent; use migrations in production)
    try:
        Base.metadata.create_all(bind=db_engine)
        logger.info("Database tables initialized")
    except Exception as e:
        logger.error(f"DB init failed: {e}")

    # Rules engine
    engine = RulesEngine.from_settings(settings, SessionFactory)
    app.state.engine = engine
    app.state.memory = engine.repository

    # Scheduler
    scheduler = EngineScheduler(engine, settings)
    if settings.engine_autostart:
        scheduler.start()
    app.state.scheduler = scheduler

    logger.info(f"HortiFlow started on http://{settings.host}:{settings.port}")
    yield

    # Shutdown
    await scheduler.stop()
    db_engine.dispose()
    logger.info("HortiFlow shutdown complete")


def create_app() -> FastAPI:
    app = FastAPI(
        title="HortiFlow",
        description="Greenhouse automation rules engine",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rules.router, prefix="/api/rules", tags=["rules"])
    app.include_router(engine_router.router, prefix="/api/engine", tags=["engine"])

    @app.get("/health", tags=["system"])
    async def health():
        return {"status": "ok", "service": "hortiflow", "version": "1.0.0"}

    return app


app = create_app()
