from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from restaurant_intel.core.config import settings
from restaurant_intel.core.database import build_engine, build_session_factory, create_tables
from restaurant_intel.core.logging import configure_logging
from restaurant_intel.modules.extraction.agents.orchestrator import PipelineOrchestrator
from restaurant_intel.modules.extraction.agents.registry import build_registry
from restaurant_intel.modules.extraction.repository import InMemoryRepository, Repository
from restaurant_intel.modules.extraction.router import router as extraction_router
from restaurant_intel.modules.extraction.sql_repository import SqlAlchemyRepository

logger = structlog.get_logger()


async def build_repository(app: FastAPI) -> Repository:
    if settings.repository_backend == "sql":
        engine = build_engine()
        await create_tables(engine)
        app.state.engine = engine
        return SqlAlchemyRepository(build_session_factory(engine))
    if settings.repository_backend != "memory":
        raise ValueError(f"Unknown repository backend: {settings.repository_backend}")
    return InMemoryRepository()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging()
    logger.info("Starting Restaurant Intelligence API", backend=settings.repository_backend)

    # Tests pre-populate app.state with their own doubles
    if getattr(app.state, "repository", None) is None:
        app.state.repository = await build_repository(app)
    if getattr(app.state, "registry", None) is None:
        app.state.registry = build_registry()
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = PipelineOrchestrator(app.state.registry, app.state.repository)

    yield

    await app.state.registry.aclose()
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
    logger.info("Shutting down Restaurant Intelligence API")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(extraction_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
