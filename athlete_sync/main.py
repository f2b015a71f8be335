"""Athlete Sync API — FastAPI application entry point.

Run locally:
    uvicorn athlete_sync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from athlete_sync.config import Settings, get_settings
from athlete_sync.routers import health, plans, wearables
from athlete_sync.services.document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    PostgresDocumentStore,
)
from athlete_sync.services.plan_generation import PlanGenerator
from athlete_sync.wearables.config_loader import get_sync_config
from athlete_sync.wearables.storage import LocalStorage
from athlete_sync.wearables.sync.session import SessionManager

logger = logging.getLogger("athlete_sync")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


async def open_document_store(settings: Settings) -> DocumentStore:
    if settings.database_url:
        return await PostgresDocumentStore.connect(settings.database_url)
    logger.info("DATABASE_URL not set; using the in-memory document store")
    return InMemoryDocumentStore()


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting Athlete Sync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    # Fails startup on an invalid sync_config.yaml.
    sync_config = get_sync_config()

    document_store = await open_document_store(settings)
    app.state.document_store = document_store
    app.state.sessions = SessionManager(
        settings,
        document_store,
        LocalStorage(settings.storage_path),
        sync_config=sync_config,
    )
    app.state.plan_generator = PlanGenerator(
        api_key=settings.gemini_api_key, model=settings.gemini_model
    )
    yield
    await app.state.sessions.close_all()
    await document_store.close()
    logger.info("Athlete Sync API shut down")


# ---------- App factory ----------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Athlete Sync API",
        description=(
            "Wearable sync for athletes — provider connections, live metrics "
            "with rolling history, cross-device mirroring, and AI-generated plans."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(wearables.router, prefix=v1_prefix)
    app.include_router(wearables.oauth_router, prefix=v1_prefix)
    app.include_router(plans.router, prefix=v1_prefix)

    return app


app = create_app()
