"""Health check endpoint — public, no account header required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from athlete_sync.dependencies import AppSettings

router = APIRouter(tags=["system"])
logger = logging.getLogger("athlete_sync.health")


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also probes the document store behind remote sync.
    """
    store_ok = False
    try:
        store_ok = await request.app.state.document_store.ping()
    except Exception as exc:
        logger.warning("Health check document store probe failed: %s", exc)

    return {
        "status": "healthy" if store_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "document_store": "connected" if store_ok else "unreachable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
