"""Wearable sync endpoints: devices, connect/disconnect, live metrics, OAuth callbacks."""

from __future__ import annotations

import logging
from html import escape
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import HTMLResponse

from athlete_sync.dependencies import CurrentSession, Sessions
from athlete_sync.models.wearables import (
    ConnectResponse,
    DeviceConnectionRead,
    MetricsRecordRead,
    MetricsSnapshotRead,
)
from athlete_sync.wearables.base import ProviderId
from athlete_sync.wearables.errors import (
    AuthExchangeError,
    AuthorizationDeniedError,
    DeviceNotFoundError,
    NetworkError,
)
from athlete_sync.wearables.sync.engine import account_from_callback_state

router = APIRouter(prefix="/wearables", tags=["wearables"])
oauth_router = APIRouter(prefix="/oauth", tags=["oauth"])
logger = logging.getLogger("athlete_sync.routers.wearables")

_OAUTH_PROVIDERS = {ProviderId.CLOUD_FITNESS, ProviderId.ACTIVITY_SERVICE}


# ---------- Devices ----------

@router.get("/devices", response_model=list[DeviceConnectionRead])
async def list_devices(session: CurrentSession) -> Any:
    engine = session.engine
    return [
        DeviceConnectionRead.from_connection(conn, engine.adapter(conn.provider_id).DISPLAY_NAME)
        for conn in engine.devices()
    ]


# ---------- Connect / disconnect ----------

@router.post("/connect/{provider_id}", response_model=ConnectResponse, status_code=202)
async def connect_provider(provider_id: ProviderId, session: CurrentSession) -> Any:
    """Start connecting a provider.

    OAuth providers answer immediately with the consent URL; the session
    stays ``connecting`` until the callback arrives.  Bluetooth pairing
    resolves within the request.
    """
    engine = session.engine
    pending = await engine.start_connect(provider_id)
    if pending.authorization_url is not None:
        return ConnectResponse(
            provider_id=provider_id,
            state=engine.state.value,
            authorization_url=pending.authorization_url,
        )

    try:
        handle = await pending.task
    except (DeviceNotFoundError, AuthorizationDeniedError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return ConnectResponse(
        provider_id=provider_id,
        state=engine.state.value,
        device_name=handle.device_name,
    )


@router.delete("/connect", status_code=204)
async def disconnect_provider(session: CurrentSession) -> None:
    await session.engine.disconnect()


# ---------- Metrics ----------

@router.get("/metrics", response_model=MetricsSnapshotRead)
async def get_metrics(session: CurrentSession) -> Any:
    store = session.store
    return MetricsSnapshotRead(
        active_provider=session.engine.active_provider,
        state=session.engine.state.value,
        current=MetricsRecordRead.from_record(store.current()),
        history=[MetricsRecordRead.from_record(r) for r in store.history()],
    )


# ---------- OAuth redirect target ----------

@oauth_router.get("/{provider_id}/callback", response_class=HTMLResponse)
async def oauth_callback(
    provider_id: ProviderId,
    request: Request,
    sessions: Sessions,
    state: str = Query(..., description="Callback state issued when the connect started"),
    code: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> HTMLResponse:
    """Complete an OAuth consent flow.

    Exchanges the code for tokens, then posts an ``oauth_callback``
    message to the waiting session with this request's origin.  Nothing
    is exchanged unless ``state`` matches a connect that is still pending.
    """
    if provider_id not in _OAUTH_PROVIDERS:
        raise HTTPException(status_code=404, detail="Provider does not use OAuth")
    account_id = account_from_callback_state(state)
    session = sessions.find(account_id) if account_id else None
    if session is None:
        raise HTTPException(status_code=404, detail="No sync session for this account")
    if not (
        session.engine.accepts_callback(provider_id, state)
        and session.channel.is_waiting(provider_id)
    ):
        logger.warning("[%s] Rejected %s callback: no matching pending connect", account_id, provider_id.value)
        return _callback_page("Connection failed: no pending connect.")

    message: dict[str, Any] = {"type": "oauth_callback", "provider": provider_id.value}
    if error or not code:
        message.update(success=False, error=error or "No authorization code received")
    else:
        try:
            token = await session.token_store.exchange_authorization_code(provider_id, code)
        except (AuthExchangeError, NetworkError) as exc:
            logger.warning("[%s] %s token exchange failed: %s", account_id, provider_id.value, exc)
            message.update(success=False, error="Token exchange failed")
        else:
            message.update(success=True, token=token.access_token)

    origin = str(request.base_url).rstrip("/")
    delivered = session.channel.post(message, origin=origin)
    if message["success"] and delivered:
        body = "Connected. You can close this window."
    else:
        body = f"Connection failed: {message.get('error') or 'no pending connect'}."
    return _callback_page(body)


def _callback_page(body: str) -> HTMLResponse:
    return HTMLResponse(f"<!doctype html><title>Athlete Sync</title><p>{escape(body)}</p>")
