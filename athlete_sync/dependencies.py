"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from athlete_sync.config import Settings
from athlete_sync.services.plan_generation import PlanGenerator
from athlete_sync.wearables.sync.session import SessionManager, SyncSession


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_plan_generator(request: Request) -> PlanGenerator:
    return request.app.state.plan_generator


async def get_account_id(
    x_account_id: Annotated[str | None, Header(alias="X-Account-Id")] = None,
) -> str:
    """The account a request acts for.

    Session management is out of scope; callers identify the account
    through the ``X-Account-Id`` header.
    """
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Account-Id header")
    return x_account_id.strip()


async def get_current_session(
    account_id: Annotated[str, Depends(get_account_id)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
) -> SyncSession:
    return await sessions.get(account_id)


# Annotated shortcuts for route signatures
AccountId = Annotated[str, Depends(get_account_id)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Sessions = Annotated[SessionManager, Depends(get_session_manager)]
CurrentSession = Annotated[SyncSession, Depends(get_current_session)]
Plans = Annotated[PlanGenerator, Depends(get_plan_generator)]
