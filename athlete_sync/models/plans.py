"""Pydantic models for plan generation requests and responses."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from athlete_sync.models.base import SyncBase


class PlanRequestBody(SyncBase):
    subject_context: dict[str, Any] = Field(default_factory=dict, alias="subjectContext")
    structured_output: bool = Field(default=True, alias="structuredOutput")


class PlanResponseRead(SyncBase):
    category: str
    text: str
    document: Any | None = None
    fell_back: bool = False
