"""Plan generation endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from athlete_sync.dependencies import AccountId, Plans
from athlete_sync.models.plans import PlanRequestBody, PlanResponseRead
from athlete_sync.services.plan_generation import (
    PlanCategory,
    PlanGenerationError,
    PlanRequest,
)

router = APIRouter(prefix="/plans", tags=["plans"])


@router.post("/{category}", response_model=PlanResponseRead)
async def generate_plan(
    category: PlanCategory, body: PlanRequestBody, account_id: AccountId, plans: Plans
) -> Any:
    try:
        plan = await plans.generate(
            PlanRequest(
                category=category,
                subject_context=body.subject_context,
                structured_output=body.structured_output,
            )
        )
    except PlanGenerationError as exc:
        raise HTTPException(
            status_code=502, detail=f"Could not generate {category.value} plan; please retry"
        ) from exc
    return PlanResponseRead(
        category=plan.category.value,
        text=plan.text,
        document=plan.document,
        fell_back=plan.fell_back,
    )
