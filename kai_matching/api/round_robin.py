"""Round-robin tier policy lookups."""

from typing import Optional

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel

from ..models.caterer import SubscriptionTier
from ..services.round_robin import RoundRobinScheduler
from .dependencies import get_scheduler

router = APIRouter(prefix="/round-robin", tags=["Round Robin"])


class TierLookup(BaseModel):
    total_budget: float
    tier: SubscriptionTier
    monthly_job_cap: Optional[int]
    policy_version: str


@router.get("/tiers/{budget}", response_model=TierLookup, summary="Tier for a total budget")
async def tier_for_budget(
    budget: float = Path(..., ge=0, description="Total event budget"),
    scheduler: RoundRobinScheduler = Depends(get_scheduler),
) -> TierLookup:
    tier = scheduler.get_tier_for_budget(budget)
    return TierLookup(
        total_budget=budget,
        tier=tier,
        monthly_job_cap=scheduler.policy.monthly_cap(tier),
        policy_version=scheduler.policy.version,
    )
