"""Usage endpoint: the gate's view of the caller."""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from billing_core.api.auth import get_current_account
from billing_core.dependencies import get_usage_quotas
from billing_core.models import Account
from billing_core.services.usage_meter import UsageQuotas, evaluate_usage

router = APIRouter()


class UsageResponse(BaseModel):
    allowed: bool
    tier: str
    used: int
    limit: int | None
    remaining: int | None
    code: str | None = None
    message: str | None = None
    reset_at: datetime | None = None
    trial_ends_at: datetime | None = None


@router.get("", response_model=UsageResponse)
async def get_usage(
    account: Account = Depends(get_current_account),
    quotas: UsageQuotas = Depends(get_usage_quotas),
):
    check = evaluate_usage(account, quotas)
    return UsageResponse(
        allowed=check.allowed,
        tier=check.tier.value,
        used=check.used,
        limit=check.limit,
        remaining=check.remaining,
        code=check.code.value if check.code else None,
        message=check.message,
        reset_at=check.reset_at,
        trial_ends_at=check.trial_ends_at,
    )
