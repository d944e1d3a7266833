"""Paid-work endpoint: every unit passes the usage gate and cost breaker first.

The work itself (the LLM call) is an injected collaborator. Deployments
register one by overriding get_work_executor.
"""

import enum
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.api.auth import get_current_account
from billing_core.database import get_db, get_session_factory
from billing_core.dependencies import get_cost_breaker, get_provider_client, get_usage_quotas
from billing_core.models import Account
from billing_core.services.cost_breaker import CostCircuitBreaker
from billing_core.services.paid_work import WorkResult, run_paid_work
from billing_core.services.provider_client import BillingProviderClient
from billing_core.services.usage_meter import UsageQuotas
from billing_core.services.usage_reporting import report_usage

logger = logging.getLogger(__name__)
router = APIRouter()

WorkExecutor = Callable[[str, str], Awaitable[WorkResult]]


class WorkMode(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class WorkRequest(BaseModel):
    mode: WorkMode = WorkMode.INBOUND
    input: str = Field(min_length=1, max_length=5000)


class WorkResponse(BaseModel):
    output: Any
    usage_count: int | None
    remaining: int | None  # None = unlimited


def get_work_executor() -> WorkExecutor:
    raise HTTPException(status_code=503, detail="Paid work is not configured")


@router.post("", response_model=WorkResponse)
async def run_work(
    request: WorkRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    account: Account = Depends(get_current_account),
    breaker: CostCircuitBreaker = Depends(get_cost_breaker),
    quotas: UsageQuotas = Depends(get_usage_quotas),
    executor: WorkExecutor = Depends(get_work_executor),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    client: BillingProviderClient = Depends(get_provider_client),
):
    """Run one unit of paid work for the caller."""

    async def work() -> WorkResult:
        return await executor(request.mode.value, request.input)

    try:
        outcome = await run_paid_work(db, breaker, quotas, account.id, request.mode.value, work)
    except Exception:
        logger.exception("Paid work failed for account %s", account.id)
        raise HTTPException(
            status_code=502, detail="Something went wrong. Please try again in a moment."
        )

    if not outcome.usage.allowed:
        usage = outcome.usage
        raise HTTPException(
            status_code=403,
            detail={
                "code": usage.code.value,
                "message": usage.message,
                "used": usage.used,
                "limit": usage.limit,
            },
        )
    if not outcome.budget.allowed:
        raise HTTPException(
            status_code=503,
            detail={"code": "SERVICE_OVERLOADED", "message": outcome.budget.reason},
        )

    if outcome.report_usage:
        # After the response; never fails the request
        background.add_task(report_usage, session_factory, client, account.id, outcome.unit_id)

    limit, count = outcome.usage.limit, outcome.usage_count
    return WorkResponse(
        output=outcome.result.output,
        usage_count=count,
        remaining=max(limit - count, 0) if limit is not None and count is not None else None,
    )
