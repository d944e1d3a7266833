"""Operator and scheduler endpoints. Bearer cron secret required.

Intended callers: a daily scheduler (reconcile, expire-lapsed), an hourly one
(report-pending-usage), and humans looking at the breaker.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.api.auth import require_ops_token
from billing_core.database import get_db, get_session_factory
from billing_core.dependencies import (
    get_cost_breaker,
    get_plan_catalog,
    get_provider_client,
    get_reconciliation_thresholds,
)
from billing_core.services.cost_breaker import CostCircuitBreaker
from billing_core.services.counter_store import CounterStoreError
from billing_core.services.provider_client import BillingProviderClient
from billing_core.services.reconciliation import ReconciliationJob, ReconciliationThresholds
from billing_core.services.subscription_machine import PlanCatalog, downgrade_lapsed_accounts
from billing_core.services.usage_reporting import report_pending_usage

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_ops_token)])


class LayerStatusResponse(BaseModel):
    layer: str
    current_cost: float
    limit: float
    percent_used: float
    tripped: bool
    window_seconds: int


class BreakerStatusResponse(BaseModel):
    store: str
    layers: list[LayerStatusResponse]


@router.get("/cost-breaker", response_model=BreakerStatusResponse)
async def cost_breaker_status(
    caller_id: str | None = Query(default=None),
    breaker: CostCircuitBreaker = Depends(get_cost_breaker),
):
    """Current spend per budget layer. Read-only."""
    try:
        layers = await breaker.status(caller_id)
    except CounterStoreError as e:
        logger.error("Breaker status unavailable: %s", e)
        raise HTTPException(status_code=503, detail="Counter store unreachable")
    return BreakerStatusResponse(
        store=breaker.store.name,
        layers=[
            LayerStatusResponse(
                layer=s.layer.value,
                current_cost=round(s.current_cost, 4),
                limit=s.limit,
                percent_used=s.percent_used,
                tripped=s.tripped,
                window_seconds=s.ttl_seconds,
            )
            for s in layers
        ],
    )


@router.post("/reconcile")
async def reconcile(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    client: BillingProviderClient = Depends(get_provider_client),
    plans: PlanCatalog = Depends(get_plan_catalog),
    thresholds: ReconciliationThresholds = Depends(get_reconciliation_thresholds),
):
    """Run reconciliation now. Detection only."""
    report = await ReconciliationJob(session_factory, client, plans, thresholds).run()
    return {"summary": report.summary(), "details": report.details()}


@router.post("/report-pending-usage")
async def report_pending(
    limit: int = Query(default=100, ge=1, le=1000),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    client: BillingProviderClient = Depends(get_provider_client),
):
    """Retry usage reporting for units still unreported."""
    return await report_pending_usage(session_factory, client, limit)


@router.post("/expire-lapsed")
async def expire_lapsed(db: AsyncSession = Depends(get_db)):
    """Downgrade accounts whose cancelled subscription has reached its end date."""
    downgraded = await downgrade_lapsed_accounts(db)
    await db.commit()
    return {"downgraded": downgraded}
