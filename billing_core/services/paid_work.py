"""Paid-work dispatch: usage gate, cost breaker, work, then bookkeeping.

Both checks complete before the work (the external LLM call) starts. Usage is
counted and cost tracked only once the work has returned; a failed or
cancelled attempt leaves no trace in either.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.models import AccountTier
from billing_core.services.cost_breaker import BudgetCheck, CostCircuitBreaker
from billing_core.services.unit_of_work import UnitOfWork
from billing_core.services.usage_meter import UsageCheck, UsageQuotas, check_usage_limit

logger = logging.getLogger(__name__)


@dataclass
class WorkResult:
    """What one unit of paid work produced and what it really cost."""

    output: Any
    cost_usd: float
    token_count: int = 0


Work = Callable[[], Awaitable[WorkResult]]


@dataclass
class PaidWorkOutcome:
    usage: UsageCheck
    budget: BudgetCheck | None = None
    result: WorkResult | None = None
    unit_id: str | None = None
    usage_count: int | None = None
    report_usage: bool = False  # Metered account: forward the unit to the provider

    @property
    def allowed(self) -> bool:
        return self.usage.allowed and self.budget is not None and self.budget.allowed


async def run_paid_work(
    session: AsyncSession,
    breaker: CostCircuitBreaker,
    quotas: UsageQuotas,
    account_id: str,
    mode: str,
    work: Work,
) -> PaidWorkOutcome:
    """Gate, run and record one unit of paid work for account_id.

    Rejections come back as an outcome (usage or budget not allowed), never as
    exceptions. Exceptions from work propagate after nothing has been recorded.
    """
    usage = await check_usage_limit(session, account_id, quotas)
    # Release the read transaction before the (slow) work runs
    await session.commit()
    if not usage.allowed:
        return PaidWorkOutcome(usage=usage)

    budget = await breaker.check_budget(account_id)
    if not budget.allowed:
        return PaidWorkOutcome(usage=usage, budget=budget)

    result = await work()

    await breaker.track_cost(account_id, result.cost_usd)

    uow = UnitOfWork(session)
    unit = await uow.usage_units.add(account_id, mode, result.cost_usd, result.token_count)
    count = await uow.accounts.increment_usage(account_id)
    await session.commit()

    logger.info(
        "Paid work done: account=%s mode=%s cost=$%.4f tokens=%d usage=%s",
        account_id, mode, result.cost_usd, result.token_count, count,
    )
    return PaidWorkOutcome(
        usage=usage,
        budget=budget,
        result=result,
        unit_id=unit.id,
        usage_count=count,
        report_usage=usage.tier == AccountTier.METERED,
    )
