"""Repositories bound to one session, grouped as a unit of work.

The webhook route opens a transaction, wraps the session in a UnitOfWork and
hands it to the event handlers. Everything they touch commits or rolls back
together.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.database import insert_ignoring_conflicts
from billing_core.models import (
    Account,
    AccountTier,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    UsageUnit,
)
from billing_core.services.idempotency import IdempotencyLedger

logger = logging.getLogger(__name__)

# Statuses that still grant (or may return to) paid access
LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.PAUSED)


class AccountRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, account_id: str) -> Account | None:
        result = await self.session.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one_or_none()

    async def get_or_create(self, account_id: str, email: str | None = None) -> Account:
        """Create the trial account on first sign-in. Safe under concurrent sign-ins."""
        stmt = insert_ignoring_conflicts(
            self.session, Account, "id", id=account_id, email=email, tier=AccountTier.TRIAL
        )
        result = await self.session.execute(stmt)
        if result.rowcount:
            logger.info("Account created for caller %s", account_id)
        account = await self.get(account_id)
        assert account is not None
        return account

    async def update(
        self,
        account_id: str,
        fields: dict[str, Any],
        only_if_tier: AccountTier | None = None,
    ) -> bool:
        """Set absolute values on an account. Returns False if no row matched."""
        if not fields:
            return True
        stmt = update(Account).where(Account.id == account_id)
        if only_if_tier is not None:
            stmt = stmt.where(Account.tier == only_if_tier)
        result = await self.session.execute(
            stmt.values(**fields).execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def increment_usage(self, account_id: str) -> int | None:
        """Atomic usage_count + 1. Returns the new count, None if no such account."""
        result = await self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(usage_count=Account.usage_count + 1)
            .returning(Account.usage_count)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()


class SubscriptionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_external_id(self, external_subscription_id: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.external_subscription_id == external_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def get_active_for_account(
        self, account_id: str, tier: PlanTier | None = None
    ) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.account_id == account_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        if tier is not None:
            stmt = stmt.where(Subscription.tier == tier)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_current_for_account(self, account_id: str) -> Subscription | None:
        """Most recently created subscription, whatever its status."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.account_id == account_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add(self, account_id: str, fields: dict[str, Any]) -> Subscription:
        subscription = Subscription(account_id=account_id, **fields)
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def update(self, external_subscription_id: str, fields: dict[str, Any]) -> bool:
        if not fields:
            return True
        result = await self.session.execute(
            update(Subscription)
            .where(Subscription.external_subscription_id == external_subscription_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def list_live(self) -> list[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.status.in_(LIVE_STATUSES))
            .order_by(Subscription.id)
        )
        return list(result.scalars().all())

    async def list_external_ids(self) -> set[str]:
        result = await self.session.execute(select(Subscription.external_subscription_id))
        return set(result.scalars().all())


class UsageUnitRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, account_id: str, mode: str, cost_usd: float, token_count: int) -> UsageUnit:
        unit = UsageUnit(
            account_id=account_id, mode=mode, cost_usd=cost_usd, token_count=token_count
        )
        self.session.add(unit)
        await self.session.flush()
        return unit

    async def get(self, unit_id: str) -> UsageUnit | None:
        result = await self.session.execute(select(UsageUnit).where(UsageUnit.id == unit_id))
        return result.scalar_one_or_none()

    async def set_reported(self, unit_id: str, reported: bool) -> bool:
        """Flip usage_reported. Only matches rows currently in the opposite state,
        so exactly one caller wins the false -> true transition."""
        result = await self.session.execute(
            update(UsageUnit)
            .where(UsageUnit.id == unit_id, UsageUnit.usage_reported.is_(not reported))
            .values(usage_reported=reported)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def count_in_period(
        self, account_id: str, start: datetime, end: datetime | None = None
    ) -> tuple[int, int]:
        """(all units, reported units) created in [start, end)."""
        conditions = [UsageUnit.account_id == account_id, UsageUnit.created_at >= start]
        if end is not None:
            conditions.append(UsageUnit.created_at < end)
        total = await self.session.scalar(select(func.count(UsageUnit.id)).where(*conditions))
        reported = await self.session.scalar(
            select(func.count(UsageUnit.id)).where(*conditions, UsageUnit.usage_reported.is_(True))
        )
        return int(total or 0), int(reported or 0)

    async def list_unreported(self, limit: int) -> list[UsageUnit]:
        result = await self.session.execute(
            select(UsageUnit)
            .where(UsageUnit.usage_reported.is_(False))
            .order_by(UsageUnit.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class UnitOfWork:
    """Repositories sharing one session (and therefore one transaction)."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.accounts = AccountRepository(session)
        self.subscriptions = SubscriptionRepository(session)
        self.usage_units = UsageUnitRepository(session)
        self.events = IdempotencyLedger(session)
