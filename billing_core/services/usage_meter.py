"""Usage metering gate: per-account quotas for units of paid work.

Counts units, not money (money is the cost breaker's job). Every request
variant draws from the same quota. The counter is only incremented after the
work has actually completed.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.config import Settings
from billing_core.errors import AccountNotFoundError
from billing_core.models import Account, AccountTier, ensure_utc
from billing_core.services.unit_of_work import AccountRepository

logger = logging.getLogger(__name__)


class LimitCode(str, enum.Enum):
    TRIAL_LIMIT_EXCEEDED = "TRIAL_LIMIT_EXCEEDED"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    SUBSCRIPTION_LIMIT_EXCEEDED = "SUBSCRIPTION_LIMIT_EXCEEDED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"


@dataclass(frozen=True)
class UsageQuotas:
    trial_limit: int = 10
    trial_days: int = 14
    subscription_limit: int = 100

    @classmethod
    def from_settings(cls, s: Settings) -> "UsageQuotas":
        return cls(
            trial_limit=s.trial_message_limit,
            trial_days=s.trial_days_limit,
            subscription_limit=s.subscription_message_limit,
        )


@dataclass
class UsageCheck:
    """Result of a quota check. remaining/limit are None for unlimited tiers."""

    allowed: bool
    tier: AccountTier
    used: int
    limit: int | None
    remaining: int | None
    code: LimitCode | None = None
    message: str | None = None
    reset_at: datetime | None = None
    trial_ends_at: datetime | None = None


def evaluate_usage(account: Account, quotas: UsageQuotas, now: datetime | None = None) -> UsageCheck:
    """Decide whether one more unit of work is allowed for account."""
    now = now or datetime.now(timezone.utc)
    used = account.usage_count

    if account.tier == AccountTier.METERED:
        return UsageCheck(allowed=True, tier=account.tier, used=used, limit=None, remaining=None)

    if account.tier == AccountTier.SUBSCRIPTION:
        limit = quotas.subscription_limit
        check = UsageCheck(
            allowed=used < limit,
            tier=account.tier,
            used=used,
            limit=limit,
            remaining=max(limit - used, 0),
            reset_at=ensure_utc(account.usage_reset_at),
        )
        if not check.allowed:
            check.code = LimitCode.SUBSCRIPTION_LIMIT_EXCEEDED
            check.message = (
                f"You have used all {limit} requests in this billing period. "
                "Your quota resets on your renewal date."
            )
        return check

    if account.tier == AccountTier.CANCELLED:
        return UsageCheck(
            allowed=False,
            tier=account.tier,
            used=used,
            limit=0,
            remaining=0,
            code=LimitCode.SUBSCRIPTION_CANCELLED,
            message="Your subscription has been cancelled. Subscribe again to continue.",
        )

    # Trial: lifetime quota plus a time limit
    limit = quotas.trial_limit
    trial_ends_at = ensure_utc(account.trial_started_at) + timedelta(days=quotas.trial_days)
    check = UsageCheck(
        allowed=True,
        tier=account.tier,
        used=used,
        limit=limit,
        remaining=max(limit - used, 0),
        trial_ends_at=trial_ends_at,
    )
    if now >= trial_ends_at:
        check.allowed = False
        check.code = LimitCode.TRIAL_EXPIRED
        check.message = "Your free trial has ended. Upgrade to keep going."
    elif used >= limit:
        check.allowed = False
        check.code = LimitCode.TRIAL_LIMIT_EXCEEDED
        check.message = f"You have used all {limit} free trial requests. Upgrade to keep going."
    return check


async def check_usage_limit(
    session: AsyncSession, account_id: str, quotas: UsageQuotas, now: datetime | None = None
) -> UsageCheck:
    """Read-only quota check for account_id."""
    account = await AccountRepository(session).get(account_id)
    if account is None:
        raise AccountNotFoundError(f"No account {account_id}")
    check = evaluate_usage(account, quotas, now)
    if not check.allowed:
        logger.info(
            "Usage limit reached: account=%s tier=%s used=%d code=%s",
            account_id, check.tier.value, check.used, check.code.value,
        )
    return check


async def increment_usage(session: AsyncSession, account_id: str) -> int:
    """Atomically add one completed unit. Returns the new count."""
    count = await AccountRepository(session).increment_usage(account_id)
    if count is None:
        raise AccountNotFoundError(f"No account {account_id}")
    logger.debug("Usage incremented: account=%s count=%d", account_id, count)
    return count
