"""Usage reporting bridge: forwards completed units to metered billing.

The provider's usage-record endpoint has no idempotency key, so exactly-once
is enforced here with the UsageUnit.usage_reported flag. A unit is claimed
(false -> true) in its own committed transaction before the provider call and
released again if the call fails, so two concurrent reporters cannot both
call the provider for the same unit.

Runs after the caller's response has been prepared. Never raises.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.errors import ProviderError
from billing_core.models import AccountTier, PlanTier
from billing_core.services.provider_client import BillingProviderClient
from billing_core.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


async def report_usage(
    session_factory: async_sessionmaker[AsyncSession],
    client: BillingProviderClient,
    account_id: str,
    unit_id: str,
    quantity: int = 1,
) -> bool:
    """Report one unit of work. Returns True if it is (now) accounted for.

    False means the provider was not told: either a transient failure (the unit
    stays unreported and can be retried) or a permanent give-up (the unit is
    marked reported so it is never retried; its cost is still in the breaker).
    """
    try:
        async with session_factory() as session:
            uow = UnitOfWork(session)
            unit = await uow.usage_units.get(unit_id)
            if unit is None:
                logger.error("Usage unit %s not found for account %s", unit_id, account_id)
                return False
            if unit.usage_reported:
                logger.info("Usage already reported for unit %s", unit_id)
                return True

            account = await uow.accounts.get(account_id)
            if account is None or account.tier != AccountTier.METERED:
                # Nothing to bill per unit on other tiers
                await uow.usage_units.set_reported(unit_id, True)
                await session.commit()
                return True

            subscription = await uow.subscriptions.get_active_for_account(
                account_id, tier=PlanTier.METERED
            )
            item_id = subscription.external_subscription_item_id if subscription else None
            if item_id is None:
                logger.warning(
                    "Giving up usage report for unit %s: account %s has %s",
                    unit_id, account_id,
                    "no subscription item id" if subscription else "no active metered subscription",
                )
                await uow.usage_units.set_reported(unit_id, True)
                await session.commit()
                return False

            if not await uow.usage_units.set_reported(unit_id, True):
                # Another reporter claimed it between our read and our write
                await session.rollback()
                return True
            await session.commit()

        try:
            await client.create_usage_record(item_id, quantity)
        except Exception as exc:
            if isinstance(exc, ProviderError):
                logger.error("Usage report failed for unit %s (item %s): %s", unit_id, item_id, exc)
            else:
                logger.exception("Unexpected error reporting unit %s (item %s)", unit_id, item_id)
            async with session_factory() as session:
                await UnitOfWork(session).usage_units.set_reported(unit_id, False)
                await session.commit()
            return False

        logger.info("Reported %d usage unit(s) for account %s, unit %s", quantity, account_id, unit_id)
        return True

    except Exception:
        logger.exception("Unexpected error reporting usage for unit %s", unit_id)
        return False


async def report_pending_usage(
    session_factory: async_sessionmaker[AsyncSession],
    client: BillingProviderClient,
    limit: int = 100,
) -> dict[str, int]:
    """Retry reporting for units still unreported. Bounded by limit."""
    async with session_factory() as session:
        pending = await UnitOfWork(session).usage_units.list_unreported(limit)
        targets = [(unit.account_id, unit.id) for unit in pending]

    reported = failed = 0
    for account_id, unit_id in targets:
        if await report_usage(session_factory, client, account_id, unit_id):
            reported += 1
        else:
            failed += 1
    logger.info("Pending usage run: %d attempted, %d ok, %d not reported", len(targets), reported, failed)
    return {"attempted": len(targets), "reported": reported, "failed": failed}
