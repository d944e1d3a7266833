"""Subscription state machine.

Each handler is a pure function of (current subscription, event, context) and
returns a Transition: the absolute field values to write. apply_event() runs
the lookups and writes through a UnitOfWork, inside the caller's transaction.

Renewal dates are always copied from the provider. Nothing here does calendar
arithmetic.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import and_, exists, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.config import ProviderConfig
from billing_core.errors import (
    AccountNotFoundError,
    ActiveSubscriptionConflictError,
    MissingAccountReferenceError,
    SubscriptionNotFoundError,
    WebhookProcessingError,
)
from billing_core.models import (
    Account,
    AccountTier,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    ensure_utc,
)
from billing_core.services.unit_of_work import LIVE_STATUSES, UnitOfWork
from billing_core.services.webhook_events import BillingEvent, EventType

logger = logging.getLogger(__name__)

# Provider statuses with no direct counterpart
_STATUS_ALIASES = {
    "on_trial": SubscriptionStatus.ACTIVE,
    "unpaid": SubscriptionStatus.PAST_DUE,
}


@dataclass(frozen=True)
class PlanCatalog:
    """Maps provider plan variants to internal plan tiers."""

    subscription_variant_id: str
    metered_variant_id: str

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "PlanCatalog":
        return cls(
            subscription_variant_id=config.subscription_variant_id,
            metered_variant_id=config.metered_variant_id,
        )

    def tier_for(self, variant_id: str) -> PlanTier | None:
        if variant_id == self.subscription_variant_id:
            return PlanTier.SUBSCRIPTION
        if variant_id == self.metered_variant_id:
            return PlanTier.METERED
        return None

    def variant_for(self, tier: PlanTier) -> str:
        if tier == PlanTier.SUBSCRIPTION:
            return self.subscription_variant_id
        return self.metered_variant_id


@dataclass(frozen=True)
class TransitionContext:
    now: datetime
    plans: PlanCatalog


@dataclass
class Transition:
    """What one event does to the ledger. All values are absolute."""

    external_subscription_id: str
    subscription_fields: dict[str, Any] = field(default_factory=dict)
    create: bool = False
    account_id: str | None = None
    account_fields: dict[str, Any] = field(default_factory=dict)
    # Apply account_fields only while the account is on this tier
    account_only_if_tier: AccountTier | None = None

    @property
    def downgrades_account(self) -> bool:
        return self.account_fields.get("tier") == AccountTier.TRIAL


def map_status(raw: str) -> SubscriptionStatus:
    """Translate a provider status into ours."""
    if raw in _STATUS_ALIASES:
        return _STATUS_ALIASES[raw]
    try:
        return SubscriptionStatus(raw)
    except ValueError:
        raise WebhookProcessingError(f"Unknown subscription status: {raw}") from None


def _require(current: Subscription | None, event: BillingEvent) -> Subscription:
    if current is None:
        raise SubscriptionNotFoundError(
            f"No subscription {event.external_subscription_id} for {event.type.value}"
        )
    return current


def _aligned_reset(
    transition: Transition, current: Subscription, status: SubscriptionStatus, renews_at
) -> None:
    """Keep Account.usage_reset_at equal to the subscription's renews_at."""
    if current.tier != PlanTier.SUBSCRIPTION or status not in LIVE_STATUSES or renews_at is None:
        return
    transition.account_id = current.account_id
    transition.account_fields["usage_reset_at"] = renews_at
    transition.account_only_if_tier = AccountTier.SUBSCRIPTION


# --- Handlers ---

def on_created(current: Subscription | None, event: BillingEvent, ctx: TransitionContext) -> Transition:
    attrs = event.subscription
    if not event.caller_id:
        raise MissingAccountReferenceError(
            f"subscription_created {event.external_subscription_id} carries no user id"
        )
    tier = ctx.plans.tier_for(attrs.variant_id)
    if tier is None:
        raise WebhookProcessingError(f"Unknown plan variant {attrs.variant_id}")
    status = map_status(attrs.status)

    fields = {
        "status": status,
        "renews_at": attrs.renews_at,
        "ends_at": attrs.ends_at,
        "trial_ends_at": attrs.trial_ends_at,
        "current_period_end": attrs.renews_at,
    }
    if current is None:
        fields.update(
            external_subscription_id=event.external_subscription_id,
            external_subscription_item_id=(
                attrs.first_subscription_item.id if attrs.first_subscription_item else None
            ),
            external_customer_id=attrs.customer_id,
            external_order_id=attrs.order_id,
            external_product_id=attrs.product_id,
            external_variant_id=attrs.variant_id,
            tier=tier,
            billing_anchor_day=attrs.billing_anchor,
        )

    account_fields: dict[str, Any] = {"tier": AccountTier(tier.value)}
    if attrs.customer_id:
        account_fields["external_customer_id"] = attrs.customer_id
    if tier == PlanTier.SUBSCRIPTION:
        account_fields["usage_count"] = 0
        account_fields["usage_reset_at"] = attrs.renews_at
    else:
        account_fields["usage_reset_at"] = None

    return Transition(
        external_subscription_id=event.external_subscription_id,
        subscription_fields=fields,
        create=current is None,
        account_id=event.caller_id,
        account_fields=account_fields,
    )


def on_updated(current: Subscription | None, event: BillingEvent, ctx: TransitionContext) -> Transition:
    current = _require(current, event)
    attrs = event.subscription
    status = map_status(attrs.status)
    transition = Transition(
        external_subscription_id=event.external_subscription_id,
        subscription_fields={
            "status": status,
            "renews_at": attrs.renews_at,
            "ends_at": attrs.ends_at,
            "trial_ends_at": attrs.trial_ends_at,
            "current_period_end": attrs.renews_at,
        },
    )
    _aligned_reset(transition, current, status, attrs.renews_at)
    return transition


def on_cancelled(current: Subscription | None, event: BillingEvent, ctx: TransitionContext) -> Transition:
    current = _require(current, event)
    attrs = event.subscription
    ends_at = attrs.ends_at
    if ends_at is None:
        # No end date means no grace period to wait out
        logger.warning(
            "Cancellation of subscription %s has no end date, ending it now",
            event.external_subscription_id,
        )
        ends_at = ctx.now
    transition = Transition(
        external_subscription_id=event.external_subscription_id,
        subscription_fields={"status": SubscriptionStatus.CANCELLED, "ends_at": ends_at},
    )
    # A future end date is the grace period: the tier stays until it lapses
    if attrs.status == SubscriptionStatus.EXPIRED.value or (ends_at is not None and ends_at <= ctx.now):
        transition.account_id = current.account_id
        transition.account_fields = {"tier": AccountTier.TRIAL, "usage_reset_at": None}
    return transition


def on_resumed(current: Subscription | None, event: BillingEvent, ctx: TransitionContext) -> Transition:
    current = _require(current, event)
    renews_at = event.subscription.renews_at
    return Transition(
        external_subscription_id=event.external_subscription_id,
        subscription_fields={
            "status": SubscriptionStatus.ACTIVE,
            "ends_at": None,
            "renews_at": renews_at,
            "current_period_end": renews_at,
        },
        account_id=current.account_id,
        account_fields={
            "tier": AccountTier(current.tier.value),
            "usage_reset_at": renews_at if current.tier == PlanTier.SUBSCRIPTION else None,
        },
    )


def on_expired(current: Subscription | None, event: BillingEvent, ctx: TransitionContext) -> Transition:
    account_id = event.caller_id
    if current is not None:
        account_id = current.account_id
    elif not account_id:
        raise SubscriptionNotFoundError(
            f"No subscription {event.external_subscription_id} and no user id to expire"
        )
    return Transition(
        external_subscription_id=event.external_subscription_id,
        subscription_fields={"status": SubscriptionStatus.EXPIRED, "ends_at": ctx.now},
        account_id=account_id,
        account_fields={"tier": AccountTier.TRIAL, "usage_reset_at": None},
    )


def on_paused(current: Subscription | None, event: BillingEvent, ctx: TransitionContext) -> Transition:
    _require(current, event)
    return Transition(
        external_subscription_id=event.external_subscription_id,
        subscription_fields={"status": SubscriptionStatus.PAUSED},
    )


def on_unpaused(current: Subscription | None, event: BillingEvent, ctx: TransitionContext) -> Transition:
    current = _require(current, event)
    renews_at = event.subscription.renews_at
    transition = Transition(
        external_subscription_id=event.external_subscription_id,
        subscription_fields={
            "status": SubscriptionStatus.ACTIVE,
            "renews_at": renews_at,
            "current_period_end": renews_at,
        },
    )
    _aligned_reset(transition, current, SubscriptionStatus.ACTIVE, renews_at)
    return transition


def on_payment_success(
    current: Subscription | None, event: BillingEvent, ctx: TransitionContext
) -> Transition:
    renews_at = event.invoice.renews_at
    transition = Transition(external_subscription_id=event.external_subscription_id)
    if renews_at is not None:
        transition.subscription_fields = {"renews_at": renews_at, "current_period_end": renews_at}

    if current is None:
        # Best effort: the renewal date above is still written if the row shows up
        logger.warning(
            "Payment for unknown subscription %s, skipping usage reset",
            event.external_subscription_id,
        )
        return transition

    if current.tier == PlanTier.SUBSCRIPTION:
        transition.account_id = current.account_id
        transition.account_fields = {
            "usage_count": 0,
            "usage_reset_at": renews_at or ensure_utc(current.renews_at),
        }
        transition.account_only_if_tier = AccountTier.SUBSCRIPTION
    return transition


def on_payment_failed(
    current: Subscription | None, event: BillingEvent, ctx: TransitionContext
) -> Transition:
    _require(current, event)
    return Transition(
        external_subscription_id=event.external_subscription_id,
        subscription_fields={"status": SubscriptionStatus.PAST_DUE},
    )


def on_payment_recovered(
    current: Subscription | None, event: BillingEvent, ctx: TransitionContext
) -> Transition:
    _require(current, event)
    # Invoice statuses ("paid") are not subscription statuses
    reported = event.invoice.status
    try:
        status = SubscriptionStatus(reported) if reported else SubscriptionStatus.ACTIVE
    except ValueError:
        status = SubscriptionStatus.ACTIVE
    return Transition(
        external_subscription_id=event.external_subscription_id,
        subscription_fields={"status": status},
    )


Handler = Callable[[Subscription | None, BillingEvent, TransitionContext], Transition]

HANDLERS: dict[EventType, Handler] = {
    EventType.CREATED: on_created,
    EventType.UPDATED: on_updated,
    EventType.CANCELLED: on_cancelled,
    EventType.RESUMED: on_resumed,
    EventType.EXPIRED: on_expired,
    EventType.PAUSED: on_paused,
    EventType.UNPAUSED: on_unpaused,
    EventType.PAYMENT_SUCCESS: on_payment_success,
    EventType.PAYMENT_FAILED: on_payment_failed,
    EventType.PAYMENT_RECOVERED: on_payment_recovered,
}


# --- Applying transitions ---

async def _check_can_create(uow: UnitOfWork, transition: Transition, current: Subscription | None):
    account = await uow.accounts.get(transition.account_id)
    if account is None:
        raise AccountNotFoundError(f"No account {transition.account_id} for new subscription")
    if current is not None and current.account_id != transition.account_id:
        raise WebhookProcessingError(
            f"Subscription {transition.external_subscription_id} belongs to another account"
        )
    if transition.subscription_fields.get("status") != SubscriptionStatus.ACTIVE:
        return
    active = await uow.subscriptions.get_active_for_account(transition.account_id)
    if active is not None and active.external_subscription_id != transition.external_subscription_id:
        raise ActiveSubscriptionConflictError(
            f"Account {transition.account_id} already has active subscription "
            f"{active.external_subscription_id}"
        )


async def apply_event(uow: UnitOfWork, event: BillingEvent, ctx: TransitionContext) -> Transition:
    """Run the handler for event and write its transition through uow.

    Must be called inside the transaction that recorded the event in the
    ledger. Raises on any failure so that transaction rolls back.
    """
    current = await uow.subscriptions.get_by_external_id(event.external_subscription_id)
    transition = HANDLERS[event.type](current, event, ctx)

    if event.type == EventType.CREATED:
        await _check_can_create(uow, transition, current)

    if transition.create:
        await uow.subscriptions.add(transition.account_id, transition.subscription_fields)
    elif transition.subscription_fields:
        if not await uow.subscriptions.update(
            transition.external_subscription_id, transition.subscription_fields
        ):
            logger.warning(
                "%s: subscription %s not found, nothing updated",
                event.type.value, transition.external_subscription_id,
            )

    if transition.account_id and transition.account_fields:
        await _apply_account_fields(uow, transition)

    logger.info(
        "Applied %s to subscription %s", event.type.value, transition.external_subscription_id
    )
    return transition


async def _apply_account_fields(uow: UnitOfWork, transition: Transition) -> None:
    if transition.downgrades_account:
        other = await uow.subscriptions.get_active_for_account(transition.account_id)
        if other is not None and other.external_subscription_id != transition.external_subscription_id:
            logger.warning(
                "Not downgrading account %s: subscription %s is still active",
                transition.account_id, other.external_subscription_id,
            )
            return

    matched = await uow.accounts.update(
        transition.account_id,
        transition.account_fields,
        only_if_tier=transition.account_only_if_tier,
    )
    if matched:
        return
    if transition.account_only_if_tier is not None:
        logger.info(
            "Account %s not on %s tier, usage reset skipped",
            transition.account_id, transition.account_only_if_tier.value,
        )
    else:
        raise AccountNotFoundError(f"No account {transition.account_id} to update")


async def downgrade_lapsed_accounts(session: AsyncSession, now: datetime | None = None) -> int:
    """Move accounts whose cancelled subscription has ended back to trial.

    The later check for cancellations that arrived with a future end date.
    Accounts that picked up another active subscription are left alone.
    """
    now = now or datetime.now(timezone.utc)
    lapsed = exists().where(
        and_(
            Subscription.account_id == Account.id,
            Subscription.status == SubscriptionStatus.CANCELLED,
            Subscription.ends_at <= now,
        )
    )
    still_active = exists().where(
        and_(
            Subscription.account_id == Account.id,
            Subscription.status.in_(LIVE_STATUSES),
        )
    )
    result = await session.execute(
        update(Account)
        .where(
            Account.tier.in_((AccountTier.METERED, AccountTier.SUBSCRIPTION)),
            lapsed,
            ~still_active,
        )
        .values(tier=AccountTier.TRIAL, usage_reset_at=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("Downgraded %d accounts with lapsed subscriptions", result.rowcount)
    return result.rowcount
