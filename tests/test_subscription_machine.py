"""Unit tests for event parsing and the pure state-machine handlers."""

import json
from datetime import timedelta

import pytest

from billing_core.errors import (
    MissingAccountReferenceError,
    SubscriptionNotFoundError,
    WebhookPayloadError,
    WebhookProcessingError,
)
from billing_core.models import AccountTier, PlanTier, Subscription, SubscriptionStatus
from billing_core.services.idempotency import event_key
from billing_core.services.subscription_machine import (
    PlanCatalog,
    TransitionContext,
    downgrade_lapsed_accounts,
    map_status,
    on_cancelled,
    on_created,
    on_expired,
    on_payment_recovered,
    on_payment_success,
    on_updated,
)
from billing_core.services.webhook_events import EventType, parse_event, verify_signature
from tests.factories import (
    METERED_VARIANT,
    SUBSCRIPTION_VARIANT,
    create_account,
    create_subscription,
    get_account,
    invoice_payload,
    sign,
    subscription_payload,
    utc,
)

PLANS = PlanCatalog(subscription_variant_id=SUBSCRIPTION_VARIANT, metered_variant_id=METERED_VARIANT)


def _ctx():
    return TransitionContext(now=utc(), plans=PLANS)


def _event(payload: dict):
    return parse_event(json.dumps(payload).encode())


def _subscription(tier=PlanTier.SUBSCRIPTION, status=SubscriptionStatus.ACTIVE, renews_at=None):
    return Subscription(
        account_id="user-1",
        external_subscription_id="1001",
        external_variant_id=SUBSCRIPTION_VARIANT,
        status=status,
        tier=tier,
        renews_at=renews_at,
    )


# --- Parsing ---

class TestParseEvent:
    def test_subscription_event(self):
        renews_at = utc(days=30)
        event = _event(subscription_payload(renews_at=renews_at))
        assert event.type == EventType.CREATED
        assert event.external_subscription_id == "1001"
        assert event.caller_id == "user-1"
        assert event.test_mode is True
        assert event.subscription.variant_id == SUBSCRIPTION_VARIANT
        assert event.subscription.renews_at == renews_at
        assert event.subscription.first_subscription_item.id == "5001"
        assert event.invoice is None

    def test_invoice_event_targets_subscription(self):
        event = _event(invoice_payload(invoice_id=9001, subscription_id=1001))
        assert event.type == EventType.PAYMENT_SUCCESS
        assert event.object_id == "9001"
        assert event.external_subscription_id == "1001"
        assert event.subscription is None

    def test_empty_custom_data_list(self):
        payload = subscription_payload(user_id=None)
        payload["meta"]["custom_data"] = []
        assert _event(payload).caller_id is None

    def test_unknown_event_returns_none(self):
        assert _event({"meta": {"event_name": "license_key_created"}, "data": {}}) is None

    @pytest.mark.parametrize("raw", [b"", b"[1, 2]", b'{"meta": {}}', b"\xff\xfe"])
    def test_garbage_rejected(self, raw):
        with pytest.raises(WebhookPayloadError):
            parse_event(raw)

    def test_event_key_includes_update_time(self):
        updated = utc()
        event = _event(subscription_payload("subscription_updated", updated_at=updated))
        assert event.key == event_key("subscription_updated", "1001", updated)
        later = _event(subscription_payload("subscription_updated", updated_at=updated + timedelta(minutes=1)))
        assert event.key != later.key


def test_verify_signature():
    body = b'{"meta": {}}'
    assert verify_signature("test-webhook-secret", body, sign(body))
    assert verify_signature("test-webhook-secret", body, sign(body).upper())
    assert not verify_signature("test-webhook-secret", body + b" ", sign(body))
    assert not verify_signature("test-webhook-secret", body, "")
    assert not verify_signature("test-webhook-secret", body, "\xe9" * 64)


# --- Status mapping ---

@pytest.mark.parametrize(
    "raw, expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("on_trial", SubscriptionStatus.ACTIVE),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("unpaid", SubscriptionStatus.PAST_DUE),
        ("paused", SubscriptionStatus.PAUSED),
        ("cancelled", SubscriptionStatus.CANCELLED),
        ("expired", SubscriptionStatus.EXPIRED),
    ],
)
def test_map_status(raw, expected):
    assert map_status(raw) == expected


def test_map_status_unknown():
    with pytest.raises(WebhookProcessingError):
        map_status("frozen")


# --- Handlers ---

def test_created_requires_caller():
    with pytest.raises(MissingAccountReferenceError):
        on_created(None, _event(subscription_payload(user_id=None)), _ctx())


def test_created_unknown_variant():
    with pytest.raises(WebhookProcessingError):
        on_created(None, _event(subscription_payload(variant_id="42")), _ctx())


def test_created_subscription_plan_resets_usage():
    renews_at = utc(days=30)
    transition = on_created(None, _event(subscription_payload(renews_at=renews_at)), _ctx())
    assert transition.create
    assert transition.subscription_fields["tier"] == PlanTier.SUBSCRIPTION
    assert transition.account_id == "user-1"
    assert transition.account_fields["tier"] == AccountTier.SUBSCRIPTION
    assert transition.account_fields["usage_count"] == 0
    assert transition.account_fields["usage_reset_at"] == renews_at


def test_created_metered_plan_keeps_usage():
    transition = on_created(None, _event(subscription_payload(variant_id=METERED_VARIANT)), _ctx())
    assert transition.account_fields["tier"] == AccountTier.METERED
    assert "usage_count" not in transition.account_fields
    assert transition.account_fields["usage_reset_at"] is None


def test_created_for_existing_row_updates_in_place():
    transition = on_created(_subscription(), _event(subscription_payload()), _ctx())
    assert not transition.create
    assert "tier" not in transition.subscription_fields


def test_updated_requires_existing_subscription():
    with pytest.raises(SubscriptionNotFoundError):
        on_updated(None, _event(subscription_payload("subscription_updated")), _ctx())


def test_updated_metered_does_not_touch_account():
    transition = on_updated(
        _subscription(tier=PlanTier.METERED), _event(subscription_payload("subscription_updated")), _ctx()
    )
    assert transition.account_id is None
    assert transition.account_fields == {}


def test_updated_past_due_keeps_alignment():
    renews_at = utc(days=3)
    transition = on_updated(
        _subscription(),
        _event(subscription_payload("subscription_updated", status="past_due", renews_at=renews_at)),
        _ctx(),
    )
    assert transition.subscription_fields["status"] == SubscriptionStatus.PAST_DUE
    assert transition.account_fields == {"usage_reset_at": renews_at}
    assert transition.account_only_if_tier == AccountTier.SUBSCRIPTION


def test_cancelled_grace_period_keeps_account():
    event = _event(subscription_payload("subscription_cancelled", status="cancelled", ends_at=utc(days=1)))
    transition = on_cancelled(_subscription(), event, _ctx())
    assert transition.subscription_fields["status"] == SubscriptionStatus.CANCELLED
    assert transition.account_fields == {}
    assert not transition.downgrades_account


def test_cancelled_already_expired_downgrades():
    event = _event(subscription_payload("subscription_cancelled", status="expired", ends_at=utc(days=1)))
    transition = on_cancelled(_subscription(), event, _ctx())
    assert transition.downgrades_account


def test_cancelled_without_end_date_downgrades_now():
    event = _event(subscription_payload("subscription_cancelled", status="cancelled", ends_at=None))
    ctx = _ctx()
    transition = on_cancelled(_subscription(), event, ctx)
    assert transition.subscription_fields["ends_at"] == ctx.now
    assert transition.downgrades_account


def test_expired_needs_subscription_or_caller():
    event = _event(subscription_payload("subscription_expired", user_id=None, status="expired"))
    with pytest.raises(SubscriptionNotFoundError):
        on_expired(None, event, _ctx())


def test_expired_falls_back_to_caller_id():
    event = _event(subscription_payload("subscription_expired", user_id="user-7", status="expired"))
    transition = on_expired(None, event, _ctx())
    assert transition.account_id == "user-7"
    assert transition.downgrades_account


def test_payment_success_uses_stored_renewal_when_missing():
    renews_at = utc(days=30)
    transition = on_payment_success(_subscription(renews_at=renews_at), _event(invoice_payload()), _ctx())
    assert transition.subscription_fields == {}
    assert transition.account_fields == {"usage_count": 0, "usage_reset_at": renews_at}


def test_payment_success_metered_no_reset():
    transition = on_payment_success(
        _subscription(tier=PlanTier.METERED), _event(invoice_payload(renews_at=utc(days=30))), _ctx()
    )
    assert transition.account_id is None
    assert "renews_at" in transition.subscription_fields


def test_payment_success_unknown_subscription_still_dates():
    renews_at = utc(days=30)
    transition = on_payment_success(None, _event(invoice_payload(renews_at=renews_at)), _ctx())
    assert transition.subscription_fields["renews_at"] == renews_at
    assert transition.account_fields == {}


@pytest.mark.parametrize(
    "invoice_status, expected",
    [("paid", SubscriptionStatus.ACTIVE), ("past_due", SubscriptionStatus.PAST_DUE), (None, SubscriptionStatus.ACTIVE)],
)
def test_payment_recovered_status(invoice_status, expected):
    payload = invoice_payload("subscription_payment_recovered", status=invoice_status)
    transition = on_payment_recovered(_subscription(), _event(payload), _ctx())
    assert transition.subscription_fields == {"status": expected}


# --- Lapsed cancellations ---

async def test_downgrade_lapsed_accounts(session_factory):
    await create_account(session_factory, "lapsed", tier=AccountTier.METERED)
    await create_subscription(
        session_factory, "lapsed", "2001", tier=PlanTier.METERED,
        status=SubscriptionStatus.CANCELLED, ends_at=utc(days=-1),
    )
    await create_account(session_factory, "grace", tier=AccountTier.SUBSCRIPTION)
    await create_subscription(
        session_factory, "grace", "2002", status=SubscriptionStatus.CANCELLED, ends_at=utc(days=5)
    )
    await create_account(session_factory, "resubscribed", tier=AccountTier.SUBSCRIPTION)
    await create_subscription(
        session_factory, "resubscribed", "2003", status=SubscriptionStatus.CANCELLED, ends_at=utc(days=-1)
    )
    await create_subscription(session_factory, "resubscribed", "2004")

    async with session_factory() as session:
        assert await downgrade_lapsed_accounts(session) == 1
        await session.commit()

    assert (await get_account(session_factory, "lapsed")).tier == AccountTier.TRIAL
    assert (await get_account(session_factory, "grace")).tier == AccountTier.SUBSCRIPTION
    assert (await get_account(session_factory, "resubscribed")).tier == AccountTier.SUBSCRIPTION
