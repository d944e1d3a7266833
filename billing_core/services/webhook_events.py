"""Typed provider webhook events.

Payloads are validated here, at the boundary, into one model per event family
before they reach the state machine. Unknown event names are acknowledged and
skipped; known names with a bad shape are rejected.
"""

import enum
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from billing_core.errors import WebhookPayloadError
from billing_core.models import ensure_utc
from billing_core.services.idempotency import event_key

logger = logging.getLogger(__name__)


def _to_str(value: Any) -> Any:
    # The provider sends numeric ids; we store them as strings
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


ExternalId = Annotated[str, BeforeValidator(_to_str)]
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class EventType(str, enum.Enum):
    CREATED = "subscription_created"
    UPDATED = "subscription_updated"
    CANCELLED = "subscription_cancelled"
    RESUMED = "subscription_resumed"
    EXPIRED = "subscription_expired"
    PAUSED = "subscription_paused"
    UNPAUSED = "subscription_unpaused"
    PAYMENT_SUCCESS = "subscription_payment_success"
    PAYMENT_FAILED = "subscription_payment_failed"
    PAYMENT_RECOVERED = "subscription_payment_recovered"


# Invoice events carry a subscription-invoice object, not a subscription
INVOICE_EVENTS = frozenset(
    {EventType.PAYMENT_SUCCESS, EventType.PAYMENT_FAILED, EventType.PAYMENT_RECOVERED}
)


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CustomData(_Lenient):
    user_id: ExternalId | None = None


def _dict_or_none(value: Any) -> Any:
    # Empty custom data arrives as [] rather than {}
    return value if isinstance(value, dict) else None


OptionalCustomData = Annotated[CustomData | None, BeforeValidator(_dict_or_none)]


class EventMeta(_Lenient):
    event_name: str
    custom_data: OptionalCustomData = None
    test_mode: bool = False


class SubscriptionItem(_Lenient):
    id: ExternalId
    custom_data: OptionalCustomData = None


class SubscriptionAttributes(_Lenient):
    status: str
    variant_id: ExternalId
    customer_id: ExternalId | None = None
    order_id: ExternalId | None = None
    product_id: ExternalId | None = None
    renews_at: UtcDatetime | None = None
    ends_at: UtcDatetime | None = None
    trial_ends_at: UtcDatetime | None = None
    billing_anchor: int | None = None
    first_subscription_item: SubscriptionItem | None = None
    custom_data: OptionalCustomData = None
    updated_at: UtcDatetime | None = None


class InvoiceAttributes(_Lenient):
    subscription_id: ExternalId
    status: str | None = None
    renews_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None


class _Data(_Lenient):
    id: ExternalId


class SubscriptionData(_Data):
    attributes: SubscriptionAttributes


class InvoiceData(_Data):
    attributes: InvoiceAttributes


class _SubscriptionEnvelope(_Lenient):
    meta: EventMeta
    data: SubscriptionData


class _InvoiceEnvelope(_Lenient):
    meta: EventMeta
    data: InvoiceData


class BillingEvent(BaseModel):
    """One validated webhook delivery, ready for the state machine."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    object_id: str
    external_subscription_id: str
    caller_id: str | None = None
    test_mode: bool = False
    subscription: SubscriptionAttributes | None = None
    invoice: InvoiceAttributes | None = None
    payload: dict = Field(default_factory=dict)

    @property
    def updated_at(self) -> datetime | None:
        attributes = self.subscription or self.invoice
        return attributes.updated_at if attributes else None

    @property
    def key(self) -> str:
        return event_key(self.type.value, self.object_id, self.updated_at)


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Constant-time check of the hex HMAC-SHA256 of the raw body."""
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    # Header values arrive latin-1 decoded; compare bytes so non-ASCII input is a mismatch
    provided = signature.strip().lower().encode("utf-8", "surrogateescape")
    return hmac.compare_digest(expected.encode(), provided)


def _resolve_caller_id(meta: EventMeta, attributes: SubscriptionAttributes | None) -> str | None:
    """Checkout custom data lands in meta; older payloads nest it in the attributes."""
    candidates = [meta.custom_data]
    if attributes is not None:
        if attributes.first_subscription_item is not None:
            candidates.append(attributes.first_subscription_item.custom_data)
        candidates.append(attributes.custom_data)
    for custom in candidates:
        if custom is not None and custom.user_id:
            return custom.user_id
    return None


def parse_event(raw: bytes) -> BillingEvent | None:
    """Validate a raw webhook body.

    Returns None for event names we do not handle. Raises WebhookPayloadError
    when the body is not JSON or a handled event has the wrong shape.
    """
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookPayloadError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")

    meta = payload.get("meta")
    event_name = meta.get("event_name") if isinstance(meta, dict) else None
    if not event_name:
        raise WebhookPayloadError("Webhook body has no event name")

    try:
        event_type = EventType(event_name)
    except ValueError:
        logger.info("Unhandled webhook event %s, acknowledging", event_name)
        return None

    try:
        if event_type in INVOICE_EVENTS:
            envelope = _InvoiceEnvelope.model_validate(payload)
            subscription_id = envelope.data.attributes.subscription_id
            subscription = None
            invoice = envelope.data.attributes
        else:
            envelope = _SubscriptionEnvelope.model_validate(payload)
            subscription_id = envelope.data.id
            subscription = envelope.data.attributes
            invoice = None
    except ValidationError as exc:
        raise WebhookPayloadError(
            f"Malformed {event_name} payload ({exc.error_count()} errors)"
        ) from exc

    return BillingEvent(
        type=event_type,
        object_id=envelope.data.id,
        external_subscription_id=subscription_id,
        caller_id=_resolve_caller_id(envelope.meta, subscription),
        test_mode=envelope.meta.test_mode,
        subscription=subscription,
        invoice=invoice,
        payload=payload,
    )
