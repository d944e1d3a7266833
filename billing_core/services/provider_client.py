"""Lemon Squeezy API client (JSON:API over httpx).

Only the calls the billing core needs: subscription lookups for
reconciliation, usage records for metered billing, and hosted checkout /
customer portal URLs. Every failure surfaces as ProviderError.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from billing_core.config import ProviderConfig
from billing_core.errors import ProviderError
from billing_core.models import ensure_utc

logger = logging.getLogger(__name__)

JSON_API = "application/vnd.api+json"

_datetime = TypeAdapter(datetime)


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return ensure_utc(_datetime.validate_python(value))
    except ValidationError:
        logger.warning("Unparseable provider timestamp: %r", value)
        return None


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


@dataclass
class ProviderSubscription:
    """The provider's view of one subscription."""

    id: str
    status: str
    variant_id: str | None
    customer_id: str | None
    renews_at: datetime | None
    ends_at: datetime | None
    subscription_item_id: str | None

    @classmethod
    def from_resource(cls, resource: Any) -> "ProviderSubscription":
        if not isinstance(resource, dict) or resource.get("id") is None:
            raise ProviderError("Billing provider returned a subscription without an id")
        attrs = resource.get("attributes") or {}
        item = attrs.get("first_subscription_item") or {}
        return cls(
            id=str(resource["id"]),
            status=attrs.get("status", "unknown"),
            variant_id=_str_or_none(attrs.get("variant_id")),
            customer_id=_str_or_none(attrs.get("customer_id")),
            renews_at=_parse_dt(attrs.get("renews_at")),
            ends_at=_parse_dt(attrs.get("ends_at")),
            subscription_item_id=_str_or_none(item.get("id")),
        )


@dataclass
class ProviderUsage:
    """Usage the provider has recorded for the current billing period."""

    quantity: int
    period_start: datetime | None
    period_end: datetime | None


class BillingProviderClient:
    def __init__(self, config: ProviderConfig, http: httpx.AsyncClient | None = None):
        self.config = config
        self._http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds, connect=5.0),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Accept": JSON_API,
            "Content-Type": JSON_API,
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict | None:
        """Send one request. Returns None on 404, raises ProviderError otherwise."""
        url = path if path.startswith("http") else f"{self.config.api_base}{path}"
        try:
            response = await self._http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("Timeout calling billing provider %s %s: %s", method, path, exc)
            raise ProviderError("Billing provider request timed out") from exc
        except httpx.RequestError as exc:
            logger.error("Cannot reach billing provider %s %s: %s", method, path, exc)
            raise ProviderError("Cannot reach billing provider") from exc

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.error(
                "Billing provider %s %s returned %d", method, path, response.status_code
            )
            raise ProviderError(
                f"Billing provider returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError("Billing provider returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise ProviderError("Billing provider returned a non-object JSON body")
        return body

    # --- Subscriptions ---

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription | None:
        body = await self._request("GET", f"/subscriptions/{subscription_id}")
        if body is None:
            return None
        return ProviderSubscription.from_resource(body.get("data"))

    async def list_subscriptions(self, status: str | None = None) -> list[ProviderSubscription]:
        """Every subscription in the configured store, following pagination."""
        params: dict[str, Any] | None = {"filter[store_id]": self.config.store_id, "page[size]": 100}
        if status:
            params["filter[status]"] = status
        path = "/subscriptions"
        subscriptions: list[ProviderSubscription] = []
        while path:
            body = await self._request("GET", path, params=params)
            if body is None:
                break
            subscriptions.extend(ProviderSubscription.from_resource(r) for r in body.get("data", []))
            path = (body.get("links") or {}).get("next")
            params = None  # The next link carries the query string
        return subscriptions

    # --- Metered usage ---

    async def create_usage_record(self, subscription_item_id: str, quantity: int = 1) -> str | None:
        """Add quantity units to a metered subscription item. Returns the record id."""
        body = await self._request(
            "POST",
            "/usage-records",
            json={
                "data": {
                    "type": "usage-records",
                    "attributes": {"quantity": quantity, "action": "increment"},
                    "relationships": {
                        "subscription-item": {
                            "data": {"type": "subscription-items", "id": str(subscription_item_id)}
                        }
                    },
                }
            },
        )
        if body is None:
            raise ProviderError(f"Subscription item {subscription_item_id} not found", 404)
        return _str_or_none((body.get("data") or {}).get("id"))

    async def get_current_usage(self, subscription_item_id: str) -> ProviderUsage | None:
        body = await self._request("GET", f"/subscription-items/{subscription_item_id}/current-usage")
        if body is None:
            return None
        meta = body.get("meta") or {}
        return ProviderUsage(
            quantity=int(meta.get("quantity") or 0),
            period_start=_parse_dt(meta.get("period_start")),
            period_end=_parse_dt(meta.get("period_end")),
        )

    # --- Hosted pages ---

    async def create_checkout(
        self, variant_id: str, user_id: str, email: str | None = None, redirect_url: str | None = None
    ) -> str:
        """Create a hosted checkout carrying user_id in its custom data. Returns the URL."""
        checkout_data: dict[str, Any] = {"custom": {"user_id": user_id}}
        if email:
            checkout_data["email"] = email
        attributes: dict[str, Any] = {"checkout_data": checkout_data, "test_mode": self.config.test_mode}
        if redirect_url:
            attributes["product_options"] = {"redirect_url": redirect_url}

        body = await self._request(
            "POST",
            "/checkouts",
            json={
                "data": {
                    "type": "checkouts",
                    "attributes": attributes,
                    "relationships": {
                        "store": {"data": {"type": "stores", "id": self.config.store_id}},
                        "variant": {"data": {"type": "variants", "id": str(variant_id)}},
                    },
                }
            },
        )
        url = ((body or {}).get("data") or {}).get("attributes", {}).get("url")
        if not url:
            raise ProviderError("Checkout created without a URL")
        return url

    async def get_customer_portal_url(self, customer_id: str) -> str:
        body = await self._request("GET", f"/customers/{customer_id}")
        url = (
            ((body or {}).get("data") or {}).get("attributes", {}).get("urls", {}).get("customer_portal")
        )
        if not url:
            raise ProviderError("No customer portal URL for customer")
        return url

    async def aclose(self) -> None:
        await self._http.aclose()
