"""Tests for the billing provider HTTP client, against a mocked transport."""

import json

import httpx
import pytest

from billing_core.config import ProviderConfig
from billing_core.errors import ProviderError
from billing_core.services.provider_client import BillingProviderClient

CONFIG = ProviderConfig(
    api_base="https://provider.test/v1",
    api_key="key-123",
    store_id="1",
    webhook_secret="whsec",
    subscription_variant_id="100",
    metered_variant_id="200",
    test_mode=True,
)


def _client(handler) -> BillingProviderClient:
    return BillingProviderClient(CONFIG, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _subscription_resource(sub_id: int, status: str = "active") -> dict:
    return {
        "type": "subscriptions",
        "id": str(sub_id),
        "attributes": {
            "status": status,
            "variant_id": 100,
            "customer_id": 3001,
            "renews_at": "2026-05-01T00:00:00.000000Z",
            "ends_at": None,
            "first_subscription_item": {"id": 5001},
        },
    }


async def test_get_subscription():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": _subscription_resource(1001)})

    client = _client(handler)
    sub = await client.get_subscription("1001")

    assert sub.id == "1001"
    assert sub.variant_id == "100"
    assert sub.customer_id == "3001"
    assert sub.subscription_item_id == "5001"
    assert sub.renews_at.isoformat() == "2026-05-01T00:00:00+00:00"
    assert str(seen[0].url) == "https://provider.test/v1/subscriptions/1001"
    assert seen[0].headers["Authorization"] == "Bearer key-123"
    assert seen[0].headers["Accept"] == "application/vnd.api+json"


async def test_get_subscription_not_found():
    client = _client(lambda request: httpx.Response(404, json={"errors": []}))
    assert await client.get_subscription("404") is None


@pytest.mark.parametrize("status_code", [401, 422, 500, 503])
async def test_error_status_raises(status_code):
    client = _client(lambda request: httpx.Response(status_code, json={}))
    with pytest.raises(ProviderError) as exc_info:
        await client.get_subscription("1001")
    assert exc_info.value.status_code == status_code


async def test_timeout_raises_provider_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError, match="timed out"):
        await _client(handler).get_subscription("1001")


async def test_connection_error_raises_provider_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderError):
        await _client(handler).list_subscriptions()


async def test_list_subscriptions_follows_pages():
    pages = {
        "1": {
            "data": [_subscription_resource(1), _subscription_resource(2)],
            "links": {"next": "https://provider.test/v1/subscriptions?page[number]=2"},
        },
        "2": {"data": [_subscription_resource(3, "expired")], "links": {"next": None}},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        page = request.url.params.get("page[number]", "1")
        if page == "1":
            assert request.url.params["filter[store_id]"] == "1"
        return httpx.Response(200, json=pages[page])

    subs = await _client(handler).list_subscriptions()
    assert [s.id for s in subs] == ["1", "2", "3"]
    assert subs[2].status == "expired"


async def test_create_usage_record():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"data": {"type": "usage-records", "id": "77"}})

    record_id = await _client(handler).create_usage_record("5001", 3)
    assert record_id == "77"
    data = bodies[0]["data"]
    assert data["attributes"] == {"quantity": 3, "action": "increment"}
    assert data["relationships"]["subscription-item"]["data"]["id"] == "5001"


async def test_create_usage_record_unknown_item():
    client = _client(lambda request: httpx.Response(404, json={}))
    with pytest.raises(ProviderError) as exc_info:
        await client.create_usage_record("nope")
    assert exc_info.value.status_code == 404


async def test_get_current_usage():
    meta = {
        "quantity": 12,
        "period_start": "2026-04-01T00:00:00.000000Z",
        "period_end": "2026-05-01T00:00:00.000000Z",
    }
    client = _client(lambda request: httpx.Response(200, json={"meta": meta}))
    usage = await client.get_current_usage("5001")
    assert usage.quantity == 12
    assert usage.period_start.year == 2026
    assert usage.period_end.month == 5


async def test_create_checkout_carries_user_id():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"data": {"attributes": {"url": "https://pay.test/c/1"}}})

    url = await _client(handler).create_checkout(
        "100", user_id="user-1", email="a@example.com", redirect_url="https://app.test/done"
    )
    assert url == "https://pay.test/c/1"
    attributes = bodies[0]["data"]["attributes"]
    assert attributes["checkout_data"]["custom"] == {"user_id": "user-1"}
    assert attributes["checkout_data"]["email"] == "a@example.com"
    assert attributes["test_mode"] is True
    assert attributes["product_options"]["redirect_url"] == "https://app.test/done"
    assert bodies[0]["data"]["relationships"]["variant"]["data"]["id"] == "100"


async def test_checkout_without_url_is_error():
    client = _client(lambda request: httpx.Response(201, json={"data": {"attributes": {}}}))
    with pytest.raises(ProviderError):
        await client.create_checkout("100", user_id="user-1")


async def test_customer_portal_url():
    body = {"data": {"attributes": {"urls": {"customer_portal": "https://portal.test/3001"}}}}
    client = _client(lambda request: httpx.Response(200, json=body))
    assert await client.get_customer_portal_url("3001") == "https://portal.test/3001"


@pytest.mark.parametrize(
    "body",
    [{}, {"data": None}, {"data": {"attributes": {"status": "active"}}}, {"data": "1001"}],
)
async def test_malformed_subscription_raises_provider_error(body):
    client = _client(lambda request: httpx.Response(200, json=body))
    with pytest.raises(ProviderError):
        await client.get_subscription("1001")


async def test_non_object_body_raises_provider_error():
    client = _client(lambda request: httpx.Response(201, json=["not", "an", "object"]))
    with pytest.raises(ProviderError, match="non-object"):
        await client.create_usage_record("5001")
