"""Tests for the per-identity rate limiting middleware."""

from unittest.mock import patch

from httpx import AsyncClient

from billing_core.config import settings
from billing_core.middleware.rate_limiter import (
    BucketRegistry,
    PathLimit,
    RateBucket,
    _extract_identity,
    _limit_for,
)
from tests.factories import auth_headers, caller_token

MONOTONIC = "billing_core.middleware.rate_limiter.time.monotonic"


class TestRateBucket:
    def test_allows_up_to_limit(self):
        bucket = RateBucket()
        assert all(bucket.allow(3) for _ in range(3))
        assert not bucket.allow(3)

    def test_window_slides(self):
        bucket = RateBucket(window_seconds=60)
        with patch(MONOTONIC, return_value=100.0):
            assert bucket.allow(1)
            assert not bucket.allow(1)
        with patch(MONOTONIC, return_value=161.0):
            assert bucket.allow(1)

    def test_stale_after_its_own_window(self):
        assert RateBucket().is_stale()
        bucket = RateBucket(window_seconds=60)
        with patch(MONOTONIC, return_value=100.0):
            bucket.allow(5)
            assert not bucket.is_stale()
        with patch(MONOTONIC, return_value=161.0):
            assert bucket.is_stale()


class TestBucketRegistry:
    RULE = PathLimit("/api/v1/billing/portal", "portal_requests_per_minute", 60.0)

    def test_bucket_takes_rule_window(self):
        registry = BucketRegistry()
        bucket = registry.bucket(self.RULE, "user:1")
        assert bucket.window_seconds == 60.0
        assert registry.bucket(self.RULE, "user:1") is bucket
        assert registry.bucket(self.RULE, "user:2") is not bucket

    def test_idle_buckets_swept(self):
        registry = BucketRegistry(sweep_interval=300.0)
        with patch(MONOTONIC, return_value=1000.0):
            registry.bucket(self.RULE, "user:1").allow(5)
        assert len(registry) == 1
        with patch(MONOTONIC, return_value=1400.0):
            registry.bucket(self.RULE, "user:2")
        assert len(registry) == 1


def test_limit_for_path():
    assert _limit_for("/api/v1/work").setting_name == "work_requests_per_hour"
    assert _limit_for("/api/v1/billing/portal").window_seconds == 60.0
    assert _limit_for("/api/v1/usage") is None


class _Request:
    def __init__(self, headers: dict, host: str = "10.0.0.1"):
        self.headers = headers
        self.client = type("Client", (), {"host": host})()


def test_identity_from_valid_token():
    request = _Request(auth_headers(caller_token("user-42")))
    assert _extract_identity(request) == "user:user-42"


def test_identity_ignores_forged_token():
    request = _Request(auth_headers("forged.token.value"))
    assert _extract_identity(request) == "ip:10.0.0.1"


async def test_portal_limited_per_caller(client: AsyncClient):
    headers = auth_headers(caller_token())
    with (
        patch("billing_core.middleware.rate_limiter._TESTING", False),
        patch.object(settings, "portal_requests_per_minute", 2),
    ):
        # No customer id yet, so the endpoint itself answers 403
        assert (await client.post("/api/v1/billing/portal", headers=headers)).status_code == 403
        assert (await client.post("/api/v1/billing/portal", headers=headers)).status_code == 403
        resp = await client.post("/api/v1/billing/portal", headers=headers)
        assert resp.status_code == 429

        other = auth_headers(caller_token("user-2"))
        assert (await client.post("/api/v1/billing/portal", headers=other)).status_code == 403


async def test_unlimited_paths_pass_through(client: AsyncClient):
    with (
        patch("billing_core.middleware.rate_limiter._TESTING", False),
        patch.object(settings, "portal_requests_per_minute", 1),
    ):
        for _ in range(3):
            assert (await client.get("/health")).status_code == 200
