"""
ai_billing - HTTP Client Tests

Tests for RobustHttpClient retry, Retry-After parsing, correlation and
idempotency headers, using httpx.MockTransport as the upstream.
"""

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from ai_billing.core.http_client import (
    RateLimitError,
    RetryConfig,
    RobustHttpClient,
    UpstreamUnavailableError,
    calculate_backoff,
    parse_retry_after,
)


def _client(handler, max_retries: int = 2) -> RobustHttpClient:
    return RobustHttpClient(
        base_url="https://upstream.test/",
        retry_config=RetryConfig(max_retries=max_retries, base_delay=0.01, max_delay=0.05),
        headers={"Authorization": "Bearer sk_test"},
        transport=httpx.MockTransport(handler),
    )


# ============================================================
# Backoff
# ============================================================

class TestBackoff:

    def test_first_attempt_within_jitter(self):
        for _ in range(50):
            assert 0.75 <= calculate_backoff(0, base_delay=1.0) <= 1.25

    def test_capped(self):
        for _ in range(50):
            assert calculate_backoff(10, base_delay=1.0, max_delay=16.0) <= 20.0

    def test_minimum_delay(self):
        assert calculate_backoff(0, base_delay=0.0001) == 0.1


# ============================================================
# Retry-After
# ============================================================

class TestParseRetryAfter:

    def test_delta_seconds(self):
        assert parse_retry_after("7") == 7
        assert parse_retry_after(" 30 ") == 30

    def test_http_date_in_future(self):
        when = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=90), usegmt=True)

        assert 70 <= parse_retry_after(when) <= 90

    def test_http_date_in_past_is_zero(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0

    @pytest.mark.parametrize("value", [None, "", "soon", "-5", "1.5"])
    def test_unparseable_falls_back(self, value):
        assert parse_retry_after(value) == 60
        assert parse_retry_after(value, default=5) == 5


# ============================================================
# Requests
# ============================================================

class TestRobustHttpClient:

    @pytest.mark.asyncio
    async def test_retries_server_errors_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"ok": True})

        client = _client(handler)
        response = await client.request("POST", "/v1/things", idempotency_key="idem_1")
        await client.close()

        assert response.ok
        assert response.data == {"ok": True}
        assert response.retries_attempted == 2
        assert [r.headers["Idempotency-Key"] for r in calls] == ["idem_1"] * 3
        assert len({r.headers["X-Request-ID"] for r in calls}) == 1

    @pytest.mark.asyncio
    async def test_client_errors_returned_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": {"message": "No such price"}})

        client = _client(handler)
        response = await client.request("GET", "/v1/prices/x")

        assert len(calls) == 1
        assert response.ok is False
        assert response.error_message() == "No such price"

    @pytest.mark.asyncio
    async def test_server_errors_exhausted(self):
        client = _client(lambda request: httpx.Response(502), max_retries=1)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.request("GET", "/v1/x")

        assert exc_info.value.status_code == 502
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_rate_limit_without_retries(self):
        client = _client(
            lambda request: httpx.Response(429, headers={"Retry-After": "7"}),
            max_retries=0,
        )

        with pytest.raises(RateLimitError) as exc_info:
            await client.request("POST", "/v1/x")

        assert exc_info.value.retry_after == 7
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_rate_limit_with_http_date(self):
        when = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=120), usegmt=True)
        client = _client(
            lambda request: httpx.Response(429, headers={"Retry-After": when}),
            max_retries=0,
        )

        with pytest.raises(RateLimitError) as exc_info:
            await client.request("POST", "/v1/x")

        assert 100 <= exc_info.value.retry_after <= 120

    @pytest.mark.asyncio
    async def test_rate_limit_with_http_date_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})
            return httpx.Response(200, json={"ok": True})

        response = await _client(handler).request("POST", "/v1/x")

        assert response.ok
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = _client(handler, max_retries=0)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.request("GET", "/v1/x", step_name="lookup")

        assert exc_info.value.step_name == "lookup"

    @pytest.mark.asyncio
    async def test_form_body_and_default_headers(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = request.content.decode()
            seen["url"] = str(request.url)
            return httpx.Response(200, text="plain")

        client = _client(handler)
        response = await client.request("POST", "/v1/items", data={"quantity": "3"})

        assert seen["auth"] == "Bearer sk_test"
        assert seen["body"] == "quantity=3"
        assert seen["url"] == "https://upstream.test/v1/items"
        assert response.data == "plain"
