"""
ai_billing - Robust HTTP Client

HTTP client wrapper used for outbound webhook calls (spending alerts):
- Exponential backoff retry with jitter (bounded, so the caller never stalls)
- Request correlation (X-Request-ID header and log field)
- Idempotency-Key header passthrough
- Form-encoded or JSON bodies
- Retry-After in delta-seconds or HTTP-date form
"""

import asyncio
import random
import time
import uuid
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

import httpx

from ..observability.logging import get_logger


logger = get_logger("ai_billing.http")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 2
    base_delay: float = 0.5  # seconds
    max_delay: float = 4.0  # seconds
    exponential_base: float = 2.0
    jitter_factor: float = 0.25  # 25% jitter
    retryable_status_codes: List[int] = field(
        default_factory=lambda: [500, 502, 503, 504, 429]
    )


@dataclass
class HttpResponse:
    """Wrapped HTTP response with metadata."""
    status_code: int
    data: Any
    headers: Dict[str, str]
    request_id: str
    latency_ms: float
    retries_attempted: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def error_message(self) -> str:
        """Best-effort error message from a JSON error body."""
        if isinstance(self.data, dict):
            error = self.data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        return f"HTTP {self.status_code}"


class HttpClientError(Exception):
    """Base error for HTTP client issues."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        request_id: str = "",
        step_name: str = "",
        retryable: bool = False,
        response_body: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.request_id = request_id
        self.step_name = step_name
        self.retryable = retryable
        self.response_body = response_body
        super().__init__(
            f"[{request_id}] {step_name}: {message} (status={status_code}, retryable={retryable})"
        )


class UpstreamUnavailableError(HttpClientError):
    """Upstream unreachable or failing (5xx, timeout, connection refused)."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, retryable=True, **kwargs)


class RateLimitError(HttpClientError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str, retry_after: int = 60, **kwargs):
        super().__init__(message, retryable=True, **kwargs)
        self.retry_after = retry_after


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 16.0,
    exponential_base: float = 2.0,
    jitter_factor: float = 0.25
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    delay = min(base * exponential_base^attempt, max_delay) +/- jitter_factor
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    jitter_range = delay * jitter_factor
    delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(0.1, delay)  # Minimum 100ms


def parse_retry_after(value: Optional[str], default: int = 60) -> int:
    """
    Seconds to wait from a Retry-After header.

    Accepts delta-seconds or an HTTP-date; anything unparseable gives
    ``default``. Never negative.
    """
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when is None:
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))


class RobustHttpClient:
    """
    HTTP client with automatic retry and request correlation.

    Non-retryable responses (2xx, 4xx other than 429) are returned as
    HttpResponse; the caller decides what a 4xx means.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self.default_headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.default_headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _backoff(self, attempt: int) -> float:
        return calculate_backoff(
            attempt,
            self.retry_config.base_delay,
            self.retry_config.max_delay,
            self.retry_config.exponential_base,
            self.retry_config.jitter_factor
        )

    def _log_retry(self, request_id: str, step_name: str, attempt: int, delay: float, error: str):
        logger.warning(
            f"STEP [{step_name}] Retry {attempt}/{self.retry_config.max_retries} "
            f"after {delay:.2f}s - Error: {error}",
            request_id=request_id,
        )

    async def request(
        self,
        method: str,
        path: str,
        step_name: str = "http_request",
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> HttpResponse:
        """
        Make HTTP request with retry.

        Args:
            method: HTTP method
            path: URL path (appended to base_url)
            step_name: Name of current step for logging
            json: JSON body
            data: Form-encoded body
            headers: Additional headers
            params: Query parameters
            request_id: Request ID for correlation (auto-generated if not provided)
            idempotency_key: Sent as the Idempotency-Key header on every attempt

        Returns:
            HttpResponse with data and metadata

        Raises:
            UpstreamUnavailableError: If 5xx / timeout / connection errors persist
            RateLimitError: If rate limited after retries
        """
        request_id = request_id or f"req_{uuid.uuid4().hex[:12]}"
        url = f"{self.base_url}{path}"
        merged_headers = {**self.default_headers, **(headers or {})}
        merged_headers["X-Request-ID"] = request_id
        if idempotency_key:
            merged_headers["Idempotency-Key"] = idempotency_key

        logger.debug(
            f"STEP [{step_name}] Starting {method} {url}",
            request_id=request_id,
            idempotency_key=idempotency_key,
        )

        client = await self._get_client()

        for attempt in range(self.retry_config.max_retries + 1):
            start_time = time.time()
            can_retry = attempt < self.retry_config.max_retries

            try:
                response = await client.request(
                    method=method,
                    url=url,
                    json=json,
                    data=data,
                    headers=merged_headers,
                    params=params
                )
            except httpx.TimeoutException as e:
                if can_retry:
                    delay = self._backoff(attempt)
                    self._log_retry(request_id, step_name, attempt + 1, delay, f"Timeout: {e}")
                    await asyncio.sleep(delay)
                    continue
                raise UpstreamUnavailableError(
                    f"Request timeout after {attempt + 1} attempts",
                    request_id=request_id,
                    step_name=step_name
                )
            except httpx.TransportError as e:
                if can_retry:
                    delay = self._backoff(attempt)
                    self._log_retry(request_id, step_name, attempt + 1, delay, f"Connection error: {e}")
                    await asyncio.sleep(delay)
                    continue
                raise UpstreamUnavailableError(
                    f"Connection failed after {attempt + 1} attempts: {e}",
                    request_id=request_id,
                    step_name=step_name
                )

            latency_ms = (time.time() - start_time) * 1000

            if response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if can_retry:
                    delay = min(retry_after, self.retry_config.max_delay)
                    self._log_retry(
                        request_id, step_name, attempt + 1, delay,
                        f"Rate limited (429), retry-after={retry_after}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise RateLimitError(
                    f"Rate limit exceeded after {attempt + 1} attempts",
                    retry_after=retry_after,
                    status_code=429,
                    request_id=request_id,
                    step_name=step_name
                )

            if response.status_code in self.retry_config.retryable_status_codes:
                if can_retry:
                    delay = self._backoff(attempt)
                    self._log_retry(
                        request_id, step_name, attempt + 1, delay,
                        f"Status {response.status_code}: {response.text[:200]}"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise UpstreamUnavailableError(
                    f"Server error {response.status_code} after {attempt + 1} attempts",
                    status_code=response.status_code,
                    request_id=request_id,
                    step_name=step_name,
                    response_body=response.text[:500] if response.text else None
                )

            logger.info(
                f"STEP [{step_name}] Response: status={response.status_code}, "
                f"latency={latency_ms:.0f}ms, retries={attempt}",
                request_id=request_id,
            )

            try:
                body = response.json()
            except ValueError:
                body = response.text

            return HttpResponse(
                status_code=response.status_code,
                data=body,
                headers=dict(response.headers),
                request_id=request_id,
                latency_ms=latency_ms,
                retries_attempted=attempt,
            )

        # Should not reach here
        raise UpstreamUnavailableError(
            "Unexpected retry loop exit",
            request_id=request_id,
            step_name=step_name
        )
