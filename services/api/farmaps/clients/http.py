"""
Shared GET-JSON helper with the retry/backoff policy used for the Hub and
Neynar.

  429            → wait max(Retry-After, backoff) + jitter, retry
  5xx / network  → wait backoff + jitter, retry
  other non-2xx  → fail immediately (UpstreamClientError)
  2xx, bad JSON  → fail immediately (MalformedResponse)

backoff(attempt) = min(base * 2**attempt, max). Once max_attempts requests
have failed, the last error is raised.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional

import httpx

from farmaps.errors import (
    MalformedResponse,
    UpstreamClientError,
    UpstreamFailure,
    UpstreamRateLimited,
    UpstreamTransientFailure,
)
from farmaps.telemetry import UPSTREAM_REQUESTS_TOTAL, UPSTREAM_RETRIES_TOTAL

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

MAX_ATTEMPTS_CEILING = 12
RETRY_AFTER_MAX_S = 60.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 6
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.25

    @classmethod
    def clamped(
        cls,
        max_attempts: int,
        base_delay_ms: int,
        max_delay_ms: int,
        jitter: float = 0.25,
    ) -> "RetryPolicy":
        base = max(base_delay_ms, 0) / 1000
        return cls(
            max_attempts=min(max(int(max_attempts), 1), MAX_ATTEMPTS_CEILING),
            base_delay=base,
            max_delay=max(max_delay_ms / 1000, base),
            jitter=max(jitter, 0.0),
        )

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = self.backoff(attempt)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay + random.uniform(0, self.jitter)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    return min(max(seconds, 0.0), RETRY_AFTER_MAX_S)


def _error_message(resp: httpx.Response, service: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        msg = data.get("message") or data.get("error")
        if isinstance(msg, str) and msg:
            return f"{service} error {resp.status_code}: {msg}"
    return f"{service} error {resp.status_code}"


def parse_json(resp: httpx.Response, service: str) -> Any:
    text = resp.text
    if not text.strip():
        raise MalformedResponse(service, f"{service} returned an empty body", resp.status_code)
    try:
        return resp.json()
    except ValueError:
        raise MalformedResponse(
            service, f"{service} returned non-JSON response", resp.status_code, text
        ) from None


async def request_json(
    http: httpx.AsyncClient,
    url: str,
    *,
    service: str,
    policy: RetryPolicy,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    sleep: Sleep = asyncio.sleep,
) -> Any:
    last_error: Optional[UpstreamFailure] = None

    for attempt in range(policy.max_attempts):
        retry_after: Optional[float] = None
        try:
            resp = await http.get(url, params=params, headers=headers)
        except httpx.TransportError as exc:
            last_error = UpstreamTransientFailure(service, f"{service} request failed: {exc}")
            reason = "network"
        else:
            if resp.is_success:
                try:
                    data = parse_json(resp, service)
                except MalformedResponse:
                    UPSTREAM_REQUESTS_TOTAL.labels(service=service, outcome="error").inc()
                    raise
                UPSTREAM_REQUESTS_TOTAL.labels(service=service, outcome="ok").inc()
                return data

            status = resp.status_code
            message = _error_message(resp, service)
            if status == 429:
                last_error = UpstreamRateLimited(service, message, status, resp.text)
                retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                reason = "rate_limited"
            elif status >= 500:
                last_error = UpstreamTransientFailure(service, message, status, resp.text)
                reason = "server_error"
            else:
                UPSTREAM_REQUESTS_TOTAL.labels(service=service, outcome="error").inc()
                raise UpstreamClientError(service, message, status, resp.text)

        if attempt + 1 >= policy.max_attempts:
            break

        delay = policy.delay_for(attempt, retry_after)
        logger.warning(
            "%s %s (attempt %d/%d) — retrying in %.2fs",
            service, reason, attempt + 1, policy.max_attempts, delay,
        )
        UPSTREAM_REQUESTS_TOTAL.labels(service=service, outcome="retry").inc()
        UPSTREAM_RETRIES_TOTAL.labels(service=service, reason=reason).inc()
        await sleep(delay)

    UPSTREAM_REQUESTS_TOTAL.labels(service=service, outcome="error").inc()
    logger.error("%s gave up after %d attempts: %s", service, policy.max_attempts, last_error)
    raise last_error


async def gather_or_cancel(*aws: Awaitable[Any]) -> list[Any]:
    """
    Like asyncio.gather, but the first failure cancels every sibling still
    running, and no sibling outlives this call (also when the caller itself
    is cancelled). Results keep argument order.
    """
    tasks = [asyncio.ensure_future(a) for a in aws]
    if not tasks:
        return []
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for t in tasks:
        if not t.cancelled() and t.exception() is not None:
            raise t.exception()
    return [t.result() for t in tasks]
