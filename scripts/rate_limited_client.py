#!/usr/bin/env python3
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable

import httpx

from redaction import redact, redact_url

logger = logging.getLogger(__name__)

BASELINE_BACKOFF_MS = 1000
MAX_BACKOFF_MS = 30000
DEFAULT_MAX_RETRIES = 3

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_INCONCLUSIVE = "inconclusive"

EXPECTED_FAILURE_STATUSES = frozenset({400, 401, 403})


@dataclass
class RateLimiterState:
    """Backoff bookkeeping for one request stream.

    Mutated only by ``RateLimitedClient``. Give each concurrently probed
    provider its own instance; the lock covers the read-modify-write steps.
    """

    backoff_ms: int = BASELINE_BACKOFF_MS
    max_backoff_ms: int = MAX_BACKOFF_MS
    baseline_ms: int = BASELINE_BACKOFF_MS
    last_request_time: float | None = None
    rate_limit_hit_count: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_throttle(self, *, rate_limited: bool = True) -> int:
        with self._lock:
            self.backoff_ms = min(self.backoff_ms * 2, self.max_backoff_ms)
            if rate_limited:
                self.rate_limit_hit_count += 1
            return self.backoff_ms

    def record_success(self) -> None:
        with self._lock:
            self.backoff_ms = self.baseline_ms

    def mark_request(self, now: float) -> None:
        with self._lock:
            self.last_request_time = now

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "backoffMs": self.backoff_ms,
                "maxBackoffMs": self.max_backoff_ms,
                "rateLimitHitCount": self.rate_limit_hit_count,
            }


@dataclass
class RequestOutcome:
    status: str
    status_code: int | None = None
    attempts: int = 0
    retry_after: str | None = None
    timed_out: bool = False
    error: str | None = None
    response: httpx.Response | None = None
    failed_as_expected: bool = False

    @property
    def ok(self) -> bool:
        return self.status == OUTCOME_SUCCESS

    def json(self) -> Any:
        if self.response is None:
            return None
        try:
            return self.response.json()
        except ValueError:
            return None

    def to_details(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "statusCode": self.status_code,
            "attempts": self.attempts,
            "retryAfter": self.retry_after,
            "timedOut": self.timed_out,
            "failedAsExpected": self.failed_as_expected,
            "error": redact(self.error) if self.error else None,
        }


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP date)."""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if text.isdigit():
        return float(text)
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max((when - current).total_seconds(), 0.0)


class RateLimitedClient:
    def __init__(
        self,
        http_client: httpx.Client,
        state: RateLimiterState | None = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        min_interval_ms: int = 0,
    ) -> None:
        self.http_client = http_client
        self.state = state or RateLimiterState()
        self.max_retries = max(max_retries, 0)
        self._sleep = sleep
        self._clock = clock
        self.min_interval_ms = max(min_interval_ms, 0)

    def _respect_min_interval(self) -> None:
        last = self.state.last_request_time
        if last is None or self.min_interval_ms <= 0:
            return
        wait_seconds = self.min_interval_ms / 1000.0 - (self._clock() - last)
        if wait_seconds > 0:
            self._sleep(wait_seconds)

    def request(
        self,
        method: str,
        url: str,
        *,
        expect_failure: bool = False,
        expect_status: set[int] | frozenset[int] | None = None,
        **kwargs: Any,
    ) -> RequestOutcome:
        """Send one logical request, retrying 429 and 5xx within the retry budget.

        ``expect_failure`` turns 400/401/403 into success for negative probes.
        ``expect_status`` short-circuits on any listed code (no retry).
        Exhausting the budget on 429 yields ``inconclusive``, never ``failure``.
        """
        safe_url = redact_url(url)
        total_attempts = 1 + self.max_retries
        last_status: int | None = None
        last_retry_after: str | None = None
        last_response: httpx.Response | None = None

        for attempt in range(1, total_attempts + 1):
            self._respect_min_interval()
            self.state.mark_request(self._clock())
            try:
                response = self.http_client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                logger.warning("%s %s timed out on attempt %d", method, safe_url, attempt)
                return RequestOutcome(
                    status=OUTCOME_FAILURE,
                    attempts=attempt,
                    timed_out=True,
                    error=redact(f"{method} {safe_url} timed out: {exc}"),
                )
            except httpx.HTTPError as exc:
                logger.warning("%s %s transport error: %s", method, safe_url, redact(str(exc)))
                return RequestOutcome(
                    status=OUTCOME_FAILURE,
                    attempts=attempt,
                    error=redact(f"{method} {safe_url} failed: {exc}"),
                )

            code = response.status_code
            retry_after = response.headers.get("Retry-After")
            last_status, last_retry_after, last_response = code, retry_after, response

            if expect_status is not None and code in expect_status:
                self.state.record_success()
                return RequestOutcome(
                    status=OUTCOME_SUCCESS,
                    status_code=code,
                    attempts=attempt,
                    retry_after=retry_after,
                    response=response,
                    failed_as_expected=code >= 400,
                )
            if expect_failure and code in EXPECTED_FAILURE_STATUSES:
                self.state.record_success()
                return RequestOutcome(
                    status=OUTCOME_SUCCESS,
                    status_code=code,
                    attempts=attempt,
                    retry_after=retry_after,
                    response=response,
                    failed_as_expected=True,
                )
            if 200 <= code < 400:
                self.state.record_success()
                if expect_failure:
                    return RequestOutcome(
                        status=OUTCOME_FAILURE,
                        status_code=code,
                        attempts=attempt,
                        response=response,
                        error=f"{method} {safe_url} succeeded with HTTP {code} but a failure was expected",
                    )
                return RequestOutcome(
                    status=OUTCOME_SUCCESS,
                    status_code=code,
                    attempts=attempt,
                    retry_after=retry_after,
                    response=response,
                )
            if code == 429 or code >= 500:
                backoff_ms = self.state.record_throttle(rate_limited=code == 429)
                if attempt >= total_attempts:
                    break
                wait_seconds = parse_retry_after(retry_after)
                if wait_seconds is None:
                    wait_seconds = backoff_ms / 1000.0
                logger.info(
                    "%s %s returned HTTP %d; retrying in %.1fs (attempt %d/%d)",
                    method,
                    safe_url,
                    code,
                    wait_seconds,
                    attempt,
                    total_attempts,
                )
                self._sleep(wait_seconds)
                continue

            return RequestOutcome(
                status=OUTCOME_FAILURE,
                status_code=code,
                attempts=attempt,
                retry_after=retry_after,
                response=response,
                error=redact(f"{method} {safe_url} returned HTTP {code}"),
            )

        if last_status == 429:
            logger.warning("%s %s still rate limited after %d attempts", method, safe_url, total_attempts)
            return RequestOutcome(
                status=OUTCOME_INCONCLUSIVE,
                status_code=last_status,
                attempts=total_attempts,
                retry_after=last_retry_after,
                response=last_response,
                error=redact(f"{method} {safe_url} rate limited (HTTP 429) after {total_attempts} attempts"),
            )
        return RequestOutcome(
            status=OUTCOME_FAILURE,
            status_code=last_status,
            attempts=total_attempts,
            retry_after=last_retry_after,
            response=last_response,
            error=redact(f"{method} {safe_url} returned HTTP {last_status} after {total_attempts} attempts"),
        )
