"""HTTP client with retry/backoff, request throttling and cost accounting."""
from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, Optional

import requests

from . import config

if TYPE_CHECKING:
    from .cache import Cache

logger = logging.getLogger(__name__)

RETRYABLE_HTTP_STATUSES = (429, 500, 502, 503, 504)


class TransientApiError(RuntimeError):
    """Raised when a request still fails after all retries."""


class PlacesApiError(RuntimeError):
    """Raised when the Places API rejects a request; never retried."""

    def __init__(self, status: str, message: Optional[str] = None) -> None:
        super().__init__(f"{status}: {message}" if message else status)
        self.status = status
        self.message = message

    @property
    def is_quota_error(self) -> bool:
        return self.status in config.API_QUOTA_STATUSES


class _RetryableResponse(Exception):
    def __init__(self, reason: str, response: Optional[requests.Response] = None) -> None:
        super().__init__(reason)
        self.response = response


class RateLimiter:
    """Sliding one-second window limiter shared by every caller of one API key."""

    def __init__(
        self,
        max_per_second: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_per_second <= 0:
            raise ValueError("max_per_second must be positive")
        self.max_per_second = max_per_second
        self._clock = clock
        self._sleep = sleep
        self._window: Deque[float] = deque()
        self._lock = threading.Lock()
        self.waits = 0

    def acquire(self) -> None:
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._window) >= self.max_per_second:
                delay = self._window[0] + 1.0 - now
                if delay > 0:
                    self.waits += 1
                    logger.debug("Rate limit reached, sleeping %.3fs", delay)
                    self._sleep(delay)
                now = self._clock()
                self._evict(now)
            self._window.append(now)

    def _evict(self, now: float) -> None:
        while self._window and self._window[0] <= now - 1.0:
            self._window.popleft()


@dataclass
class RequestMetrics:
    """Per-session request counters."""

    calls_by_endpoint: Dict[str, int] = field(default_factory=dict)
    cost_by_endpoint: Dict[str, float] = field(default_factory=dict)
    cache_hits: int = 0
    failed_attempts: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def total_calls(self) -> int:
        return sum(self.calls_by_endpoint.values())

    @property
    def total_cost(self) -> float:
        return sum(self.cost_by_endpoint.values())

    def inc_network(self, endpoint: str, cost: float, failed: bool = False) -> None:
        with self._lock:
            self.calls_by_endpoint[endpoint] = self.calls_by_endpoint.get(endpoint, 0) + 1
            self.cost_by_endpoint[endpoint] = self.cost_by_endpoint.get(endpoint, 0.0) + cost
            if failed:
                self.failed_attempts += 1

    def inc_cache_hit(self) -> None:
        with self._lock:
            self.cache_hits += 1


def price_for(endpoint: str) -> float:
    try:
        return config.ENDPOINT_PRICES[endpoint]
    except KeyError:
        raise ValueError(f"Unknown endpoint: {endpoint}") from None


def current_month(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m")


class CostTracker:
    """Running monthly API spend, shared by all sessions using one API key.

    When a cache is attached every billed attempt is also written to its daily
    usage ledger, and the month's earlier spend is read back on start.
    """

    def __init__(
        self,
        cache: Optional["Cache"] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.cache = cache
        self._now = now
        self._lock = threading.Lock()
        self._month = current_month(self._now())
        self._month_cost = 0.0
        self._month_calls = 0
        if cache is not None:
            usage = cache.get_monthly_usage(self._month)
            self._month_cost = usage["total_cost"]
            self._month_calls = usage["total_calls"]

    @property
    def monthly_cost(self) -> float:
        with self._lock:
            self._roll_month()
            return self._month_cost

    @property
    def monthly_calls(self) -> int:
        with self._lock:
            self._roll_month()
            return self._month_calls

    def record(self, endpoint: str) -> float:
        cost = price_for(endpoint)
        with self._lock:
            self._roll_month()
            self._month_cost += cost
            self._month_calls += 1
            if self.cache is not None:
                self.cache.add_usage(self._now().date().isoformat(), endpoint, 1, cost)
        return cost

    def remaining_budget(self, limit: float) -> float:
        return max(0.0, limit - self.monthly_cost)

    def is_approaching_limit(self, limit: float, threshold: float) -> bool:
        return self.monthly_cost >= limit * threshold

    def _roll_month(self) -> None:
        month = current_month(self._now())
        if month != self._month:
            logger.info("API spend month rolled over: %s -> %s", self._month, month)
            self._month = month
            self._month_cost = 0.0
            self._month_calls = 0


class HttpClient:
    def __init__(
        self,
        api_key: str,
        timeout: int = 30,
        retry_max: int = 2,
        backoff_base: float = 0.5,
        backoff_max: float = 2.0,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.retry_max = max(1, retry_max)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.session = requests.Session()

    def get_json(
        self,
        url: str,
        params: Dict[str, Any],
        before_attempt: Optional[Callable[[], None]] = None,
        after_attempt: Optional[Callable[[bool], None]] = None,
    ) -> Dict[str, Any]:
        """GET a Places endpoint and return the decoded payload.

        ``before_attempt`` runs ahead of every network attempt (throttling);
        ``after_attempt`` runs after every attempt with a success flag
        (billing). Both see retries as separate attempts.
        """
        query = dict(params)
        query["key"] = self.api_key
        for attempt in range(1, self.retry_max + 1):
            if before_attempt:
                before_attempt()
            try:
                payload = self._attempt(url, query)
            except _RetryableResponse as exc:
                if after_attempt:
                    after_attempt(False)
                logger.warning("%s from %s (attempt %s)", exc, url, attempt)
                if attempt >= self.retry_max:
                    raise TransientApiError(f"{exc} after {attempt} attempts") from None
                if exc.response is None or not self._sleep_retry_after(exc.response):
                    self._sleep_backoff(attempt)
                continue
            except PlacesApiError:
                if after_attempt:
                    after_attempt(False)
                raise
            if after_attempt:
                after_attempt(True)
            return payload

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def _attempt(self, url: str, query: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.session.get(url, params=query, timeout=self.timeout)
        except requests.RequestException as exc:
            raise _RetryableResponse(f"Request error {exc.__class__.__name__}") from exc

        status = resp.status_code
        if status in RETRYABLE_HTTP_STATUSES:
            raise _RetryableResponse(f"HTTP {status}", resp)
        if status != 200:
            logger.error("HTTP %s from %s", status, url)
            raise PlacesApiError(f"HTTP_{status}")

        try:
            payload = resp.json()
        except ValueError:
            raise _RetryableResponse("Non-JSON response", resp) from None

        api_status = payload.get("status", "OK")
        if api_status in config.API_OK_STATUSES:
            return payload
        if api_status in config.API_TRANSIENT_STATUSES:
            raise _RetryableResponse(f"API status {api_status}", resp)

        # Non-retryable
        message = payload.get("error_message")
        logger.error("Places API error from %s: status=%s error_message=%s", url, api_status, message)
        raise PlacesApiError(api_status, message)

    def _sleep_backoff(self, attempt: int) -> None:
        base = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        jitter = random.uniform(0, self.backoff_base)
        time.sleep(min(base + jitter, self.backoff_max))

    def _sleep_retry_after(self, resp: requests.Response) -> bool:
        retry_after = resp.headers.get("Retry-After")
        if not retry_after:
            return False
        try:
            delay = float(retry_after)
        except ValueError:
            return False
        delay = max(0.0, min(delay, self.backoff_max))
        time.sleep(delay)
        return True
