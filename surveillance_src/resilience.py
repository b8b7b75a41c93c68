"""Circuit breakers and retry policy for outbound provider calls.

Every call to an external source goes through ``ResilienceManager.call``:
the breaker for the service must admit it, transient failures are retried
with exponential backoff and jitter, and each attempt's outcome is recorded
on the breaker.
"""

import asyncio
import logging
import random
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

import requests

from .config import config
from .errors import (
    CircuitOpenSkipped,
    SourceAuthFailure,
    SourceError,
    SourceTimeout,
    SourceUnavailable,
    SourceValidationError,
)
from .models import CircuitBreakerRecord, CircuitState

logger = logging.getLogger(__name__)


@dataclass
class BreakerSettings:
    """Thresholds shared by all breakers of a registry."""
    failure_threshold: int = 5
    window_seconds: float = 60.0
    cool_down: float = 60.0
    backoff_multiplier: float = 2.0
    max_cool_down: float = 900.0

    @classmethod
    def from_config(cls) -> "BreakerSettings":
        return cls(
            failure_threshold=config.BREAKER_FAILURE_THRESHOLD,
            window_seconds=config.BREAKER_WINDOW_SECONDS,
            cool_down=config.BREAKER_COOL_DOWN_SECONDS,
            backoff_multiplier=config.BREAKER_BACKOFF_MULTIPLIER,
            max_cool_down=config.BREAKER_MAX_COOL_DOWN_SECONDS,
        )


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter for transient source errors."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.25

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_retries=config.RETRY_MAX_RETRIES,
            base_delay=config.RETRY_BASE_DELAY,
            max_delay=config.RETRY_MAX_DELAY,
            multiplier=config.RETRY_MULTIPLIER,
            jitter=config.RETRY_JITTER,
        )

    def should_retry(self, error: SourceError, attempt: int) -> bool:
        """Whether another attempt may follow failed attempt number ``attempt``."""
        return error.retryable and attempt <= self.max_retries

    def delay(self, attempt: int, rng: random.Random) -> float:
        """Backoff before the retry that follows attempt number ``attempt``."""
        delay = min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay *= 1 + rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)


class CircuitBreakerRegistry:
    """Per-service circuit breakers.

    All transitions of one service happen under that service's mutex, so
    two callers can never both take the half-open trial.
    """

    def __init__(
        self,
        settings: BreakerSettings | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.settings = settings or BreakerSettings.from_config()
        self._clock = clock or time.monotonic
        self._records: dict[str, CircuitBreakerRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _get(self, service_id: str) -> tuple[CircuitBreakerRecord, threading.Lock]:
        with self._registry_lock:
            record = self._records.get(service_id)
            if record is None:
                record = CircuitBreakerRecord(service_id, cool_down=self.settings.cool_down)
                self._records[service_id] = record
                self._locks[service_id] = threading.Lock()
            return record, self._locks[service_id]

    def acquire(self, service_id: str) -> None:
        """Admit a call or raise CircuitOpenSkipped."""
        record, lock = self._get(service_id)
        with lock:
            if record.state == CircuitState.CLOSED:
                return
            if record.state == CircuitState.OPEN:
                if self._clock() < record.next_retry_at:
                    raise CircuitOpenSkipped(service_id, record.next_retry_at)
                record.state = CircuitState.HALF_OPEN
                logger.info(f"Circuit for {service_id} half-open, admitting trial call")
            if record.trial_in_flight:
                raise CircuitOpenSkipped(service_id, record.next_retry_at)
            record.trial_in_flight = True

    def record_success(self, service_id: str) -> None:
        record, lock = self._get(service_id)
        with lock:
            if record.state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit for {service_id} closed after successful trial")
                record.state = CircuitState.CLOSED
                record.cool_down = self.settings.cool_down
                record.next_retry_at = None
                record.opened_at = None
                record.failure_times.clear()
            record.trial_in_flight = False

    def record_failure(self, service_id: str) -> None:
        record, lock = self._get(service_id)
        with lock:
            now = self._clock()
            if record.state == CircuitState.HALF_OPEN:
                record.cool_down = min(
                    record.cool_down * self.settings.backoff_multiplier,
                    self.settings.max_cool_down,
                )
                self._open(record, now)
                return

            record.failure_times.append(now)
            horizon = now - self.settings.window_seconds
            while record.failure_times and record.failure_times[0] < horizon:
                record.failure_times.popleft()

            if (
                record.state == CircuitState.CLOSED
                and record.failure_count >= self.settings.failure_threshold
            ):
                self._open(record, now)

    def record_cancelled(self, service_id: str) -> None:
        """A call was cancelled before it finished.

        Only a half-open trial is affected: the circuit re-opens with its
        current cool-down so the next trial waits again. In CLOSED state a
        cancellation says nothing about the provider and is not counted.
        """
        record, lock = self._get(service_id)
        with lock:
            if record.state == CircuitState.HALF_OPEN:
                self._open(record, self._clock())
            record.trial_in_flight = False

    def reset(self, service_id: str) -> bool:
        """Force a circuit closed. Returns False for an unknown service."""
        with self._registry_lock:
            record = self._records.get(service_id)
            lock = self._locks.get(service_id)
        if record is None:
            return False
        with lock:
            record.state = CircuitState.CLOSED
            record.cool_down = self.settings.cool_down
            record.next_retry_at = None
            record.opened_at = None
            record.trial_in_flight = False
            record.failure_times.clear()
        logger.info(f"Circuit for {service_id} manually reset")
        return True

    def _open(self, record: CircuitBreakerRecord, now: float) -> None:
        record.state = CircuitState.OPEN
        record.opened_at = now
        record.next_retry_at = now + record.cool_down
        record.trial_in_flight = False
        record.failure_times.clear()
        logger.warning(
            f"Circuit for {record.service_id} opened, retry in {record.cool_down:.0f}s"
        )

    def state(self, service_id: str) -> CircuitState:
        record, lock = self._get(service_id)
        with lock:
            return record.state

    def health(self) -> float:
        """Fraction of known services whose circuit is open."""
        with self._registry_lock:
            records = list(self._records.values())
        if not records:
            return 0.0
        open_count = sum(1 for r in records if r.state == CircuitState.OPEN)
        return open_count / len(records)

    def snapshot(self) -> dict[str, CircuitBreakerRecord]:
        """Copies of all breaker records."""
        with self._registry_lock:
            items = list(self._records.items())
        result = {}
        for service_id, record in items:
            with self._locks[service_id]:
                result[service_id] = replace(record, failure_times=deque(record.failure_times))
        return result


def classify_status(status_code: Optional[int], service_id: str, message: str = "") -> SourceError:
    """Map an HTTP status code to the error taxonomy."""
    if status_code in (401, 403):
        return SourceAuthFailure(service_id, message)
    if status_code is None or status_code == 429 or status_code >= 500:
        return SourceUnavailable(service_id, message)
    if 400 <= status_code < 500:
        return SourceValidationError(service_id, message)
    return SourceUnavailable(service_id, message)


def classify_error(exc: BaseException, service_id: str) -> SourceError:
    """Map any exception raised by a provider call to a SourceError."""
    if isinstance(exc, SourceError):
        return exc
    if isinstance(exc, (requests.Timeout, asyncio.TimeoutError, TimeoutError)):
        return SourceTimeout(service_id, str(exc) or "timed out")
    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        return classify_status(status, service_id, str(exc))
    if isinstance(exc, requests.ConnectionError):
        return SourceUnavailable(service_id, str(exc))
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return SourceValidationError(service_id, f"malformed payload: {exc}")
    return SourceUnavailable(service_id, f"{type(exc).__name__}: {exc}")


class ResilienceManager:
    """Runs provider calls behind circuit breakers with retries."""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: random.Random | None = None,
    ):
        self.breakers = breakers or CircuitBreakerRegistry()
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._error_counts: dict[str, Counter] = {}

    async def call(
        self,
        service_id: str,
        operation: Callable[[], Awaitable[Any]],
        timeout: float | None = None,
    ) -> Any:
        """Run ``operation`` for ``service_id``.

        ``timeout`` bounds the whole call, retries and backoff included:
        each attempt gets what is left of it, and no retry is started whose
        backoff would reach the deadline.

        Raises CircuitOpenSkipped without invoking the operation when the
        breaker is open, otherwise the classified SourceError of the last
        attempt.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        attempt = 0
        while True:
            attempt += 1
            try:
                self.breakers.acquire(service_id)
            except CircuitOpenSkipped as skipped:
                self._count_error(service_id, skipped)
                raise

            try:
                if deadline is not None:
                    result = await asyncio.wait_for(operation(), max(deadline - loop.time(), 0.0))
                else:
                    result = await operation()
            except asyncio.CancelledError:
                self.breakers.record_cancelled(service_id)
                raise
            except Exception as exc:
                error = classify_error(exc, service_id)
                self._count_error(service_id, error)
                self.breakers.record_failure(service_id)

                retry = (
                    self.retry_policy.should_retry(error, attempt)
                    and self.breakers.state(service_id) == CircuitState.CLOSED
                )
                delay = self.retry_policy.delay(attempt, self._rng) if retry else 0.0
                if retry and deadline is not None and loop.time() + delay >= deadline:
                    logger.warning(f"No time left to retry {service_id} after attempt {attempt}")
                    retry = False

                if not retry:
                    if error is exc:
                        raise
                    raise error from exc
                logger.warning(
                    f"Attempt {attempt} for {service_id} failed ({error}), "
                    f"retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            self.breakers.record_success(service_id)
            return result

    def _count_error(self, service_id: str, error: SourceError) -> None:
        self._error_counts.setdefault(service_id, Counter())[type(error).__name__] += 1

    def error_stats(self) -> dict[str, Any]:
        """Error counts per service and error type, with current breaker states."""
        counts = {sid: dict(c) for sid, c in sorted(self._error_counts.items())}
        return {
            "error_counts": counts,
            "total_errors": sum(sum(c.values()) for c in counts.values()),
            "circuits": {sid: r.to_dict() for sid, r in sorted(self.breakers.snapshot().items())},
        }

    def reset(self, service_id: str) -> bool:
        """Close a circuit by hand and forget the service's error counts."""
        self._error_counts.pop(service_id, None)
        return self.breakers.reset(service_id)

    def health(self) -> float:
        return self.breakers.health()
