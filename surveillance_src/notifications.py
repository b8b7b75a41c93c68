"""Outbound alert delivery.

Detection hands alerts to the ``AlertDispatcher``; a worker task delivers
each alert once to every configured alerter, retrying with exponential
backoff. Deliveries that exhaust their attempts become dead letters.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import requests

from .config import config
from .db import SurveillanceDatabase
from .models import OutbreakAlert, SeenAlerts, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Surveillance-Signature"
EVENT_HEADER = "X-Surveillance-Event"


class BaseAlerter(ABC):
    """Abstract base class for alerters."""

    name: str = "alerter"

    @abstractmethod
    def send_alert(self, alert: OutbreakAlert) -> bool:
        """
        Send an outbreak alert.

        Args:
            alert: The alert to deliver

        Returns:
            True if alert was sent successfully, False otherwise
        """
        pass

    @abstractmethod
    def get_alert_count(self) -> int:
        """Return the number of alerts sent."""
        pass


class LogAlerter(BaseAlerter):
    """Writes alerts to the log."""

    name = "log"

    def __init__(self):
        self.alert_count = 0

    def send_alert(self, alert: OutbreakAlert) -> bool:
        logger.warning(
            f"OUTBREAK ALERT [{alert.severity.value.upper()}] {alert.message} (id={alert.id})"
        )
        self.alert_count += 1
        return True

    def get_alert_count(self) -> int:
        return self.alert_count


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 signature of a request body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookAlerter(BaseAlerter):
    """Posts alerts as signed JSON to a webhook endpoint."""

    name = "webhook"

    def __init__(
        self,
        url: str | None = None,
        secret: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ):
        self.url = url or config.ALERT_WEBHOOK_URL
        if not self.url:
            raise ValueError("Webhook URL is not configured")
        self.secret = secret if secret is not None else config.ALERT_WEBHOOK_SECRET
        self.timeout = timeout or config.ALERT_WEBHOOK_TIMEOUT
        self.session = session or requests.Session()
        self.alert_count = 0

    def build_request(self, alert: OutbreakAlert) -> tuple[bytes, dict]:
        body = json.dumps(
            {"event": "outbreak_alert", "alert": alert.to_dict()}, sort_keys=True
        ).encode("utf-8")
        headers = {"Content-Type": "application/json", EVENT_HEADER: "outbreak_alert"}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, self.secret)
        return body, headers

    def send_alert(self, alert: OutbreakAlert) -> bool:
        body, headers = self.build_request(alert)
        try:
            response = self.session.post(self.url, data=body, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Webhook delivery of alert {alert.id} failed: {e}")
            return False

        self.alert_count += 1
        return True

    def get_alert_count(self) -> int:
        return self.alert_count


@dataclass
class DeadLetter:
    """A delivery that exhausted its attempts."""
    alert_id: str
    alerter: str
    attempts: int
    last_error: Optional[str]
    payload: dict
    created_at: datetime = field(default_factory=utcnow)


class AlertDispatcher:
    """Queue-based, at-most-once-per-alert delivery to alerters."""

    def __init__(
        self,
        alerters: list[BaseAlerter],
        db: SurveillanceDatabase | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        queue_size: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        seen_retention: timedelta | None = None,
    ):
        self.alerters = list(alerters)
        self.db = db
        self.max_attempts = max_attempts or config.ALERT_DELIVERY_MAX_ATTEMPTS
        self.base_delay = config.ALERT_DELIVERY_BASE_DELAY if base_delay is None else base_delay
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size or config.ALERT_QUEUE_SIZE)
        self._sleep = sleep or asyncio.sleep
        self._seen = SeenAlerts(
            seen_retention or timedelta(days=config.ALERT_SEEN_RETENTION_DAYS)
        )
        self._worker: Optional[asyncio.Task] = None

        self.dead_letters: list[DeadLetter] = []
        self.delivered: dict[str, int] = {a.name: 0 for a in self.alerters}

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run())
        logger.info(f"Alert dispatcher started with {len(self.alerters)} alerter(s)")

    async def stop(self, drain: bool = True) -> None:
        """Stop the worker, by default after delivering everything queued."""
        if drain and self.running:
            await self._queue.join()
        if self._worker:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
        logger.info("Alert dispatcher stopped")

    async def flush(self) -> None:
        """Wait until every queued alert has been handled."""
        await self._queue.join()

    def submit(self, alert: OutbreakAlert) -> bool:
        """Queue an alert. Returns False if it was already submitted or the queue is full."""
        if alert.id in self._seen:
            logger.debug(f"Alert {alert.id} already dispatched")
            return False
        try:
            self._queue.put_nowait(alert)
        except asyncio.QueueFull:
            logger.error(f"Alert queue full, dead-lettering alert {alert.id}")
            for alerter in self.alerters:
                self._dead_letter(alert, alerter, 0, "queue full")
            return False
        self._seen.add(alert)
        return True

    async def _run(self) -> None:
        while True:
            alert = await self._queue.get()
            try:
                for alerter in self.alerters:
                    await self._deliver(alert, alerter)
            except Exception as e:
                logger.error(f"Error dispatching alert {alert.id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def _deliver(self, alert: OutbreakAlert, alerter: BaseAlerter) -> bool:
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                if await asyncio.to_thread(alerter.send_alert, alert):
                    self.delivered[alerter.name] = self.delivered.get(alerter.name, 0) + 1
                    return True
                last_error = "alerter reported failure"
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"{alerter.name} raised delivering alert {alert.id}: {e}")

            if attempt < self.max_attempts:
                await self._sleep(self.base_delay * 2 ** (attempt - 1))

        self._dead_letter(alert, alerter, self.max_attempts, last_error)
        return False

    def _dead_letter(
        self, alert: OutbreakAlert, alerter: BaseAlerter, attempts: int, error: str | None
    ) -> None:
        letter = DeadLetter(alert.id, alerter.name, attempts, error, alert.to_dict())
        self.dead_letters.append(letter)
        logger.error(
            f"Alert {alert.id} dead-lettered for {alerter.name} after {attempts} attempts: {error}"
        )
        if self.db is not None:
            self.db.save_dead_letter(
                letter.alert_id, letter.alerter, letter.attempts, letter.last_error, letter.payload
            )
