"""
Business Webhook Dispatcher

Signs lifecycle notifications with HMAC-SHA256 and posts them to the owning
business. Delivery runs as a detached task: the transitioning caller never
awaits it, and a failed delivery only touches the order's webhook-tracking
fields. One attempt per event; there is no inline re-delivery.
"""

import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import aiohttp
import orjson
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session
from models import WebhookDeliveryStatus
from services.order_repository import OfframpOrderRepository
from utils.exception_handler import WebhookDeliveryFailed

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


def sign_payload(body: bytes, secret: str) -> str:
    """sha256=<hex hmac> over the exact bytes that are sent"""
    digest = hmac.new((secret or "").encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_webhook_body(event_type: str, data: Dict[str, Any], timestamp: Optional[datetime] = None) -> bytes:
    envelope = {
        "event": event_type,
        "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
        "data": data,
    }
    return orjson.dumps(envelope, default=str)


class BusinessWebhookDispatcher:
    """Non-blocking, signed delivery of order notifications"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None, config=None, logger_=None):
        self.config = config or Config
        self.session_factory = session_factory
        self.secret = self.config.WEBHOOK_SECRET
        self.timeout = aiohttp.ClientTimeout(total=self.config.WEBHOOK_TIMEOUT_SECONDS)
        self.user_agent = self.config.WEBHOOK_USER_AGENT
        self.logger = logger_ or logger
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def notify(self, url: str, event_type: str, payload: Dict[str, Any]) -> DeliveryResult:
        """Single signed POST; never raises"""
        body = build_webhook_body(event_type, payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, self.secret),
            EVENT_HEADER: event_type,
            "User-Agent": self.user_agent,
        }

        started = time.perf_counter()
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, data=body, headers=headers) as response:
                    duration_ms = (time.perf_counter() - started) * 1000
                    if 200 <= response.status < 300:
                        self.logger.info(
                            f"📤 WEBHOOK_DELIVERED: {event_type} -> {url} HTTP {response.status} ({duration_ms:.0f}ms)"
                        )
                        return DeliveryResult(True, response.status, None, duration_ms)
                    error = WebhookDeliveryFailed(f"HTTP {response.status}", {"url": url, "event": event_type})
                    self.logger.warning(f"⚠️ WEBHOOK_FAILED: {event_type} -> {url} {error.message}")
                    return DeliveryResult(False, response.status, error.message, duration_ms)
        except asyncio.TimeoutError:
            duration_ms = (time.perf_counter() - started) * 1000
            self.logger.warning(f"⚠️ WEBHOOK_TIMEOUT: {event_type} -> {url} after {self.timeout.total}s")
            return DeliveryResult(False, None, f"Timeout after {self.timeout.total}s", duration_ms)
        except aiohttp.ClientError as e:
            duration_ms = (time.perf_counter() - started) * 1000
            self.logger.warning(f"⚠️ WEBHOOK_FAILED: {event_type} -> {url} {type(e).__name__}: {e}")
            return DeliveryResult(False, None, f"{type(e).__name__}: {e}", duration_ms)

    def dispatch(self, order_id: str, url: Optional[str], event_type: str,
                 data: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Schedule delivery without awaiting it; no-op without a webhook URL"""
        if not url:
            self.logger.debug(f"WEBHOOK_SKIPPED: {event_type} for {order_id} - no webhook URL")
            return None

        task = asyncio.create_task(self._deliver_and_track(order_id, url, event_type, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def alert(self, alert_type: str, data: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Operator alert to the internal notification URL; no-op when unset"""
        url = getattr(self.config, "INTERNAL_NOTIFICATION_WEBHOOK_URL", None)
        if not url:
            self.logger.debug(f"ALERT_SKIPPED: {alert_type} - no internal notification URL")
            return None

        task = asyncio.create_task(self.notify(url, f"offramp_alert.{alert_type}", data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver_and_track(self, order_id: str, url: str, event_type: str, data: Dict[str, Any]) -> DeliveryResult:
        result = await self.notify(url, event_type, data)
        status = WebhookDeliveryStatus.DELIVERED if result.delivered else WebhookDeliveryStatus.FAILED
        try:
            async with async_managed_session(self.session_factory) as session:
                await OfframpOrderRepository(session).update_webhook_tracking(order_id, status.value, result.error)
        except Exception as e:
            # Tracking fields only; lifecycle status is never touched here
            self.logger.error(f"❌ WEBHOOK_TRACKING: Could not record {status.value} for {order_id}: {e}", exc_info=True)
        return result

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding deliveries (used at shutdown and in tests)"""
        if not self._tasks:
            return
        pending = list(self._tasks)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            self.logger.warning(f"⚠️ WEBHOOK_DRAIN: {len(not_done)} deliveries still running, cancelling")
            for task in not_done:
                task.cancel()
