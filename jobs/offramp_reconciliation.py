"""
Off-ramp Reconciliation Monitor

Periodic sweep that finds orders the event stream left behind:
1. Expiry - orders past expires_at that never finished -> EXPIRED
2. Stuck - in-flight orders with no progress for the threshold -> FAILED (stuck_processing)

Each order is handled independently; one bad order is logged and counted,
never allowed to abort the sweep.
"""

import logging
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session
from models import OfframpOrderStatus, utc_now
from services.order_lifecycle import OrderLifecycleManager
from services.order_repository import OfframpOrderRepository

logger = logging.getLogger(__name__)

EXPIRABLE_STATUSES = (
    OfframpOrderStatus.PENDING_DEPOSIT.value,
    OfframpOrderStatus.DEPOSIT_RECEIVED.value,
    OfframpOrderStatus.PROCESSING.value,
)

STUCK_STATUSES = (
    OfframpOrderStatus.DEPOSIT_RECEIVED.value,
    OfframpOrderStatus.PROCESSING.value,
    OfframpOrderStatus.PENDING_PAYOUT.value,
)


class ReconciliationMonitor:
    """Expiry and stuck-order sweeps over the order store"""

    def __init__(self, lifecycle: OrderLifecycleManager, session_factory: Optional[async_sessionmaker] = None,
                 config=None, logger_=None):
        self.lifecycle = lifecycle
        self.session_factory = session_factory
        self.config = config or Config
        self.logger = logger_ or logger
        self.batch_size = self.config.RECONCILIATION_BATCH_SIZE
        self.stuck_threshold = timedelta(minutes=self.config.STUCK_ORDER_THRESHOLD_MINUTES)

    async def run_expiry_sweep(self, errors: Optional[List[Dict[str, Any]]] = None) -> int:
        errors = errors if errors is not None else []
        now = utc_now()
        async with async_managed_session(self.session_factory) as session:
            candidates = await OfframpOrderRepository(session).find_expired(now, EXPIRABLE_STATUSES, self.batch_size)

        expired = 0
        for order in candidates:
            try:
                result = await self.lifecycle.expire(order.order_id, expected_status=order.status)
                if result.changed:
                    expired += 1
                    self.logger.info(f"⏰ ORDER_EXPIRED: order_id={order.order_id} was {order.status}")
            except Exception as e:
                self.logger.error(f"❌ EXPIRY_SWEEP: order_id={order.order_id}: {e}", exc_info=True)
                errors.append({"order_id": order.order_id, "sweep": "expiry", "error": str(e)})
        return expired

    async def run_stuck_sweep(self, errors: Optional[List[Dict[str, Any]]] = None) -> int:
        errors = errors if errors is not None else []
        cutoff = utc_now() - self.stuck_threshold
        async with async_managed_session(self.session_factory) as session:
            candidates = await OfframpOrderRepository(session).find_stuck(
                cutoff, STUCK_STATUSES, self.config.MAX_RETRY_COUNT, self.batch_size
            )

        stuck = 0
        for order in candidates:
            try:
                result = await self.lifecycle.mark_stuck(order.order_id, expected_status=order.status)
                if result.changed:
                    stuck += 1
                    self.logger.warning(
                        f"🚨 ORDER_STUCK: order_id={order.order_id} in {order.status} since {order.updated_at.isoformat()}"
                    )
            except Exception as e:
                self.logger.error(f"❌ STUCK_SWEEP: order_id={order.order_id}: {e}", exc_info=True)
                errors.append({"order_id": order.order_id, "sweep": "stuck", "error": str(e)})
        return stuck

    async def run_reconciliation(self) -> Dict[str, Any]:
        """Run both sweeps; returns {expired, stuck, errors, duration_ms}"""
        started = time.perf_counter()
        errors: List[Dict[str, Any]] = []
        expired = await self.run_expiry_sweep(errors)
        stuck = await self.run_stuck_sweep(errors)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)

        if expired or stuck or errors:
            self.logger.info(
                f"📊 RECONCILIATION: expired={expired} stuck={stuck} errors={len(errors)} ({duration_ms}ms)"
            )
        else:
            self.logger.debug(f"📊 RECONCILIATION: nothing to do ({duration_ms}ms)")

        return {"expired": expired, "stuck": stuck, "errors": errors, "duration_ms": duration_ms}
