"""
Reconciliation sweep tests
Expiry, stuck detection, per-order error isolation and scheduler registration
"""

from datetime import datetime, timedelta, timezone

import pytest

from jobs.offramp_reconciliation import ReconciliationMonitor
from jobs.scheduler import RECONCILIATION_JOB_ID, OfframpScheduler
from models import FailureStage, OfframpOrderStatus, WebhookEvent
from services.order_repository import OfframpOrderRepository
from tests.conftest import TestConfig

S = OfframpOrderStatus


@pytest.fixture
def monitor(lifecycle, session_factory):
    return ReconciliationMonitor(lifecycle, session_factory=session_factory, config=TestConfig)


def _ago(**kwargs) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**kwargs)


async def _status(session_factory, order_id) -> str:
    async with session_factory() as session:
        return (await OfframpOrderRepository(session).get(order_id)).status


class TestExpirySweep:
    """Orders past expires_at that never finished"""

    @pytest.mark.asyncio
    async def test_expires_overdue_pending_orders(self, monitor, order_factory, session_factory, dispatcher):
        """Overdue PENDING_DEPOSIT -> EXPIRED with an order.expired webhook"""
        overdue = await order_factory(expires_at=_ago(minutes=5))
        fresh = await order_factory()

        assert await monitor.run_expiry_sweep() == 1
        assert await _status(session_factory, overdue.order_id) == S.EXPIRED.value
        assert await _status(session_factory, fresh.order_id) == S.PENDING_DEPOSIT.value
        assert dispatcher.event_names(overdue.order_id) == [WebhookEvent.EXPIRED.value]

    @pytest.mark.asyncio
    async def test_pending_payout_never_expires(self, monitor, order_factory, session_factory):
        """Once the payout is initiated only its outcome decides the order"""
        order = await order_factory(status=S.PENDING_PAYOUT.value, tokens_received=True,
                                    expires_at=_ago(minutes=5))
        assert await monitor.run_expiry_sweep() == 0
        assert await _status(session_factory, order.order_id) == S.PENDING_PAYOUT.value

    @pytest.mark.asyncio
    async def test_terminal_orders_ignored(self, monitor, order_factory):
        """Completed, failed and cancelled orders are left alone"""
        for status in (S.COMPLETED, S.FAILED, S.CANCELLED):
            await order_factory(status=status.value, expires_at=_ago(hours=1))
        assert await monitor.run_expiry_sweep() == 0

    @pytest.mark.asyncio
    async def test_second_sweep_is_noop(self, monitor, order_factory):
        """Re-running the sweep does not re-expire"""
        await order_factory(expires_at=_ago(minutes=5))
        assert await monitor.run_expiry_sweep() == 1
        assert await monitor.run_expiry_sweep() == 0


class TestStuckSweep:
    """In-flight orders with no progress past the threshold"""

    @pytest.mark.asyncio
    async def test_marks_stale_processing_order(self, monitor, order_factory, session_factory, dispatcher):
        """PROCESSING untouched for 2h -> FAILED/stuck_processing with order.stuck_detected"""
        order = await order_factory(status=S.PROCESSING.value, tokens_received=True, updated_at=_ago(hours=2))

        assert await monitor.run_stuck_sweep() == 1
        async with session_factory() as session:
            stored = await OfframpOrderRepository(session).get(order.order_id)
        assert stored.status == S.FAILED.value
        assert stored.failure_stage == FailureStage.STUCK_PROCESSING.value
        assert stored.failure_reason == "Order stuck in processing - marked for retry"
        assert dispatcher.event_names(order.order_id) == [WebhookEvent.STUCK_DETECTED.value]

    @pytest.mark.asyncio
    async def test_recent_progress_not_stuck(self, monitor, order_factory):
        """Updated 10 minutes ago is within the 60 minute threshold"""
        await order_factory(status=S.PROCESSING.value, tokens_received=True, updated_at=_ago(minutes=10))
        assert await monitor.run_stuck_sweep() == 0

    @pytest.mark.asyncio
    async def test_pending_deposit_is_never_stuck(self, monitor, order_factory):
        """Waiting for a customer deposit is expiry's business, not stuck detection"""
        await order_factory(updated_at=_ago(hours=5))
        assert await monitor.run_stuck_sweep() == 0

    @pytest.mark.asyncio
    async def test_exhausted_orders_excluded(self, monitor, order_factory, session_factory):
        """retry_count at the ceiling is not flagged again"""
        order = await order_factory(status=S.PENDING_PAYOUT.value, tokens_received=True,
                                    updated_at=_ago(hours=2), retry_count=3)
        assert await monitor.run_stuck_sweep() == 0
        assert await _status(session_factory, order.order_id) == S.PENDING_PAYOUT.value


class TestRunReconciliation:
    """Combined run and error isolation"""

    @pytest.mark.asyncio
    async def test_summary_counts(self, monitor, order_factory):
        """One expired and one stuck order"""
        await order_factory(expires_at=_ago(minutes=1))
        await order_factory(status=S.PENDING_PAYOUT.value, tokens_received=True, updated_at=_ago(hours=3))

        summary = await monitor.run_reconciliation()
        assert summary["expired"] == 1
        assert summary["stuck"] == 1
        assert summary["errors"] == []
        assert summary["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_one_bad_order_does_not_abort_sweep(self, monitor, lifecycle, order_factory, session_factory):
        """An exception on one order is recorded; the rest are still processed"""
        bad = await order_factory(expires_at=_ago(minutes=10))
        good = await order_factory(expires_at=_ago(minutes=5))

        original_expire = lifecycle.expire

        async def flaky_expire(order_id, *args, **kwargs):
            if order_id == bad.order_id:
                raise RuntimeError("database hiccup")
            return await original_expire(order_id, *args, **kwargs)

        lifecycle.expire = flaky_expire
        summary = await monitor.run_reconciliation()

        assert summary["expired"] == 1
        assert summary["errors"] == [{"order_id": bad.order_id, "sweep": "expiry", "error": "database hiccup"}]
        assert await _status(session_factory, good.order_id) == S.EXPIRED.value
        assert await _status(session_factory, bad.order_id) == S.PENDING_DEPOSIT.value


class EnabledConfig(TestConfig):
    RECONCILIATION_ENABLED = True
    RECONCILIATION_INTERVAL_SECONDS = 45


class TestOfframpScheduler:
    """APScheduler registration"""

    def test_setup_registers_interval_job(self, monitor):
        """A single reconciliation job on the configured interval"""
        scheduler = OfframpScheduler(monitor, config=EnabledConfig)
        scheduler.setup_jobs()
        job = scheduler.scheduler.get_job(RECONCILIATION_JOB_ID)
        assert job is not None
        assert job.trigger.interval == timedelta(seconds=45)
        assert job.max_instances == 1
        assert job.coalesce is True

    def test_disabled_scheduler_does_not_start(self, monitor):
        """RECONCILIATION_ENABLED=false leaves the scheduler stopped"""
        scheduler = OfframpScheduler(monitor, config=TestConfig)
        scheduler.start()
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_start_and_stop(self, monitor):
        """Enabled scheduler runs until stopped"""
        scheduler = OfframpScheduler(monitor, config=EnabledConfig)
        scheduler.start()
        try:
            assert scheduler.running is True
        finally:
            scheduler.stop()
        assert scheduler.running is False
