"""
Order Lifecycle Manager

The only writer of an order's status. Every transition re-reads the order,
checks the event applies to the current status and writes through a
status-guarded update; an inapplicable or already-applied event is a no-op so
duplicate webhooks and racing sweeps are safe. Business webhooks are dispatched
after the transition commits and are never awaited here.

Downstream actions (swap, payout) run as detached tasks; any failure in them
marks the order FAILED with the stage retry needs to resume from.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Set, Tuple, Type

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session
from models import FailureStage, OfframpOrder, OfframpOrderStatus, WebhookEvent, utc_now
from services.offramp_rate_service import RateSource
from services.order_repository import MAX_VERSION_CONFLICTS, OfframpOrderRepository
from services.settlement_service import PayoutExecutor, SwapExecutor
from services.webhook_dispatcher import BusinessWebhookDispatcher
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    InvalidOrderStatus,
    InvalidTransition,
    OfframpError,
    OptimisticLockConflict,
    OrderNotFound,
    RetryExhausted,
    RetryNotAllowed,
    ValidationError,
)
from utils.helpers import generate_payout_reference
from utils.order_state_machine import OrderStateValidator, OrderTransition, webhook_event_for

logger = logging.getLogger(__name__)

EXPIRED_REASON = "Order expired before completion"
STUCK_REASON = "Order stuck in processing - marked for retry"
PAYOUT_SLIPPAGE_TOLERANCE_PERCENT = Decimal("5")


@dataclass
class TransitionResult:
    order: OfframpOrder
    changed: bool
    previous_status: str

    @property
    def status(self) -> str:
        return self.order.status


class OrderLifecycleManager:
    """State machine driver for off-ramp orders"""

    def __init__(
        self,
        dispatcher: BusinessWebhookDispatcher,
        swap_executor: SwapExecutor,
        payout_executor: PayoutExecutor,
        rate_source: Optional[RateSource] = None,
        session_factory: Optional[async_sessionmaker] = None,
        config=None,
        logger_=None,
    ):
        self.dispatcher = dispatcher
        self.swap_executor = swap_executor
        self.payout_executor = payout_executor
        self.rate_source = rate_source
        self.session_factory = session_factory
        self.config = config or Config
        self.logger = logger_ or logger
        self.max_retries = self.config.MAX_RETRY_COUNT
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Core transition
    # ------------------------------------------------------------------

    async def transition(
        self,
        order_id: str,
        event: OrderTransition,
        details: Optional[Dict[str, Any]] = None,
        strict: bool = False,
        expected_status: Optional[str] = None,
    ) -> TransitionResult:
        """
        Apply event to the order.

        Returns changed=False when the event does not apply to the current
        status (or expected_status no longer holds); with strict=True that
        case raises InvalidTransition instead.
        """
        details = details or {}
        async with async_managed_session(self.session_factory) as session:
            repo = OfframpOrderRepository(session)
            order = await repo.get(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", {"order_id": order_id})

            previous = order.status
            retry_count = order.retry_count
            for _ in range(MAX_VERSION_CONFLICTS):
                target = OrderStateValidator.target_status(
                    previous, event, failure_stage=order.failure_stage, tokens_received=order.tokens_received
                )
                if target is None or (expected_status is not None and previous != expected_status):
                    if strict:
                        raise InvalidTransition(
                            f"Cannot apply {event.value} to order in status {previous}",
                            {"order_id": order_id, "status": previous, "event": event.value},
                        )
                    self.logger.info(f"↩️ ORDER_TRANSITION_NOOP: order_id={order_id} event={event.value} status={previous}")
                    return TransitionResult(order, False, previous)

                values = self._transition_values(order, event, target, details)
                expected_retry = order.retry_count if event == OrderTransition.RETRIED else None
                applied = await repo.compare_and_set(
                    order_id, previous, values, expected_retry_count=expected_retry, expected_version=order.version
                )
                order = await repo.get(order_id, refresh=True)
                if applied:
                    break

                # Only a metadata merge moved the version: rebuild from the fresh row
                if order.status == previous and order.retry_count == retry_count:
                    self.logger.info(f"↩️ ORDER_TRANSITION_CONFLICT: order_id={order_id} event={event.value}, re-reading")
                    continue

                if strict:
                    raise InvalidTransition(
                        f"Order {order_id} changed concurrently (now {order.status})",
                        {"order_id": order_id, "status": order.status, "event": event.value},
                    )
                self.logger.info(
                    f"↩️ ORDER_TRANSITION_RACE: order_id={order_id} event={event.value} "
                    f"expected={previous} now={order.status}"
                )
                return TransitionResult(order, False, previous)
            else:
                raise OptimisticLockConflict(
                    f"Order {order_id} kept changing while applying {event.value}",
                    {"order_id": order_id, "event": event.value},
                )

        self.logger.info(f"✅ ORDER_TRANSITION: order_id={order_id} {previous} -> {target} ({event.value})")
        self._notify(order, event, previous)
        return TransitionResult(order, True, previous)

    def _transition_values(self, order: OfframpOrder, event: OrderTransition, target: str,
                           details: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_now()
        values: Dict[str, Any] = {"status": target}
        metadata = dict(order.order_metadata or {})
        metadata.update(details.get("metadata") or {})

        if event == OrderTransition.DEPOSIT_CONFIRMED:
            values.update(
                tokens_received=True,
                received_amount=details.get("received_amount"),
                received_at=now,
                deposit_transaction_hash=details.get("transaction_hash"),
                deposit_received_at=now,
            )
            if details.get("requires_review"):
                values["requires_review"] = True
        elif event == OrderTransition.SWAP_STARTED:
            values["processing_started_at"] = now
        elif event == OrderTransition.PAYOUT_INITIATED:
            values.update(
                payout_initiated_at=now,
                payout_reference=details.get("payout_reference"),
            )
            if details.get("swap_transaction_hash"):
                values["swap_transaction_hash"] = details["swap_transaction_hash"]
        elif event == OrderTransition.PAYOUT_COMPLETED:
            values.update(completed_at=now, payout_transaction_id=details.get("payout_transaction_id"))
        elif event == OrderTransition.FAILED:
            stage = details.get("failure_stage")
            if stage not in {s.value for s in FailureStage}:
                raise ValidationError(f"Unknown failure stage {stage!r}")
            values.update(
                failed_at=now,
                failure_reason=details.get("failure_reason") or "Order processing failed",
                failure_stage=stage,
            )
        elif event == OrderTransition.EXPIRED:
            values.update(expired_at=now, failure_reason=details.get("failure_reason") or EXPIRED_REASON)
        elif event == OrderTransition.CANCELLED:
            values["cancelled_at"] = now
            metadata["cancellation_reason"] = details.get("reason") or "Cancelled by business"
        elif event == OrderTransition.RETRIED:
            history = list(metadata.get("retry_history") or [])
            history.append({
                "attempt": order.retry_count + 1,
                "retried_at": now.isoformat(),
                "previous_failure_reason": order.failure_reason,
                "previous_failure_stage": order.failure_stage,
                "reason": details.get("reason") or "Manual retry via API",
            })
            metadata["retry_history"] = history
            values.update(retry_count=order.retry_count + 1, failure_reason=None, failure_stage=None)

        values["order_metadata"] = metadata
        return values

    def _notify(self, order: OfframpOrder, event: OrderTransition, previous_status: str):
        webhook_event = webhook_event_for(event, order.failure_stage)
        data = order.to_dict()
        data["previous_status"] = previous_status
        self.dispatcher.dispatch(order.order_id, order.webhook_url, webhook_event.value, data)

    def _notify_review(self, order: OfframpOrder, reason: str, review: Dict[str, Any]):
        """Tell the business and the operators that the order is held"""
        data = order.to_dict()
        data["review"] = {"reason": reason, **review}
        self.dispatcher.dispatch(order.order_id, order.webhook_url, WebhookEvent.REQUIRES_REVIEW.value, data)
        self.dispatcher.alert(reason, {
            "order_id": order.order_id,
            "business_order_reference": order.business_order_reference,
            "business_id": order.business_id,
            "requires_review": True,
            **review,
        })

    # ------------------------------------------------------------------
    # Named operations
    # ------------------------------------------------------------------

    async def confirm_deposit(
        self,
        order_id: str,
        transaction_hash: str,
        amount: Decimal,
        block_number: Optional[int] = None,
        confirmations: Optional[int] = None,
    ) -> TransitionResult:
        """
        Record a confirmed deposit and start the swap; duplicates are no-ops.

        A deposit outside the amount tolerance is recorded but held in
        DEPOSIT_RECEIVED with requires_review set; no swap is started and a
        review notification goes out instead.
        """
        async with async_managed_session(self.session_factory) as session:
            order = await OfframpOrderRepository(session).get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", {"order_id": order_id})

        metadata: Dict[str, Any] = {
            "deposit": {
                "transaction_hash": transaction_hash,
                "amount": str(amount),
                "block_number": block_number,
                "confirmations": confirmations,
            }
        }
        mismatch = None
        tolerance = self.config.DEPOSIT_AMOUNT_TOLERANCE_PERCENT
        if not MonetaryDecimal.within_tolerance(amount, order.token_amount, tolerance):
            difference = abs(order.token_amount - amount)
            mismatch = {
                "expected": str(order.token_amount),
                "received": str(amount),
                "difference": str(difference),
                "percentage_difference": str((difference / order.token_amount * 100).quantize(Decimal("0.01"))),
            }
            self.logger.warning(
                f"⚠️ DEPOSIT_AMOUNT_MISMATCH: order_id={order_id} expected={order.token_amount} received={amount} "
                f"- held for review"
            )
            metadata.update(requires_review=True, amount_mismatch=mismatch)

        result = await self.transition(order_id, OrderTransition.DEPOSIT_CONFIRMED, {
            "received_amount": amount,
            "transaction_hash": transaction_hash,
            "requires_review": mismatch is not None,
            "metadata": metadata,
        })
        if not result.changed:
            return result
        if mismatch is not None:
            self._notify_review(result.order, "amount_mismatch", mismatch)
        else:
            self.schedule(self.start_swap(order_id))
        return result

    async def fail(self, order_id: str, reason: str, stage: str, expected_status: Optional[str] = None) -> TransitionResult:
        return await self.transition(
            order_id,
            OrderTransition.FAILED,
            {"failure_reason": reason, "failure_stage": stage},
            expected_status=expected_status,
        )

    async def expire(self, order_id: str, reason: str = EXPIRED_REASON,
                     expected_status: Optional[str] = None) -> TransitionResult:
        return await self.transition(
            order_id, OrderTransition.EXPIRED, {"failure_reason": reason}, expected_status=expected_status
        )

    async def mark_stuck(self, order_id: str, expected_status: Optional[str] = None) -> TransitionResult:
        return await self.fail(order_id, STUCK_REASON, FailureStage.STUCK_PROCESSING.value, expected_status)

    async def complete_payout(self, order_id: str, payout_transaction_id: Optional[str] = None,
                              amount: Optional[Decimal] = None) -> TransitionResult:
        details: Dict[str, Any] = {"payout_transaction_id": payout_transaction_id}
        if amount is not None:
            details["metadata"] = {"final_payout_amount": str(amount)}
        return await self.transition(order_id, OrderTransition.PAYOUT_COMPLETED, details)

    async def record_late_payout(self, order_id: str, payout_transaction_id: Optional[str] = None,
                                 amount: Optional[Decimal] = None) -> TransitionResult:
        """
        Provider confirmed a payout for an order that is already FAILED
        (typically swept as stuck while the transfer was in flight).

        The customer has been paid, so the confirmation is recorded, the order
        is held for review and retry is refused from then on. Status stays FAILED.
        """
        async with async_managed_session(self.session_factory) as session:
            repo = OfframpOrderRepository(session)
            order = await repo.get(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", {"order_id": order_id})

            previous = order.status
            for _ in range(MAX_VERSION_CONFLICTS):
                metadata = dict(order.order_metadata or {})
                if (order.status != OfframpOrderStatus.FAILED.value or not order.payout_reference
                        or metadata.get("payout_confirmed")):
                    self.logger.info(f"↩️ LATE_PAYOUT_NOOP: order_id={order_id} status={order.status}")
                    return TransitionResult(order, False, previous)

                confirmation = {
                    "payout_transaction_id": payout_transaction_id,
                    "final_payout_amount": str(amount) if amount is not None else None,
                    "failure_stage": order.failure_stage,
                    "failure_reason": order.failure_reason,
                    "confirmed_at": utc_now().isoformat(),
                }
                metadata.update(payout_confirmed=True, requires_review=True, late_payout_confirmation=confirmation)
                applied = await repo.compare_and_set(
                    order_id,
                    OfframpOrderStatus.FAILED.value,
                    {"payout_transaction_id": payout_transaction_id, "requires_review": True, "order_metadata": metadata},
                    expected_version=order.version,
                )
                order = await repo.get(order_id, refresh=True)
                if applied:
                    break
            else:
                raise OptimisticLockConflict(
                    f"Order {order_id} kept changing while recording a payout",
                    {"order_id": order_id},
                )

        self.logger.warning(
            f"🚨 LATE_PAYOUT_CONFIRMED: order_id={order_id} stage={confirmation['failure_stage']} "
            f"tx={payout_transaction_id} - held for review, retry disabled"
        )
        self._notify_review(order, "payout_confirmed_after_failure", confirmation)
        return TransitionResult(order, True, previous)

    async def cancel(self, order_id: str, reason: Optional[str] = None) -> TransitionResult:
        """Only a PENDING_DEPOSIT order with no deposit recorded can be cancelled"""
        async with async_managed_session(self.session_factory) as session:
            order = await OfframpOrderRepository(session).get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", {"order_id": order_id})

        if order.status != OfframpOrderStatus.PENDING_DEPOSIT.value or order.tokens_received:
            raise InvalidOrderStatus(
                f"Order cannot be cancelled. Current status: {order.status}",
                {"order_id": order_id, "status": order.status, "tokens_received": order.tokens_received},
            )

        result = await self.transition(order_id, OrderTransition.CANCELLED, {"reason": reason})
        if not result.changed:
            raise InvalidOrderStatus(
                f"Order cannot be cancelled. Current status: {result.order.status}",
                {"order_id": order_id, "status": result.order.status},
            )
        return result

    def can_retry(self, order: OfframpOrder, now: Optional[datetime] = None) -> Tuple[bool, Optional[str], Optional[Type[OfframpError]]]:
        """(allowed, refusal message, refusal error class)"""
        if order.status != OfframpOrderStatus.FAILED.value:
            return False, f"Order status is {order.status}, only failed orders can be retried", RetryNotAllowed
        if order.requires_review or (order.order_metadata or {}).get("payout_confirmed"):
            return False, "Order is held for manual review and cannot be retried", RetryNotAllowed
        if order.retry_count >= self.max_retries:
            return False, f"Maximum retry attempts ({self.max_retries}) exceeded", RetryExhausted
        if order.is_expired(now):
            return False, "Order has expired", RetryNotAllowed
        return True, None, None

    async def retry(self, order_id: str, reason: Optional[str] = None) -> TransitionResult:
        """Reset a failed order to where it stopped and re-run the downstream action"""
        async with async_managed_session(self.session_factory) as session:
            order = await OfframpOrderRepository(session).get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", {"order_id": order_id})

        allowed, message, error_cls = self.can_retry(order)
        if not allowed:
            self.logger.info(f"🚫 ORDER_RETRY_REFUSED: order_id={order_id} {message}")
            raise error_cls(message, {
                "order_id": order_id,
                "status": order.status,
                "retry_count": order.retry_count,
                "max_retries": self.max_retries,
            })

        failed_stage = order.failure_stage
        try:
            result = await self.transition(order_id, OrderTransition.RETRIED, {"reason": reason}, strict=True)
        except InvalidTransition as e:
            raise RetryNotAllowed(e.message, e.details)

        self.logger.info(
            f"🔁 ORDER_RETRY: order_id={order_id} attempt={result.order.retry_count}/{self.max_retries} "
            f"stage={failed_stage} -> {result.order.status}"
        )
        self._resume(result.order)
        return result

    def _resume(self, order: OfframpOrder):
        if order.status == OfframpOrderStatus.DEPOSIT_RECEIVED.value:
            self.schedule(self.start_swap(order.order_id))
        elif order.status == OfframpOrderStatus.PENDING_PAYOUT.value:
            self.schedule(self.start_payout(order.order_id))
        elif order.status == OfframpOrderStatus.PROCESSING.value:
            # Stalled mid-processing: pay out if the swap already landed, else swap again
            if order.swap_transaction_hash:
                self.schedule(self.start_payout(order.order_id))
            else:
                self.schedule(self._run_swap(order.order_id))

    # ------------------------------------------------------------------
    # Downstream actions
    # ------------------------------------------------------------------

    async def start_swap(self, order_id: str) -> None:
        result = await self.transition(order_id, OrderTransition.SWAP_STARTED)
        if not result.changed:
            return
        await self._run_swap(order_id)

    async def _run_swap(self, order_id: str) -> None:
        async with async_managed_session(self.session_factory) as session:
            order = await OfframpOrderRepository(session).get(order_id)
        if order is None or order.status != OfframpOrderStatus.PROCESSING.value:
            return

        self.logger.info(f"🔄 TOKEN_SWAP: order_id={order_id} {order.received_amount or order.token_amount} {order.target_token}")
        try:
            swap = await self.swap_executor.execute_swap(order)
        except Exception as e:
            self.logger.error(f"❌ TOKEN_SWAP_FAILED: order_id={order_id}: {e}", exc_info=True)
            await self.fail(order_id, f"Token swap failed: {_describe(e)}", FailureStage.TOKEN_SWAP.value,
                            expected_status=OfframpOrderStatus.PROCESSING.value)
            return

        self.logger.info(f"✅ TOKEN_SWAP: order_id={order_id} tx={swap.transaction_hash} out={swap.output_amount}")
        async with async_managed_session(self.session_factory) as session:
            await OfframpOrderRepository(session).update_metadata(order_id, {
                "swap": {
                    "transaction_hash": swap.transaction_hash,
                    "output_amount": str(swap.output_amount),
                    "route": swap.route,
                    "completed_at": utc_now().isoformat(),
                }
            })
        await self.start_payout(order_id, reference_amount=swap.output_amount,
                                swap_transaction_hash=swap.transaction_hash)

    async def _payout_amount(self, order: OfframpOrder, reference_amount: Optional[Decimal]) -> Decimal:
        """min(swap output at the current rate, expected net); never more than was quoted"""
        expected = order.net_fiat_amount
        if reference_amount is None or self.rate_source is None:
            return expected

        rate_quote = await self.rate_source.get_rate(reference_amount)
        computed = MonetaryDecimal.quantize_ngn(reference_amount * rate_quote.rate)
        if not MonetaryDecimal.within_tolerance(computed, expected, PAYOUT_SLIPPAGE_TOLERANCE_PERCENT):
            self.logger.warning(
                f"⚠️ PAYOUT_SLIPPAGE: order_id={order.order_id} expected=₦{expected} computed=₦{computed}"
            )
        return min(computed, expected)

    async def start_payout(self, order_id: str, reference_amount: Optional[Decimal] = None,
                           swap_transaction_hash: Optional[str] = None) -> None:
        async with async_managed_session(self.session_factory) as session:
            order = await OfframpOrderRepository(session).get(order_id)
        if order is None:
            return

        payout_reference = generate_payout_reference(order.business_order_reference)
        try:
            amount = await self._payout_amount(order, reference_amount)
        except Exception as e:
            self.logger.error(f"❌ BANK_PAYOUT_FAILED: order_id={order_id} amount calculation: {e}", exc_info=True)
            await self.fail(order_id, f"Bank payout failed: {_describe(e)}", FailureStage.BANK_PAYOUT.value)
            return

        if order.status == OfframpOrderStatus.PROCESSING.value:
            # PENDING_PAYOUT is recorded before the call so an early provider callback finds it
            result = await self.transition(order_id, OrderTransition.PAYOUT_INITIATED, {
                "payout_reference": payout_reference,
                "swap_transaction_hash": swap_transaction_hash,
                "metadata": {"payout_amount": str(amount)},
            })
            if not result.changed:
                return
            order = result.order
        elif order.status != OfframpOrderStatus.PENDING_PAYOUT.value:
            return

        self.logger.info(f"🏦 BANK_PAYOUT: order_id={order_id} ₦{amount} ref={payout_reference}")
        try:
            payout = await self.payout_executor.initiate_payout(order, amount, payout_reference)
        except Exception as e:
            self.logger.error(f"❌ BANK_PAYOUT_FAILED: order_id={order_id}: {e}", exc_info=True)
            await self.fail(order_id, f"Bank payout failed: {_describe(e)}", FailureStage.BANK_PAYOUT.value,
                            expected_status=OfframpOrderStatus.PENDING_PAYOUT.value)
            return

        async with async_managed_session(self.session_factory) as session:
            await OfframpOrderRepository(session).update_metadata(order_id, {
                "payout": {
                    "reference": payout.reference,
                    "provider_reference": payout.provider_reference,
                    "status": payout.status,
                    "amount": str(payout.amount),
                    "initiated_at": utc_now().isoformat(),
                }
            })

    # ------------------------------------------------------------------
    # Background task bookkeeping
    # ------------------------------------------------------------------

    def schedule(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"❌ LIFECYCLE_TASK: {task.exception()!r}", exc_info=task.exception())

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until downstream actions (and the actions they spawn) settle"""
        while self._tasks:
            done, not_done = await asyncio.wait(list(self._tasks), timeout=timeout)
            if not_done:
                self.logger.warning(f"⚠️ LIFECYCLE_DRAIN: {len(not_done)} tasks still running, cancelling")
                for task in not_done:
                    task.cancel()
                return


def _describe(error: Exception) -> str:
    if isinstance(error, OfframpError):
        return error.message
    return str(error) or type(error).__name__
