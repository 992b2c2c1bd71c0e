"""
Off-ramp Order State Machine
Legal status edges and the event -> target-status rules used by the lifecycle manager
"""

import logging
from enum import Enum
from typing import Dict, Optional, Set

from models import FailureStage, OfframpOrderStatus, WebhookEvent

logger = logging.getLogger(__name__)


class OrderTransition(Enum):
    """Events that move an off-ramp order"""

    DEPOSIT_CONFIRMED = "deposit_confirmed"  # PENDING_DEPOSIT -> DEPOSIT_RECEIVED
    SWAP_STARTED = "swap_started"  # DEPOSIT_RECEIVED -> PROCESSING
    PAYOUT_INITIATED = "payout_initiated"  # PROCESSING -> PENDING_PAYOUT
    PAYOUT_COMPLETED = "payout_completed"  # PENDING_PAYOUT -> COMPLETED
    FAILED = "failed"  # Any non-terminal -> FAILED
    EXPIRED = "expired"  # PENDING_DEPOSIT/DEPOSIT_RECEIVED/PROCESSING -> EXPIRED
    CANCELLED = "cancelled"  # PENDING_DEPOSIT (no deposit) -> CANCELLED
    RETRIED = "retried"  # FAILED -> state preceding the failure stage


S = OfframpOrderStatus


class OrderStateValidator:
    """Validates order state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        S.PENDING_DEPOSIT.value: {
            S.DEPOSIT_RECEIVED.value,
            S.FAILED.value,
            S.EXPIRED.value,
            S.CANCELLED.value,
        },
        S.DEPOSIT_RECEIVED.value: {
            S.PROCESSING.value,
            S.FAILED.value,
            S.EXPIRED.value,
        },
        S.PROCESSING.value: {
            S.PENDING_PAYOUT.value,
            S.FAILED.value,
            S.EXPIRED.value,
        },
        S.PENDING_PAYOUT.value: {
            S.COMPLETED.value,
            S.FAILED.value,
        },
        # Retry only; never back to PENDING_DEPOSIT
        S.FAILED.value: {
            S.DEPOSIT_RECEIVED.value,
            S.PROCESSING.value,
            S.PENDING_PAYOUT.value,
        },
        # Terminal states
        S.COMPLETED.value: set(),
        S.EXPIRED.value: set(),
        S.CANCELLED.value: set(),
    }

    # Event -> (statuses it applies to, target status); RETRIED is resolved per failure stage
    EVENT_RULES: Dict[OrderTransition, tuple] = {
        OrderTransition.DEPOSIT_CONFIRMED: ({S.PENDING_DEPOSIT.value}, S.DEPOSIT_RECEIVED.value),
        OrderTransition.SWAP_STARTED: ({S.DEPOSIT_RECEIVED.value}, S.PROCESSING.value),
        OrderTransition.PAYOUT_INITIATED: ({S.PROCESSING.value}, S.PENDING_PAYOUT.value),
        OrderTransition.PAYOUT_COMPLETED: ({S.PENDING_PAYOUT.value}, S.COMPLETED.value),
        OrderTransition.FAILED: (
            {S.PENDING_DEPOSIT.value, S.DEPOSIT_RECEIVED.value, S.PROCESSING.value, S.PENDING_PAYOUT.value},
            S.FAILED.value,
        ),
        OrderTransition.EXPIRED: (
            {S.PENDING_DEPOSIT.value, S.DEPOSIT_RECEIVED.value, S.PROCESSING.value},
            S.EXPIRED.value,
        ),
        OrderTransition.CANCELLED: ({S.PENDING_DEPOSIT.value}, S.CANCELLED.value),
        OrderTransition.RETRIED: ({S.FAILED.value}, None),
    }

    RETRY_RESUME_STATUS: Dict[str, str] = {
        FailureStage.TOKEN_SWAP.value: S.DEPOSIT_RECEIVED.value,
        FailureStage.BANK_PAYOUT.value: S.PENDING_PAYOUT.value,
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """COMPLETED, EXPIRED and CANCELLED never move again; FAILED may be retried"""
        return not cls.VALID_TRANSITIONS.get(status)

    @classmethod
    def retry_target(cls, failure_stage: Optional[str]) -> str:
        return cls.RETRY_RESUME_STATUS.get(failure_stage or "", S.PROCESSING.value)

    @classmethod
    def target_status(cls, current_status: str, event: OrderTransition,
                      failure_stage: Optional[str] = None, tokens_received: bool = False) -> Optional[str]:
        """Status the event leads to from current_status, or None when it does not apply"""
        applies_to, target = cls.EVENT_RULES[event]
        if current_status not in applies_to:
            return None
        if event == OrderTransition.CANCELLED and tokens_received:
            return None
        if event == OrderTransition.RETRIED:
            target = cls.retry_target(failure_stage)
        if not cls.is_valid_transition(current_status, target):
            return None
        return target


WEBHOOK_EVENTS: Dict[OrderTransition, WebhookEvent] = {
    OrderTransition.DEPOSIT_CONFIRMED: WebhookEvent.DEPOSIT_RECEIVED,
    OrderTransition.SWAP_STARTED: WebhookEvent.PROCESSING,
    OrderTransition.PAYOUT_INITIATED: WebhookEvent.PAYOUT_INITIATED,
    OrderTransition.PAYOUT_COMPLETED: WebhookEvent.COMPLETED,
    OrderTransition.FAILED: WebhookEvent.FAILED,
    OrderTransition.EXPIRED: WebhookEvent.EXPIRED,
    OrderTransition.CANCELLED: WebhookEvent.CANCELLED,
    OrderTransition.RETRIED: WebhookEvent.RETRIED,
}


def webhook_event_for(event: OrderTransition, failure_stage: Optional[str] = None) -> WebhookEvent:
    if event == OrderTransition.FAILED and failure_stage == FailureStage.STUCK_PROCESSING.value:
        return WebhookEvent.STUCK_DETECTED
    return WEBHOOK_EVENTS[event]
