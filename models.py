"""
Off-ramp Order Service - Database Schema
========================================

Schema for the token -> NGN off-ramp:
- Off-ramp orders and their lifecycle, settlement and webhook tracking
- Per-business token fee configuration (read-only here)
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, Text,
    Index, CheckConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC (SQLite drops tzinfo)"""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OfframpOrderStatus(Enum):
    """Off-ramp order lifecycle states"""
    PENDING_DEPOSIT = "pending_deposit"
    DEPOSIT_RECEIVED = "deposit_received"
    PROCESSING = "processing"
    PENDING_PAYOUT = "pending_payout"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class FailureStage(Enum):
    """Where a failed order stopped, so retry knows where to resume"""
    TOKEN_SWAP = "token_swap"
    BANK_PAYOUT = "bank_payout"
    STUCK_PROCESSING = "stuck_processing"


class SupportedNetwork(Enum):
    """Networks deposit wallets can be provisioned on"""
    BASE = "base"
    SOLANA = "solana"
    ETHEREUM = "ethereum"


class WebhookDeliveryStatus(Enum):
    """Outcome of the last business webhook attempt"""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookEvent(Enum):
    """Business-facing webhook event names"""
    ORDER_CREATED = "offramp_order.created"
    DEPOSIT_RECEIVED = "offramp_order.deposit_received"
    PROCESSING = "offramp_order.processing"
    PAYOUT_INITIATED = "offramp_order.payout_initiated"
    COMPLETED = "offramp_order.completed"
    FAILED = "offramp_order.failed"
    EXPIRED = "offramp_order.expired"
    CANCELLED = "offramp_order.cancelled"
    RETRIED = "offramp_order.retried"
    STUCK_DETECTED = "offramp_order.stuck_detected"
    REQUIRES_REVIEW = "offramp_order.requires_review"


class OfframpErrorCode(Enum):
    """Stable machine-readable error codes returned to businesses"""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    BELOW_MINIMUM_VALUE = "BELOW_MINIMUM_VALUE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_ORDER_STATUS = "INVALID_ORDER_STATUS"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    RETRY_NOT_ALLOWED = "RETRY_NOT_ALLOWED"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    BANK_VERIFICATION_FAILED = "BANK_VERIFICATION_FAILED"
    WEBHOOK_DELIVERY_FAILED = "WEBHOOK_DELIVERY_FAILED"
    DUPLICATE_ORDER_REFERENCE = "DUPLICATE_ORDER_REFERENCE"
    INVALID_WEBHOOK_SIGNATURE = "INVALID_WEBHOOK_SIGNATURE"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


TERMINAL_STATUSES = (
    OfframpOrderStatus.COMPLETED.value,
    OfframpOrderStatus.EXPIRED.value,
    OfframpOrderStatus.CANCELLED.value,
)

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in OfframpOrderStatus)
_STAGE_VALUES = ", ".join(f"'{stage.value}'" for stage in FailureStage)
_NETWORK_VALUES = ", ".join(f"'{network.value}'" for network in SupportedNetwork)


# ============================================================================
# OFF-RAMP ORDERS
# ============================================================================

class OfframpOrder(Base):
    """A single token -> fiat off-ramp order owned by a business"""
    __tablename__ = "offramp_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)
    business_order_reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Customer (immutable after creation)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Token terms (immutable after creation)
    token_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    target_token: Mapped[str] = mapped_column(String(20), nullable=False)
    target_network: Mapped[str] = mapped_column(String(20), nullable=False)
    token_contract_address: Mapped[str] = mapped_column(String(128), nullable=False)

    # Pricing, computed once at creation
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(38, 8), nullable=False)
    gross_fiat_amount: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)
    fee_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4), default=0, nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(38, 2), default=0, nullable=False)
    net_fiat_amount: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)
    fiat_currency: Mapped[str] = mapped_column(String(10), default="NGN", nullable=False)

    # Verified payout target (set once)
    recipient_account_number: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_bank_code: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_bank_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bank_verification_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    bank_verified_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Single-use deposit wallet
    deposit_wallet_address: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    deposit_wallet_network: Mapped[str] = mapped_column(String(20), nullable=False)
    deposit_key_reference: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Opaque custody handle
    deposit_wallet_generated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    deposit_wallet_expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    tokens_received: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    received_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(38, 18), nullable=True)
    received_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    deposit_transaction_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Settlement
    swap_transaction_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payout_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    payout_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default=OfframpOrderStatus.PENDING_DEPOSIT.value, nullable=False)
    deposit_received_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    payout_initiated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Business webhook tracking
    webhook_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    webhook_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    webhook_last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    webhook_last_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    webhook_last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Audit
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_stage: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    requires_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)  # Held for an operator
    order_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)  # Pricing source, swap route, review flags
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, onupdate=utc_now, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)  # Optimistic locking

    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="ck_offramp_status_valid"),
        CheckConstraint(f"failure_stage IS NULL OR failure_stage IN ({_STAGE_VALUES})", name="ck_offramp_failure_stage_valid"),
        CheckConstraint(f"target_network IN ({_NETWORK_VALUES})", name="ck_offramp_network_valid"),
        CheckConstraint("token_amount > 0", name="ck_offramp_token_amount_positive"),
        CheckConstraint("fee_percentage >= 0 AND fee_percentage <= 100", name="ck_offramp_fee_percentage_range"),
        CheckConstraint("fee_amount >= 0", name="ck_offramp_fee_amount_positive"),
        CheckConstraint("retry_count >= 0 AND retry_count <= 3", name="ck_offramp_retry_count_range"),
        # Monetary invariant; the tolerance only absorbs float storage on SQLite
        CheckConstraint(
            "ABS(net_fiat_amount - (gross_fiat_amount - fee_amount)) < 0.000001",
            name="ck_offramp_net_equals_gross_minus_fee",
        ),
        Index("ix_offramp_orders_business_status", "business_id", "status"),
        Index("ix_offramp_orders_status_expires", "status", "expires_at"),
        Index("ix_offramp_orders_status_updated", "status", "updated_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) > self.expires_at

    def to_dict(self) -> dict:
        """Business-facing representation (no custody handle)"""
        return {
            "order_id": self.order_id,
            "business_order_reference": self.business_order_reference,
            "status": self.status,
            "customer": {
                "email": self.customer_email,
                "name": self.customer_name,
                "phone": self.customer_phone,
            },
            "token": {
                "amount": str(self.token_amount),
                "symbol": self.target_token,
                "network": self.target_network,
                "contract_address": self.token_contract_address,
            },
            "pricing": {
                "exchange_rate": str(self.exchange_rate),
                "gross_fiat_amount": str(self.gross_fiat_amount),
                "fee_percentage": str(self.fee_percentage),
                "fee_amount": str(self.fee_amount),
                "net_fiat_amount": str(self.net_fiat_amount),
                "currency": self.fiat_currency,
            },
            "bank_details": {
                "account_number": self.recipient_account_number,
                "account_name": self.recipient_account_name,
                "bank_code": self.recipient_bank_code,
                "bank_name": self.recipient_bank_name,
                "verified": True,
                "verification_provider": self.bank_verification_provider,
                "verified_at": _iso(self.bank_verified_at),
            },
            "deposit": {
                "wallet_address": self.deposit_wallet_address,
                "network": self.deposit_wallet_network,
                "expires_at": _iso(self.deposit_wallet_expires_at),
                "tokens_received": self.tokens_received,
                "received_amount": str(self.received_amount) if self.received_amount is not None else None,
                "received_at": _iso(self.received_at),
                "transaction_hash": self.deposit_transaction_hash,
            },
            "settlement": {
                "swap_transaction_hash": self.swap_transaction_hash,
                "payout_reference": self.payout_reference,
                "payout_transaction_id": self.payout_transaction_id,
            },
            "webhook": {
                "url": self.webhook_url,
                "attempts": self.webhook_attempts,
                "last_attempt_at": _iso(self.webhook_last_attempt_at),
                "last_status": self.webhook_last_status,
            },
            "retry_count": self.retry_count,
            "failure_reason": self.failure_reason,
            "failure_stage": self.failure_stage,
            "requires_review": self.requires_review,
            "metadata": self.order_metadata or {},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
            "deposit_received_at": _iso(self.deposit_received_at),
            "processing_started_at": _iso(self.processing_started_at),
            "payout_initiated_at": _iso(self.payout_initiated_at),
            "completed_at": _iso(self.completed_at),
            "failed_at": _iso(self.failed_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================================
# FEE CONFIGURATION (written by token management, read here)
# ============================================================================

class BusinessTokenFee(Base):
    """Per-business fee percentage for a supported token contract"""
    __tablename__ = "business_token_fees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    contract_address: Mapped[str] = mapped_column(String(128), nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, default=18, nullable=False)
    fee_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4), default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("fee_percentage >= 0 AND fee_percentage <= 10", name="ck_token_fee_percentage_range"),
        Index("ix_business_token_fees_lookup", "business_id", "network", "token_symbol"),
    )
