"""
Off-ramp Order Service

Business-facing operations (quote, create, query, cancel, retry, banks) and
the two inbound callbacks (deposit confirmation, payout status). Order
creation runs quote -> bank verification -> wallet provisioning before
anything is written, so a failure in any step leaves no row behind.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session
from models import FailureStage, OfframpOrder, OfframpOrderStatus, WebhookDeliveryStatus, WebhookEvent, utc_now
from services.bank_verification_service import BankVerifier
from services.order_lifecycle import OrderLifecycleManager
from services.order_repository import OfframpOrderRepository, OrderFilters
from services.quote_resolver import QuoteResolver
from services.wallet_provisioning_service import WalletProvisioner
from services.webhook_dispatcher import BusinessWebhookDispatcher
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    BankVerificationFailed,
    InvalidOrderStatus,
    OrderNotFound,
    ValidationError,
)
from utils.fee_calculator import FeeCalculator
from utils.helpers import (
    generate_business_order_reference,
    generate_order_id,
    mask_account_number,
    validate_email,
    validate_webhook_url,
)

logger = logging.getLogger(__name__)

PAYOUT_SUCCESS_STATUSES = ("successful", "completed")
PAYOUT_FAILED_STATUSES = ("failed",)
PAYOUT_PENDING_STATUSES = ("pending",)
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class ResolvedToken:
    symbol: str
    network: str
    contract_address: str
    decimals: int
    fee_percentage: Decimal


class OfframpOrderService:
    """Orchestrates order creation and routes external events into the lifecycle"""

    def __init__(
        self,
        quote_resolver: QuoteResolver,
        bank_verifier: BankVerifier,
        wallet_provisioner: WalletProvisioner,
        lifecycle: OrderLifecycleManager,
        dispatcher: BusinessWebhookDispatcher,
        session_factory: Optional[async_sessionmaker] = None,
        config=None,
        logger_=None,
    ):
        self.quote_resolver = quote_resolver
        self.bank_verifier = bank_verifier
        self.wallet_provisioner = wallet_provisioner
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.config = config or Config
        self.logger = logger_ or logger

    # ------------------------------------------------------------------
    # Token and fee resolution
    # ------------------------------------------------------------------

    def _validate_network(self, network: Optional[str]) -> str:
        network = (network or "").strip().lower()
        if network not in self.config.SUPPORTED_NETWORKS:
            raise ValidationError(
                f"Unsupported network: {network or 'missing'}",
                {"supported_networks": list(self.config.SUPPORTED_NETWORKS)},
            )
        return network

    async def _resolve_token(self, business_id: str, token: Optional[str], network: str) -> ResolvedToken:
        symbol = (token or "").strip().upper()
        if not symbol:
            raise ValidationError("target_token is required")

        async with async_managed_session(self.session_factory) as session:
            repo = OfframpOrderRepository(session)
            row = await repo.find_token(business_id, network, symbol)
            fee_table = await repo.get_fee_table(business_id, network)

        if row is not None:
            contract_address, decimals = row.contract_address, row.decimals
        elif symbol == self.config.REFERENCE_ASSET and network in self.config.USDC_CONTRACTS:
            contract_address = self.config.USDC_CONTRACTS[network]
            decimals = self.config.USDC_DECIMALS.get(network, 6)
        else:
            raise ValidationError(
                f"Token {symbol} is not supported on {network} for this business",
                {"token": symbol, "network": network},
            )

        fee_percentage = FeeCalculator.resolve_fee_percentage(fee_table, contract_address)
        return ResolvedToken(symbol, network, contract_address, decimals, fee_percentage)

    # ------------------------------------------------------------------
    # Quote
    # ------------------------------------------------------------------

    async def get_quote(self, business_id: str, request: Dict[str, Any]) -> Dict[str, Any]:
        network = self._validate_network(request.get("target_network") or request.get("network"))
        token = await self._resolve_token(business_id, request.get("target_token") or request.get("token"), network)

        quote = await self.quote_resolver.resolve(
            token.symbol,
            network,
            token.contract_address,
            amount=request.get("token_amount"),
            fiat_target_amount=request.get("fiat_target_amount"),
            decimals=token.decimals,
        )
        fees = FeeCalculator.calculate_fees(quote.gross_fiat_amount, token.fee_percentage)

        return {
            "token": token.symbol,
            "network": network,
            "contract_address": token.contract_address,
            "token_amount": str(quote.token_amount),
            "exchange_rate": str(quote.unit_price),
            "reference_rate": str(quote.rate),
            "gross_fiat_amount": str(fees.gross_amount),
            "fee_percentage": str(fees.fee_percentage),
            "fee_amount": str(fees.fee_amount),
            "net_fiat_amount": str(fees.net_amount),
            "currency": self.config.FIAT_CURRENCY,
            "breakdown": quote.to_dict(),
            "expires_in_seconds": quote.expires_in_seconds,
            "source": quote.source,
            "provenance": quote.provenance,
        }

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _validate_create_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        required = ("customer_email", "customer_name", "target_token", "target_network",
                    "recipient_account_number", "recipient_bank_code")
        missing = [name for name in required if not str(request.get(name) or "").strip()]
        if request.get("token_amount") is None and request.get("fiat_target_amount") is None:
            missing.append("token_amount")
        if missing:
            raise ValidationError("Missing required fields", {"missing": missing})

        email = str(request["customer_email"]).strip()
        if not validate_email(email):
            raise ValidationError("Invalid customer email", {"field": "customer_email"})

        webhook_url = request.get("webhook_url")
        if webhook_url and not validate_webhook_url(webhook_url, allow_http=not self.config.IS_PRODUCTION):
            raise ValidationError("Invalid webhook URL", {"field": "webhook_url"})

        metadata = request.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object", {"field": "metadata"})

        return {
            "customer_email": email,
            "customer_name": str(request["customer_name"]).strip(),
            "customer_phone": request.get("customer_phone"),
            "network": self._validate_network(request["target_network"]),
            "account_number": str(request["recipient_account_number"]).strip(),
            "bank_code": str(request["recipient_bank_code"]).strip(),
            "webhook_url": webhook_url or None,
            "metadata": metadata,
        }

    async def create_order(self, business_id: str, request: Dict[str, Any]) -> Dict[str, Any]:
        """Validate, price, verify, provision and persist a PENDING_DEPOSIT order"""
        fields = self._validate_create_request(request)
        network = fields["network"]
        token = await self._resolve_token(business_id, request.get("target_token"), network)

        quote = await self.quote_resolver.resolve(
            token.symbol,
            network,
            token.contract_address,
            amount=request.get("token_amount"),
            fiat_target_amount=request.get("fiat_target_amount"),
            decimals=token.decimals,
        )
        fees = FeeCalculator.calculate_fees(quote.gross_fiat_amount, token.fee_percentage)

        account = await self.bank_verifier.verify_account(fields["account_number"], fields["bank_code"])
        if account is None:
            raise BankVerificationFailed(
                "Bank account verification failed. Please check account number and bank code.",
                {
                    "account_number": mask_account_number(fields["account_number"]),
                    "bank_code": fields["bank_code"],
                },
            )

        business_order_reference = generate_business_order_reference(token.symbol)
        wallet = await self.wallet_provisioner.provision(network, business_order_reference)

        now = utc_now()
        expires_at = now + timedelta(hours=self.config.ORDER_EXPIRY_HOURS)
        metadata = dict(fields["metadata"])
        metadata["pricing"] = dict(quote.provenance, mode=quote.mode, quoted_at=quote.quoted_at.isoformat())

        order = OfframpOrder(
            order_id=generate_order_id(),
            business_order_reference=business_order_reference,
            business_id=business_id,
            customer_email=fields["customer_email"],
            customer_name=fields["customer_name"],
            customer_phone=fields["customer_phone"],
            token_amount=quote.token_amount,
            target_token=token.symbol,
            target_network=network,
            token_contract_address=token.contract_address,
            exchange_rate=quote.unit_price,
            gross_fiat_amount=fees.gross_amount,
            fee_percentage=fees.fee_percentage,
            fee_amount=fees.fee_amount,
            net_fiat_amount=fees.net_amount,
            fiat_currency=self.config.FIAT_CURRENCY,
            recipient_account_number=account.account_number,
            recipient_account_name=account.account_name,
            recipient_bank_code=account.bank_code,
            recipient_bank_name=account.bank_name or request.get("recipient_bank_name"),
            bank_verification_provider=account.provider,
            bank_verified_at=account.verified_at,
            deposit_wallet_address=wallet.address,
            deposit_wallet_network=wallet.network,
            deposit_key_reference=wallet.key_reference,
            deposit_wallet_generated_at=wallet.generated_at,
            deposit_wallet_expires_at=expires_at,
            tokens_received=False,
            status=OfframpOrderStatus.PENDING_DEPOSIT.value,
            webhook_url=fields["webhook_url"],
            webhook_attempts=0,
            webhook_last_status=WebhookDeliveryStatus.PENDING.value if fields["webhook_url"] else None,
            retry_count=0,
            order_metadata=metadata,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )

        async with async_managed_session(self.session_factory) as session:
            await OfframpOrderRepository(session).add(order)

        self.logger.info(
            f"✅ ORDER_CREATED: order_id={order.order_id} ref={business_order_reference} business={business_id} "
            f"{order.token_amount} {token.symbol} ({network}) -> ₦{order.net_fiat_amount} "
            f"acct={mask_account_number(account.account_number)}"
        )
        self.dispatcher.dispatch(order.order_id, order.webhook_url, WebhookEvent.ORDER_CREATED.value, order.to_dict())

        return {
            "order_id": order.order_id,
            "business_order_reference": order.business_order_reference,
            "status": order.status,
            "deposit_wallet_address": order.deposit_wallet_address,
            "deposit_network": order.deposit_wallet_network,
            "exact_token_amount": str(order.token_amount),
            "target_token": order.target_token,
            "token_contract_address": order.token_contract_address,
            "deposit_expires_at": expires_at.isoformat(),
            "exchange_rate": str(order.exchange_rate),
            "gross_fiat_amount": str(order.gross_fiat_amount),
            "fee_percentage": str(order.fee_percentage),
            "fee_amount": str(order.fee_amount),
            "net_fiat_amount": str(order.net_fiat_amount),
            "currency": order.fiat_currency,
            "bank_details": account.to_dict(),
            "pricing": {"source": quote.source, "mode": quote.mode, "provenance": quote.provenance},
            "webhook_configured": bool(order.webhook_url),
            "instructions": f"Send exactly {order.token_amount} {order.target_token} on {network} "
                            f"to {order.deposit_wallet_address} before {expires_at.isoformat()}",
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _owned_order(self, business_id: str, identifier: str) -> OfframpOrder:
        async with async_managed_session(self.session_factory) as session:
            order = await OfframpOrderRepository(session).get_for_business(business_id, identifier)
        if order is None:
            raise OrderNotFound("Order not found", {"order_id": identifier})
        return order

    async def get_order(self, business_id: str, identifier: str) -> Dict[str, Any]:
        order = await self._owned_order(business_id, identifier)
        return order.to_dict()

    def _filters(self, params: Dict[str, Any]) -> OrderFilters:
        status = params.get("status")
        if status and status not in {s.value for s in OfframpOrderStatus}:
            raise ValidationError(f"Unknown status filter: {status}")
        return OrderFilters(
            status=status or None,
            token=params.get("token") or None,
            network=params.get("network") or None,
            customer_email=params.get("customer_email") or None,
            start_date=_parse_date(params.get("start_date"), "start_date"),
            end_date=_parse_date(params.get("end_date"), "end_date"),
        )

    async def list_orders(self, business_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            page = int(params.get("page") or 1)
            limit = int(params.get("limit") or 20)
        except (TypeError, ValueError):
            raise ValidationError("page and limit must be integers")
        if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")

        filters = self._filters(params)
        async with async_managed_session(self.session_factory) as session:
            orders, total = await OfframpOrderRepository(session).list_orders(business_id, filters, page, limit)

        return {
            "orders": [order.to_dict() for order in orders],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def get_stats(self, business_id: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        filters = self._filters(params or {})
        async with async_managed_session(self.session_factory) as session:
            return await OfframpOrderRepository(session).summary(business_id, filters)

    # ------------------------------------------------------------------
    # Business-initiated changes
    # ------------------------------------------------------------------

    async def cancel_order(self, business_id: str, identifier: str, reason: Optional[str] = None) -> Dict[str, Any]:
        order = await self._owned_order(business_id, identifier)
        result = await self.lifecycle.cancel(order.order_id, reason)
        self.logger.info(f"🛑 ORDER_CANCELLED: order_id={order.order_id} business={business_id}")
        return result.order.to_dict()

    async def retry_order(self, business_id: str, identifier: str, reason: Optional[str] = None) -> Dict[str, Any]:
        order = await self._owned_order(business_id, identifier)
        result = await self.lifecycle.retry(order.order_id, reason)
        data = result.order.to_dict()
        data["retry_info"] = {
            "retry_attempt": result.order.retry_count,
            "max_retries": self.lifecycle.max_retries,
            "previous_status": result.previous_status,
        }
        return data

    # ------------------------------------------------------------------
    # Banks
    # ------------------------------------------------------------------

    async def list_banks(self, query: Optional[str] = None) -> Dict[str, Any]:
        banks = await self.bank_verifier.search_banks(query)
        return {"banks": banks, "total": len(banks)}

    async def verify_bank_account(self, account_number: Optional[str], bank_code: Optional[str]) -> Dict[str, Any]:
        if not account_number or not bank_code:
            raise ValidationError("account_number and bank_code are required")
        account = await self.bank_verifier.verify_account(str(account_number).strip(), str(bank_code).strip())
        if account is None:
            raise BankVerificationFailed(
                "Account not found or invalid bank details",
                {"account_number": mask_account_number(str(account_number)), "bank_code": bank_code},
            )
        return account.to_dict()

    # ------------------------------------------------------------------
    # Inbound callbacks
    # ------------------------------------------------------------------

    async def handle_deposit_confirmation(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Route a confirmed on-chain deposit to its order.

        Re-delivery of a deposit that is already recorded is acknowledged
        without changes. A deposit for an order past its expiry expires the
        order instead.
        """
        wallet_address = _field(payload, "walletAddress", "wallet_address")
        transaction_hash = _field(payload, "transactionHash", "transaction_hash")
        raw_amount = _field(payload, "amount")
        missing = [name for name, value in (("walletAddress", wallet_address),
                                            ("transactionHash", transaction_hash),
                                            ("amount", raw_amount)) if value in (None, "")]
        if missing:
            raise ValidationError("Missing required fields: walletAddress, transactionHash, amount",
                                  {"missing": missing})
        try:
            amount = MonetaryDecimal.to_decimal(raw_amount, "amount")
        except ValueError as e:
            raise ValidationError(str(e), {"field": "amount"})
        if amount <= 0:
            raise ValidationError("Deposit amount must be greater than zero", {"field": "amount"})

        async with async_managed_session(self.session_factory) as session:
            order = await OfframpOrderRepository(session).find_by_deposit_wallet(wallet_address)
        if order is None:
            self.logger.warning(f"⚠️ DEPOSIT_UNKNOWN_WALLET: {wallet_address} tx={transaction_hash}")
            raise OrderNotFound("No order for deposit wallet", {"wallet_address": wallet_address})

        network = (_field(payload, "network") or order.deposit_wallet_network).lower()
        if network != order.deposit_wallet_network:
            raise ValidationError(
                f"Deposit network {network} does not match order network {order.deposit_wallet_network}",
                {"order_id": order.order_id},
            )

        if order.tokens_received:
            self.logger.info(
                f"↩️ DEPOSIT_DUPLICATE: order_id={order.order_id} tx={transaction_hash} status={order.status}"
            )
            return {"order_id": order.order_id, "status": order.status, "changed": False,
                    "requires_review": bool(order.requires_review)}

        if order.status == OfframpOrderStatus.PENDING_DEPOSIT.value and order.is_expired():
            await self.lifecycle.expire(order.order_id, expected_status=OfframpOrderStatus.PENDING_DEPOSIT.value)
            raise InvalidOrderStatus(
                "Order has expired",
                {"order_id": order.order_id, "status": OfframpOrderStatus.EXPIRED.value},
            )

        if order.status != OfframpOrderStatus.PENDING_DEPOSIT.value:
            raise InvalidOrderStatus(
                f"Order is not awaiting a deposit. Current status: {order.status}",
                {"order_id": order.order_id, "status": order.status},
            )

        result = await self.lifecycle.confirm_deposit(
            order.order_id,
            transaction_hash,
            amount,
            block_number=_field(payload, "blockNumber", "block_number"),
            confirmations=_field(payload, "confirmations"),
        )
        self.logger.info(f"📥 DEPOSIT_CONFIRMED: order_id={order.order_id} {amount} {order.target_token} tx={transaction_hash}")
        return {"order_id": order.order_id, "status": result.order.status, "changed": result.changed,
                "requires_review": bool(result.order.requires_review)}

    async def handle_payout_status(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Route a bank transfer status update to its order.

        A success for an order the stuck sweep already failed is still
        recorded: the transfer happened, so the order is held for review
        instead of being retried into a second payout.
        """
        reference = _field(payload, "reference")
        status = str(_field(payload, "status") or "").strip().lower()
        if not reference or not status:
            raise ValidationError("reference and status are required")

        async with async_managed_session(self.session_factory) as session:
            order = await OfframpOrderRepository(session).find_by_settlement_reference(reference)
        if order is None:
            self.logger.warning(f"⚠️ PAYOUT_UNKNOWN_REFERENCE: {reference} status={status}")
            raise OrderNotFound("No order for payout reference", {"reference": reference})

        transaction_id = _field(payload, "transactionId", "transaction_id")
        if status in PAYOUT_SUCCESS_STATUSES:
            amount = _field(payload, "amount")
            try:
                amount = MonetaryDecimal.to_decimal(amount, "amount") if amount is not None else None
            except ValueError as e:
                raise ValidationError(str(e), {"field": "amount"})
            if order.status == OfframpOrderStatus.FAILED.value:
                result = await self.lifecycle.record_late_payout(
                    order.order_id, payout_transaction_id=transaction_id, amount=amount
                )
            else:
                result = await self.lifecycle.complete_payout(
                    order.order_id, payout_transaction_id=transaction_id, amount=amount
                )
        elif status in PAYOUT_FAILED_STATUSES:
            reason = _field(payload, "failureReason", "failure_reason", "reason") or "Bank transfer failed"
            result = await self.lifecycle.fail(
                order.order_id,
                f"Bank payout failed: {reason}",
                FailureStage.BANK_PAYOUT.value,
                expected_status=OfframpOrderStatus.PENDING_PAYOUT.value,
            )
        elif status in PAYOUT_PENDING_STATUSES:
            self.logger.info(f"⏳ PAYOUT_PENDING: order_id={order.order_id} ref={reference}")
            return {"order_id": order.order_id, "status": order.status, "changed": False,
                    "requires_review": bool(order.requires_review)}
        else:
            raise ValidationError(
                f"Unknown payout status: {status}",
                {"allowed": list(PAYOUT_SUCCESS_STATUSES + PAYOUT_FAILED_STATUSES + PAYOUT_PENDING_STATUSES)},
            )

        self.logger.info(
            f"🏦 PAYOUT_STATUS: order_id={order.order_id} provider_status={status} "
            f"order_status={result.order.status} changed={result.changed}"
        )
        return {
            "order_id": order.order_id,
            "status": result.order.status,
            "changed": result.changed,
            "requires_review": bool(result.order.requires_review),
        }


def _field(payload: Dict[str, Any], *names: str) -> Any:
    """First present key; inbound providers send camelCase, older senders snake_case"""
    for name in names:
        if payload.get(name) is not None:
            return payload[name]
    return None


def _parse_date(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid {name}, expected ISO-8601", {"field": name})
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
