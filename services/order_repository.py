"""
Order Repository - storage adapter for off-ramp orders

Transitions are written with a status precondition (compare-and-set) so two
tasks touching the same order cannot overwrite each other; the loser sees a
zero rowcount and treats the event as already handled.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models import BusinessTokenFee, OfframpOrder, OfframpOrderStatus, utc_now
from utils.exception_handler import DuplicateOrderReference, OptimisticLockConflict

logger = logging.getLogger(__name__)

MAX_VERSION_CONFLICTS = 5

PENDING_STATUSES = (
    OfframpOrderStatus.PENDING_DEPOSIT.value,
    OfframpOrderStatus.DEPOSIT_RECEIVED.value,
    OfframpOrderStatus.PROCESSING.value,
    OfframpOrderStatus.PENDING_PAYOUT.value,
)


@dataclass
class OrderFilters:
    status: Optional[str] = None
    token: Optional[str] = None
    network: Optional[str] = None
    customer_email: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class OfframpOrderRepository:
    """Durable store of off-ramp orders keyed by order id and business reference"""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, order_id: str, refresh: bool = False) -> Optional[OfframpOrder]:
        stmt = select(OfframpOrder).where(OfframpOrder.order_id == order_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_business(self, business_id: str, identifier: str) -> Optional[OfframpOrder]:
        """Match on order id or business order reference, scoped to the owner"""
        stmt = select(OfframpOrder).where(
            OfframpOrder.business_id == business_id,
            or_(
                OfframpOrder.order_id == identifier,
                OfframpOrder.business_order_reference == identifier,
            ),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_deposit_wallet(self, address: str) -> Optional[OfframpOrder]:
        # EVM addresses are case-insensitive; Solana base58 addresses are not
        if address.startswith("0x"):
            condition = func.lower(OfframpOrder.deposit_wallet_address) == address.lower()
        else:
            condition = OfframpOrder.deposit_wallet_address == address
        stmt = select(OfframpOrder).where(condition)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_settlement_reference(self, reference: str) -> Optional[OfframpOrder]:
        """Payout webhooks may quote the payout reference, the business reference or the order id"""
        stmt = select(OfframpOrder).where(
            or_(
                OfframpOrder.payout_reference == reference,
                OfframpOrder.business_order_reference == reference,
                OfframpOrder.order_id == reference,
            )
        ).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, order: OfframpOrder) -> OfframpOrder:
        self.session.add(order)
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.error(f"❌ ORDER_REPOSITORY: Duplicate reference for {order.order_id}: {e.orig}")
            raise DuplicateOrderReference(
                "An order with this reference already exists",
                {"order_id": order.order_id, "business_order_reference": order.business_order_reference},
            )
        return order

    async def compare_and_set(
        self,
        order_id: str,
        expected_status: str,
        values: Dict[str, Any],
        expected_retry_count: Optional[int] = None,
        expected_version: Optional[int] = None,
    ) -> bool:
        """
        Apply values only if the order is still in expected_status; True when a row changed.

        With expected_version the write also fails when any other write (a
        metadata merge included) landed since the caller read the order.
        """
        conditions = [OfframpOrder.order_id == order_id, OfframpOrder.status == expected_status]
        if expected_retry_count is not None:
            conditions.append(OfframpOrder.retry_count == expected_retry_count)
        if expected_version is not None:
            conditions.append(OfframpOrder.version == expected_version)

        values = dict(values)
        values.setdefault("updated_at", utc_now())
        values["version"] = OfframpOrder.version + 1
        stmt = (
            update(OfframpOrder)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def update_metadata(self, order_id: str, extra: Dict[str, Any]) -> None:
        """Merge keys into the provenance bag without touching lifecycle fields"""
        for _ in range(MAX_VERSION_CONFLICTS):
            order = await self.get(order_id, refresh=True)
            if order is None:
                return
            merged = dict(order.order_metadata or {})
            merged.update(extra)
            stmt = (
                update(OfframpOrder)
                .where(OfframpOrder.order_id == order_id, OfframpOrder.version == order.version)
                .values(order_metadata=merged, version=OfframpOrder.version + 1, updated_at=OfframpOrder.updated_at)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            if result.rowcount == 1:
                return
            logger.info(f"↩️ ORDER_METADATA_CONFLICT: order_id={order_id} version={order.version}, re-reading")
        raise OptimisticLockConflict(
            f"Order {order_id} metadata kept changing during update",
            {"order_id": order_id, "keys": sorted(extra)},
        )

    async def update_webhook_tracking(self, order_id: str, status: str, error: Optional[str] = None) -> None:
        """Record a delivery attempt; updated_at is left alone so stuck detection is unaffected"""
        stmt = (
            update(OfframpOrder)
            .where(OfframpOrder.order_id == order_id)
            .values(
                webhook_attempts=OfframpOrder.webhook_attempts + 1,
                webhook_last_attempt_at=utc_now(),
                webhook_last_status=status,
                webhook_last_error=error,
                updated_at=OfframpOrder.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def find_expired(self, now: datetime, statuses: Iterable[str], limit: int = 100) -> Sequence[OfframpOrder]:
        stmt = (
            select(OfframpOrder)
            .where(
                OfframpOrder.expires_at < now,
                OfframpOrder.status.in_(list(statuses)),
                OfframpOrder.requires_review.is_(False),
            )
            .order_by(OfframpOrder.expires_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_stuck(
        self, cutoff: datetime, statuses: Iterable[str], max_retry: int, limit: int = 100
    ) -> Sequence[OfframpOrder]:
        stmt = (
            select(OfframpOrder)
            .where(
                OfframpOrder.updated_at < cutoff,
                OfframpOrder.status.in_(list(statuses)),
                OfframpOrder.retry_count < max_retry,
                OfframpOrder.requires_review.is_(False),
            )
            .order_by(OfframpOrder.updated_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _filter_conditions(self, business_id: str, filters: Optional[OrderFilters]) -> List[Any]:
        conditions = [OfframpOrder.business_id == business_id]
        if not filters:
            return conditions
        if filters.status:
            conditions.append(OfframpOrder.status == filters.status)
        if filters.token:
            conditions.append(OfframpOrder.target_token == filters.token.upper())
        if filters.network:
            conditions.append(OfframpOrder.target_network == filters.network.lower())
        if filters.customer_email:
            conditions.append(func.lower(OfframpOrder.customer_email) == filters.customer_email.lower())
        if filters.start_date:
            conditions.append(OfframpOrder.created_at >= filters.start_date)
        if filters.end_date:
            conditions.append(OfframpOrder.created_at <= filters.end_date)
        return conditions

    async def list_orders(
        self, business_id: str, filters: Optional[OrderFilters] = None, page: int = 1, limit: int = 20
    ) -> Tuple[Sequence[OfframpOrder], int]:
        conditions = self._filter_conditions(business_id, filters)
        total = (await self.session.execute(
            select(func.count(OfframpOrder.id)).where(*conditions)
        )).scalar() or 0

        stmt = (
            select(OfframpOrder)
            .where(*conditions)
            .order_by(OfframpOrder.created_at.desc(), OfframpOrder.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all(), total

    async def summary(self, business_id: str, filters: Optional[OrderFilters] = None) -> Dict[str, Any]:
        conditions = self._filter_conditions(business_id, filters)
        stmt = (
            select(
                OfframpOrder.status,
                OfframpOrder.target_network,
                func.count(OfframpOrder.id),
                func.coalesce(func.sum(OfframpOrder.token_amount), 0),
                func.coalesce(func.sum(OfframpOrder.gross_fiat_amount), 0),
                func.coalesce(func.sum(OfframpOrder.fee_amount), 0),
                func.coalesce(func.sum(OfframpOrder.net_fiat_amount), 0),
            )
            .where(*conditions)
            .group_by(OfframpOrder.status, OfframpOrder.target_network)
        )
        rows = (await self.session.execute(stmt)).all()

        zero = Decimal("0")
        totals = {
            "total_orders": 0,
            "total_token_volume": zero,
            "total_gross_fiat": zero,
            "total_fees": zero,
            "total_net_fiat": zero,
            "completed_orders": 0,
            "pending_orders": 0,
            "failed_orders": 0,
        }
        by_status: Dict[str, int] = {}
        by_network: Dict[str, Dict[str, Any]] = {}

        for status, network, count, token_volume, gross, fees, net in rows:
            token_volume, gross = Decimal(str(token_volume)), Decimal(str(gross))
            fees, net = Decimal(str(fees)), Decimal(str(net))
            totals["total_orders"] += count
            totals["total_token_volume"] += token_volume
            totals["total_gross_fiat"] += gross
            totals["total_fees"] += fees
            totals["total_net_fiat"] += net
            by_status[status] = by_status.get(status, 0) + count
            if status == OfframpOrderStatus.COMPLETED.value:
                totals["completed_orders"] += count
            elif status in PENDING_STATUSES:
                totals["pending_orders"] += count
            elif status == OfframpOrderStatus.FAILED.value:
                totals["failed_orders"] += count

            bucket = by_network.setdefault(network, {"orders": 0, "gross_fiat": zero, "net_fiat": zero, "completed": 0})
            bucket["orders"] += count
            bucket["gross_fiat"] += gross
            bucket["net_fiat"] += net
            if status == OfframpOrderStatus.COMPLETED.value:
                bucket["completed"] += count

        success_rate = (
            round(totals["completed_orders"] / totals["total_orders"] * 100, 2) if totals["total_orders"] else 0.0
        )
        return {
            "summary": {
                key: (str(value) if isinstance(value, Decimal) else value) for key, value in totals.items()
            },
            "by_status": by_status,
            "by_network": {
                network: {key: (str(value) if isinstance(value, Decimal) else value) for key, value in bucket.items()}
                for network, bucket in by_network.items()
            },
            "success_rate": success_rate,
        }

    # ------------------------------------------------------------------
    # Fee configuration (read-only)
    # ------------------------------------------------------------------

    async def get_fee_table(self, business_id: str, network: str) -> Sequence[BusinessTokenFee]:
        stmt = select(BusinessTokenFee).where(
            BusinessTokenFee.business_id == business_id,
            BusinessTokenFee.network == network,
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_token(self, business_id: str, network: str, token_symbol: str) -> Optional[BusinessTokenFee]:
        stmt = select(BusinessTokenFee).where(
            BusinessTokenFee.business_id == business_id,
            BusinessTokenFee.network == network,
            BusinessTokenFee.token_symbol == token_symbol.upper(),
            BusinessTokenFee.is_active.is_(True),
        ).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
