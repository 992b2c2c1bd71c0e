"""Fee calculation for off-ramp orders"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Union

from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeBreakdown:
    gross_amount: Decimal
    fee_percentage: Decimal
    fee_amount: Decimal
    net_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "gross_amount": str(self.gross_amount),
            "fee_percentage": str(self.fee_percentage),
            "fee_amount": str(self.fee_amount),
            "net_amount": str(self.net_amount),
        }


FeeTable = Union[Mapping[str, Any], Iterable[Any]]


class FeeCalculator:
    """Handles all fee-related calculations with mathematical precision"""

    MAX_FEE_PERCENTAGE = Decimal("100")

    @classmethod
    def resolve_fee_percentage(cls, fee_table: Optional[FeeTable], contract_address: str) -> Decimal:
        """
        Find the active fee percentage for a token contract.

        The fee table is either a mapping of contract address -> percentage
        (already filtered to active entries) or an iterable of fee rows with
        contract_address, fee_percentage and is_active attributes. Matching is
        case-insensitive; anything absent or inactive costs 0.
        """
        if not fee_table or not contract_address:
            return Decimal("0")

        wanted = contract_address.lower()
        if isinstance(fee_table, Mapping):
            for address, percentage in fee_table.items():
                if address.lower() == wanted and percentage is not None:
                    return MonetaryDecimal.to_decimal(percentage, "fee_percentage")
            return Decimal("0")

        for row in fee_table:
            if (row.contract_address or "").lower() != wanted:
                continue
            if not getattr(row, "is_active", True):
                continue
            return MonetaryDecimal.to_decimal(row.fee_percentage, "fee_percentage")
        return Decimal("0")

    @classmethod
    def calculate_fees(cls, gross_amount: Decimal, fee_percentage: Decimal) -> FeeBreakdown:
        """fee = round_half_up(gross * pct / 100) in whole units; net = gross - fee"""
        try:
            gross = MonetaryDecimal.to_decimal(gross_amount, "gross_amount")
            percentage = MonetaryDecimal.to_decimal(fee_percentage, "fee_percentage")
        except ValueError as e:
            raise ValidationError(str(e))

        if gross < 0:
            raise ValidationError("Gross amount cannot be negative", {"gross_amount": str(gross)})
        if percentage < 0 or percentage > cls.MAX_FEE_PERCENTAGE:
            raise ValidationError(
                "Fee percentage must be between 0 and 100",
                {"fee_percentage": str(percentage)},
            )

        fee = MonetaryDecimal.round_whole(gross * percentage / Decimal("100"))
        net = gross - fee
        return FeeBreakdown(
            gross_amount=gross,
            fee_percentage=percentage,
            fee_amount=fee,
            net_amount=net,
        )
