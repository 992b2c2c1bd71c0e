"""
Fee calculation tests
Whole-unit half-up rounding and the net + fee == gross identity
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from utils.exception_handler import ValidationError
from utils.fee_calculator import FeeCalculator


class TestCalculateFees:
    """Fee and net amounts from a gross fiat amount"""

    def test_one_percent_of_round_amount(self):
        """1% of ₦150,000 is ₦1,500"""
        breakdown = FeeCalculator.calculate_fees(Decimal("150000"), Decimal("1"))
        assert breakdown.fee_amount == Decimal("1500")
        assert breakdown.net_amount == Decimal("148500")

    def test_fee_rounds_half_up_to_whole_units(self):
        """2.5% of ₦1,001 = 25.025 -> 25; 1.5% of ₦1,001 = 15.015 -> 15; 0.5% of ₦1,001 = 5.005 -> 5"""
        assert FeeCalculator.calculate_fees(Decimal("1001"), Decimal("2.5")).fee_amount == Decimal("25")
        assert FeeCalculator.calculate_fees(Decimal("1001"), Decimal("1.5")).fee_amount == Decimal("15")
        assert FeeCalculator.calculate_fees(Decimal("1001"), Decimal("0.5")).fee_amount == Decimal("5")

    def test_exact_half_rounds_up(self):
        """0.5% of ₦100 = 0.5 -> 1"""
        assert FeeCalculator.calculate_fees(Decimal("100"), Decimal("0.5")).fee_amount == Decimal("1")

    def test_zero_fee(self):
        """0% leaves the gross untouched"""
        breakdown = FeeCalculator.calculate_fees(Decimal("98765.43"), Decimal("0"))
        assert breakdown.fee_amount == 0
        assert breakdown.net_amount == Decimal("98765.43")

    @pytest.mark.parametrize("gross", ["0", "0.01", "1", "999.99", "150000", "123456789.87"])
    @pytest.mark.parametrize("percentage", ["0", "0.25", "1", "2.5", "7.75", "10"])
    def test_net_plus_fee_equals_gross(self, gross, percentage):
        """net + fee reconstructs gross exactly for every fee in 0..10%"""
        breakdown = FeeCalculator.calculate_fees(Decimal(gross), Decimal(percentage))
        assert breakdown.net_amount + breakdown.fee_amount == Decimal(gross)
        assert breakdown.fee_amount == breakdown.fee_amount.to_integral_value()

    def test_negative_gross_rejected(self):
        """Negative gross is a validation error"""
        with pytest.raises(ValidationError):
            FeeCalculator.calculate_fees(Decimal("-1"), Decimal("1"))

    @pytest.mark.parametrize("percentage", ["-0.01", "100.01"])
    def test_percentage_out_of_range_rejected(self, percentage):
        """Fee percentage must stay within 0..100"""
        with pytest.raises(ValidationError):
            FeeCalculator.calculate_fees(Decimal("1000"), Decimal(percentage))

    def test_breakdown_serialises_as_strings(self):
        """to_dict keeps monetary values as strings"""
        data = FeeCalculator.calculate_fees(Decimal("1000"), Decimal("1")).to_dict()
        assert data == {"gross_amount": "1000", "fee_percentage": "1", "fee_amount": "10", "net_amount": "990"}


class TestResolveFeePercentage:
    """Fee lookup by token contract address"""

    def test_mapping_lookup_is_case_insensitive(self):
        """Contract addresses match regardless of checksum casing"""
        table = {"0xABCDEF0000000000000000000000000000000001": Decimal("2")}
        pct = FeeCalculator.resolve_fee_percentage(table, "0xabcdef0000000000000000000000000000000001")
        assert pct == Decimal("2")

    def test_missing_entry_defaults_to_zero(self):
        """Unknown contract costs nothing"""
        assert FeeCalculator.resolve_fee_percentage({"0x1": Decimal("2")}, "0x2") == Decimal("0")
        assert FeeCalculator.resolve_fee_percentage(None, "0x2") == Decimal("0")

    def test_inactive_rows_ignored(self):
        """Inactive fee rows do not apply"""
        rows = [
            SimpleNamespace(contract_address="0xAAA", fee_percentage=Decimal("5"), is_active=False),
            SimpleNamespace(contract_address="0xaaa", fee_percentage=Decimal("1.5"), is_active=True),
        ]
        assert FeeCalculator.resolve_fee_percentage(rows, "0xAaA") == Decimal("1.5")

    def test_only_inactive_row_defaults_to_zero(self):
        """A contract whose only row is inactive is free"""
        rows = [SimpleNamespace(contract_address="0xbbb", fee_percentage=Decimal("5"), is_active=False)]
        assert FeeCalculator.resolve_fee_percentage(rows, "0xBBB") == Decimal("0")
