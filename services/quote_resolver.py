"""
Quote Resolver - token amount <-> fiat amount

Two-stage pricing: token -> reference asset through a DEX price oracle, then
reference asset -> fiat through the rate source (which carries its own
fallback chain). Holds no state between calls.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from config import Config
from services.dex_price_service import PriceOracle
from services.offramp_rate_service import RateSource
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import BelowMinimumValue, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuoteResult:
    token: str
    network: str
    contract_address: str
    mode: str  # "token_amount" or "fiat_target"
    token_amount: Decimal
    usdc_value: Decimal
    price_per_token: Decimal
    rate: Decimal  # reference asset -> fiat
    unit_price: Decimal  # one token -> fiat
    gross_fiat_amount: Decimal
    source: str
    quoted_at: datetime
    expires_in_seconds: int
    provenance: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "network": self.network,
            "mode": self.mode,
            "token_amount": str(self.token_amount),
            "usdc_value": str(self.usdc_value),
            "price_per_token_usdc": str(self.price_per_token),
            "reference_rate": str(self.rate),
            "unit_price": str(self.unit_price),
            "gross_fiat_amount": str(self.gross_fiat_amount),
            "source": self.source,
            "quoted_at": self.quoted_at.isoformat(),
            "expires_in_seconds": self.expires_in_seconds,
        }


class QuoteResolver:
    """Turns (token, network, amount | fiat target) into a fiat quote"""

    def __init__(self, price_oracle: PriceOracle, rate_source: RateSource, config=None, logger_=None):
        self.price_oracle = price_oracle
        self.rate_source = rate_source
        self.config = config or Config
        self.logger = logger_ or logger
        self.min_reference_value = self.config.MIN_REFERENCE_VALUE

    async def resolve(
        self,
        token: str,
        network: str,
        contract_address: str,
        amount: Optional[Decimal] = None,
        fiat_target_amount: Optional[Decimal] = None,
        decimals: int = 18,
    ) -> QuoteResult:
        if (amount is None) == (fiat_target_amount is None):
            raise ValidationError("Provide exactly one of amount or fiat_target_amount")

        if amount is not None:
            amount = _positive(amount, "amount")
            return await self._resolve_token_amount(token, network, contract_address, amount, decimals)

        fiat_target_amount = _positive(fiat_target_amount, "fiat_target_amount")
        return await self._resolve_fiat_target(token, network, contract_address, fiat_target_amount, decimals)

    async def _resolve_token_amount(self, token, network, contract_address, amount, decimals) -> QuoteResult:
        price = await self.price_oracle.get_reference_value(token, network, contract_address, amount, decimals)
        rate_quote = await self.rate_source.get_rate(price.usdc_value)
        self._enforce_minimum(price.usdc_value, rate_quote.rate, token)

        gross = MonetaryDecimal.quantize_ngn(rate_quote.total)
        unit_price = MonetaryDecimal.quantize_rate(price.price_per_token * rate_quote.rate)

        self.logger.info(
            f"💰 QUOTE: {amount} {token} ({network}) = {price.usdc_value} {self.config.REFERENCE_ASSET} "
            f"× ₦{rate_quote.rate} = ₦{gross} [dex={price.source} rate={rate_quote.source}]"
        )
        return QuoteResult(
            token=token.upper(),
            network=network,
            contract_address=contract_address,
            mode="token_amount",
            token_amount=amount,
            usdc_value=price.usdc_value,
            price_per_token=price.price_per_token,
            rate=rate_quote.rate,
            unit_price=unit_price,
            gross_fiat_amount=gross,
            source=rate_quote.source,
            quoted_at=datetime.now(timezone.utc),
            expires_in_seconds=self.config.QUOTE_VALIDITY_SECONDS,
            provenance=self._provenance(price, rate_quote),
        )

    async def _resolve_fiat_target(self, token, network, contract_address, fiat_target, decimals) -> QuoteResult:
        price = await self.price_oracle.get_reference_value(token, network, contract_address, Decimal("1"), decimals)
        if price.price_per_token <= 0:
            raise ValidationError(f"No usable market price for {token}")

        rate_quote = await self.rate_source.get_rate(Decimal("1"))
        required_usdc = fiat_target / rate_quote.rate
        self._enforce_minimum(required_usdc, rate_quote.rate, token)

        token_amount = MonetaryDecimal.quantize_token(required_usdc / price.price_per_token)
        if token_amount <= 0:
            raise BelowMinimumValue(f"Target amount ₦{fiat_target} is too small to price in {token}")

        unit_price = MonetaryDecimal.quantize_rate(price.price_per_token * rate_quote.rate)
        gross = MonetaryDecimal.quantize_ngn(fiat_target)

        self.logger.info(
            f"💰 QUOTE_INVERSE: ₦{gross} requires {required_usdc} {self.config.REFERENCE_ASSET} "
            f"= {token_amount} {token} ({network}) [rate={rate_quote.source}]"
        )
        provenance = self._provenance(price, rate_quote)
        provenance["required_usdc"] = str(required_usdc)
        return QuoteResult(
            token=token.upper(),
            network=network,
            contract_address=contract_address,
            mode="fiat_target",
            token_amount=token_amount,
            usdc_value=required_usdc,
            price_per_token=price.price_per_token,
            rate=rate_quote.rate,
            unit_price=unit_price,
            gross_fiat_amount=gross,
            source=rate_quote.source,
            quoted_at=datetime.now(timezone.utc),
            expires_in_seconds=self.config.QUOTE_VALIDITY_SECONDS,
            provenance=provenance,
        )

    def _enforce_minimum(self, usdc_value: Decimal, rate: Decimal, token: str):
        if usdc_value >= self.min_reference_value:
            return
        minimum_fiat = MonetaryDecimal.ceil_whole(rate * self.min_reference_value)
        self.logger.warning(
            f"⚠️ QUOTE_BELOW_MINIMUM: {token} value {usdc_value} {self.config.REFERENCE_ASSET} "
            f"< {self.min_reference_value} (₦{minimum_fiat})"
        )
        raise BelowMinimumValue(
            f"Transaction value ({usdc_value:.6f} {self.config.REFERENCE_ASSET}) is below minimum "
            f"({self.min_reference_value} {self.config.REFERENCE_ASSET} = ₦{minimum_fiat})",
            {
                "usdc_value": str(usdc_value),
                "minimum_usdc": str(self.min_reference_value),
                "minimum_fiat_amount": str(minimum_fiat),
            },
        )

    @staticmethod
    def _provenance(price, rate_quote) -> Dict[str, Any]:
        provenance = {
            "dex_source": price.source,
            "dex_route": price.route,
            "usdc_value": str(price.usdc_value),
            "price_per_token_usdc": str(price.price_per_token),
            "reference_rate": str(rate_quote.rate),
        }
        provenance.update(rate_quote.provenance())
        return provenance


def _positive(value, name: str) -> Decimal:
    try:
        decimal_value = MonetaryDecimal.to_decimal(value, name)
    except ValueError as e:
        raise ValidationError(str(e), {"field": name})
    if decimal_value <= 0:
        raise ValidationError(f"{name} must be greater than zero", {"field": name})
    return decimal_value
