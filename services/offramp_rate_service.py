"""
Reference asset -> NGN rate lookup for off-ramp quotes

Primary source is the internal offramp-price endpoint. When it fails the
configured static rate is used, then the hard emergency rate; every result is
tagged with the path that produced it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

SOURCE_INTERNAL_API = "internal_offramp_api"
SOURCE_FALLBACK_RATE = "fallback_rate"
SOURCE_EMERGENCY = "emergency_fallback"

# Outside this band the USDC/NGN rate is logged as suspicious
USDC_NGN_SANITY_RANGE = (Decimal("800"), Decimal("3000"))


class OfframpRateAPIError(Exception):
    """Internal rate endpoint returned an error or an unusable payload"""
    pass


@dataclass(frozen=True)
class RateQuote:
    rate: Decimal
    total: Decimal
    amount: Decimal
    source: str
    fetched_at: datetime
    provider_id: Optional[str] = None
    upstream_source: Optional[str] = None
    corrected: bool = False
    original_api_amount: Optional[Decimal] = None
    fallback_reason: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return self.source != SOURCE_INTERNAL_API

    def provenance(self) -> Dict[str, Any]:
        return {
            "rate_source": self.source,
            "upstream_source": self.upstream_source,
            "provider_id": self.provider_id,
            "corrected": self.corrected,
            "original_api_amount": str(self.original_api_amount) if self.original_api_amount is not None else None,
            "fallback_reason": self.fallback_reason,
            "rate_fetched_at": self.fetched_at.isoformat(),
        }


class RateSource(ABC):
    """Converts a reference-asset amount into fiat"""

    @abstractmethod
    async def get_rate(self, amount: Decimal) -> RateQuote:
        """Never raises for upstream failure; falls back instead"""


class OfframpRateService(RateSource):
    """Internal offramp-price endpoint with static and emergency fallbacks"""

    def __init__(self, config=None):
        self.config = config or Config
        self.base_url = self.config.INTERNAL_API_BASE_URL
        self.timeout = aiohttp.ClientTimeout(total=self.config.INTERNAL_RATE_TIMEOUT_SECONDS)
        self.tolerance_percent = self.config.QUOTE_CONSISTENCY_TOLERANCE_PERCENT

    async def _fetch_internal_rate(self, amount: Decimal) -> Dict[str, Any]:
        url = f"{self.base_url}/api/v1/offramp-price"
        params = {"token": self.config.REFERENCE_ASSET, "amount": str(amount)}
        headers = {"Content-Type": "application/json", "User-Agent": self.config.WEBHOOK_USER_AGENT}

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, params=params, headers=headers) as response:
                    if response.status != 200:
                        raise OfframpRateAPIError(f"HTTP {response.status}")
                    payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OfframpRateAPIError(f"{type(e).__name__}: {e}")

        if not payload or not payload.get("success") or not payload.get("data"):
            raise OfframpRateAPIError("Invalid response from offramp API")
        return payload["data"]

    async def get_rate(self, amount: Decimal) -> RateQuote:
        try:
            data = await self._fetch_internal_rate(amount)
            return self._build_internal_quote(amount, data)
        except OfframpRateAPIError as e:
            logger.warning(f"⚠️ OFFRAMP_RATE: Internal rate endpoint failed: {e}")
            return self._fallback_quote(amount, str(e))

    def _build_internal_quote(self, amount: Decimal, data: Dict[str, Any]) -> RateQuote:
        try:
            rate = MonetaryDecimal.to_decimal(data.get("exchangeRate"), "exchangeRate")
            reported_total = data.get("totalNgnAmount")
            reported_total = (
                MonetaryDecimal.to_decimal(reported_total, "totalNgnAmount") if reported_total is not None else None
            )
        except (ValueError, InvalidOperation) as e:
            raise OfframpRateAPIError(f"Unparseable rate payload: {e}")
        if rate <= 0:
            raise OfframpRateAPIError(f"Non-positive rate {rate}")

        low, high = USDC_NGN_SANITY_RANGE
        if self.config.REFERENCE_ASSET == "USDC" and not (low <= rate <= high):
            logger.warning(f"⚠️ OFFRAMP_RATE: USDC rate looks unusual: ₦{rate} (normal ₦{low}-₦{high})")

        expected_total = amount * rate
        total = reported_total if reported_total is not None else expected_total
        corrected = False
        original_amount = None
        if reported_total is not None and not MonetaryDecimal.within_tolerance(
            reported_total, expected_total, self.tolerance_percent
        ):
            logger.warning(
                f"⚠️ OFFRAMP_RATE: CALCULATION_MISMATCH api_total=₦{reported_total} "
                f"expected=₦{expected_total} ({amount} × ₦{rate}) - using rate-derived total"
            )
            total = expected_total
            corrected = True
            original_amount = reported_total

        logger.info(f"✅ OFFRAMP_RATE: 1 {self.config.REFERENCE_ASSET} = ₦{rate} (source={data.get('source')})")
        return RateQuote(
            rate=rate,
            total=total,
            amount=amount,
            source=SOURCE_INTERNAL_API,
            fetched_at=_parse_timestamp(data.get("timestamp")),
            provider_id=data.get("providerId"),
            upstream_source=data.get("source"),
            corrected=corrected,
            original_api_amount=original_amount,
            extra={"rate_display": data.get("rateDisplay")},
        )

    def _fallback_quote(self, amount: Decimal, reason: str) -> RateQuote:
        static_rate = self.config.CURRENT_USDC_NGN_OFFRAMP_RATE
        if static_rate is not None and static_rate > 0:
            source, rate = SOURCE_FALLBACK_RATE, static_rate
        else:
            source, rate = SOURCE_EMERGENCY, self.config.EMERGENCY_USDC_NGN_RATE
            logger.error(f"🚨 OFFRAMP_RATE: No static rate configured, using emergency rate ₦{rate}")

        logger.warning(f"⚠️ OFFRAMP_RATE: Using {source} ₦{rate} for {amount} {self.config.REFERENCE_ASSET}")
        return RateQuote(
            rate=rate,
            total=amount * rate,
            amount=amount,
            source=source,
            fetched_at=datetime.now(timezone.utc),
            fallback_reason=reason,
        )


def _parse_timestamp(value: Optional[str]) -> datetime:
    if value:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            logger.debug(f"OFFRAMP_RATE: unparseable timestamp {value!r}, using now")
    return datetime.now(timezone.utc)
