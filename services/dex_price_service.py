"""
DEX price lookups: token -> reference asset (USDC)

Solana tokens are priced with the Jupiter price API, base/ethereum tokens with
an EVM swap aggregator's indicative price endpoint. The reference asset itself
is priced 1:1 without a network call.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.exception_handler import UpstreamUnavailable

logger = logging.getLogger(__name__)

EVM_CHAIN_IDS = {"base": 8453, "ethereum": 1}


@dataclass(frozen=True)
class ReferencePrice:
    """Value of a token amount in the reference asset"""
    usdc_value: Decimal
    price_per_token: Decimal
    source: str
    route: Dict[str, Any] = field(default_factory=dict)


class PriceOracle(ABC):
    """Converts a token amount into the stable reference asset"""

    @abstractmethod
    async def get_reference_value(
        self,
        token: str,
        network: str,
        contract_address: str,
        amount: Decimal,
        decimals: int = 18,
    ) -> ReferencePrice:
        """Raise UpstreamUnavailable when no price can be obtained"""


class JupiterPriceOracle(PriceOracle):
    """Jupiter price API (Solana)"""

    def __init__(self, config=None):
        self.config = config or Config
        self.base_url = self.config.JUPITER_PRICE_API_URL
        self.timeout = aiohttp.ClientTimeout(total=self.config.DEX_PRICE_TIMEOUT_SECONDS)

    async def get_reference_value(self, token, network, contract_address, amount, decimals=18):
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(self.base_url, params={"ids": contract_address}) as response:
                    if response.status != 200:
                        text = await response.text()
                        logger.warning(f"⚠️ JUPITER_PRICE: HTTP {response.status} for {token}: {text[:200]}")
                        raise UpstreamUnavailable(
                            f"Jupiter price lookup failed for {token}",
                            {"status": response.status},
                        )
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ JUPITER_PRICE: Request failed for {token}: {e}")
            raise UpstreamUnavailable(f"Jupiter price lookup failed for {token}")

        entry = (data or {}).get(contract_address) or {}
        usd_price = entry.get("usdPrice") or entry.get("price")
        if not usd_price:
            raise UpstreamUnavailable(f"No Jupiter price for {token}", {"contract_address": contract_address})

        price_per_token = Decimal(str(usd_price))
        return ReferencePrice(
            usdc_value=amount * price_per_token,
            price_per_token=price_per_token,
            source="jupiter",
            route={"provider": "jupiter", "input_mint": contract_address},
        )


class EvmAggregatorPriceOracle(PriceOracle):
    """Indicative sell price from an EVM swap aggregator (base, ethereum)"""

    def __init__(self, config=None):
        self.config = config or Config
        self.base_url = self.config.EVM_PRICE_API_URL
        self.api_key = self.config.EVM_PRICE_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=self.config.DEX_PRICE_TIMEOUT_SECONDS)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "0x-version": "v2"}
        if self.api_key:
            headers["0x-api-key"] = self.api_key
        return headers

    async def get_reference_value(self, token, network, contract_address, amount, decimals=18):
        chain_id = EVM_CHAIN_IDS.get(network)
        if chain_id is None:
            raise UpstreamUnavailable(f"No aggregator configured for network {network}")

        usdc_address = self.config.USDC_CONTRACTS[network]
        usdc_decimals = self.config.USDC_DECIMALS[network]
        sell_amount = int(amount * (Decimal(10) ** decimals))
        if sell_amount <= 0:
            raise UpstreamUnavailable(f"Amount too small to price {token}")

        params = {
            "chainId": chain_id,
            "sellToken": contract_address,
            "buyToken": usdc_address,
            "sellAmount": str(sell_amount),
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=self._headers()) as session:
                async with session.get(self.base_url, params=params) as response:
                    if response.status != 200:
                        text = await response.text()
                        logger.warning(f"⚠️ DEX_PRICE: HTTP {response.status} for {token} on {network}: {text[:200]}")
                        raise UpstreamUnavailable(
                            f"DEX price lookup failed for {token}",
                            {"status": response.status, "network": network},
                        )
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ DEX_PRICE: Request failed for {token} on {network}: {e}")
            raise UpstreamUnavailable(f"DEX price lookup failed for {token}")

        buy_amount = data.get("buyAmount")
        if not buy_amount or data.get("liquidityAvailable") is False:
            raise UpstreamUnavailable(f"No liquidity to price {token} on {network}")

        usdc_value = Decimal(str(buy_amount)) / (Decimal(10) ** usdc_decimals)
        route = data.get("route") or {}
        return ReferencePrice(
            usdc_value=usdc_value,
            price_per_token=usdc_value / amount,
            source="dex_aggregator",
            route={"provider": "0x", "chain_id": chain_id, "fills": route.get("fills", [])},
        )


class DexPriceService(PriceOracle):
    """Routes each lookup to the right oracle for its network"""

    def __init__(self, config=None, solana_oracle: Optional[PriceOracle] = None,
                 evm_oracle: Optional[PriceOracle] = None):
        self.config = config or Config
        self.solana_oracle = solana_oracle or JupiterPriceOracle(self.config)
        self.evm_oracle = evm_oracle or EvmAggregatorPriceOracle(self.config)

    def is_reference_asset(self, token: str, network: str, contract_address: str) -> bool:
        if token.upper() != self.config.REFERENCE_ASSET:
            return False
        known = self.config.USDC_CONTRACTS.get(network, "")
        return not contract_address or contract_address.lower() == known.lower()

    async def get_reference_value(self, token, network, contract_address, amount, decimals=18):
        if self.is_reference_asset(token, network, contract_address):
            return ReferencePrice(
                usdc_value=amount,
                price_per_token=Decimal("1"),
                source="direct",
                route={"provider": "direct"},
            )

        oracle = self.solana_oracle if network == "solana" else self.evm_oracle
        price = await oracle.get_reference_value(token, network, contract_address, amount, decimals)
        logger.info(
            f"💱 DEX_PRICE: {amount} {token} on {network} = {price.usdc_value} "
            f"{self.config.REFERENCE_ASSET} ({price.source})"
        )
        return price
