"""
Pricing provider tests
Internal offramp-rate endpoint with fallbacks, DEX price oracles and routing.
External HTTP is mocked at the aiohttp.ClientSession level.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from services.dex_price_service import DexPriceService, EvmAggregatorPriceOracle, JupiterPriceOracle
from services.offramp_rate_service import (
    SOURCE_EMERGENCY,
    SOURCE_FALLBACK_RATE,
    SOURCE_INTERNAL_API,
    OfframpRateService,
)
from tests.conftest import BASE_TOKEN_CONTRACT, BASE_USDC, FakePriceOracle, TestConfig
from utils.exception_handler import UpstreamUnavailable


def _response(status=200, payload=None, text=""):
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=payload)
    mock_response.text = AsyncMock(return_value=text)
    return mock_response


class NoStaticRateConfig(TestConfig):
    CURRENT_USDC_NGN_OFFRAMP_RATE = None


class TestOfframpRateService:
    """Internal rate endpoint and its fallback chain"""

    @pytest.mark.asyncio
    async def test_internal_rate_used_when_consistent(self):
        """A consistent total is passed through untouched"""
        payload = {
            "success": True,
            "data": {
                "exchangeRate": "1500",
                "totalNgnAmount": "150000",
                "providerId": "prov-1",
                "source": "liquidity_pool",
                "timestamp": "2026-10-18T10:00:00Z",
            },
        }
        service = OfframpRateService(TestConfig)
        with patch('aiohttp.ClientSession.get') as mock_get:
            mock_get.return_value.__aenter__.return_value = _response(200, payload)
            quote = await service.get_rate(Decimal("100"))

        assert quote.source == SOURCE_INTERNAL_API
        assert quote.rate == Decimal("1500")
        assert quote.total == Decimal("150000")
        assert quote.corrected is False
        assert quote.provider_id == "prov-1"
        assert quote.upstream_source == "liquidity_pool"
        assert quote.fetched_at.year == 2026

        _, kwargs = mock_get.call_args
        assert kwargs["params"] == {"token": "USDC", "amount": "100"}

    @pytest.mark.asyncio
    async def test_inconsistent_total_is_corrected(self):
        """A total more than 1% away from amount × rate is replaced and the raw figure kept"""
        payload = {"success": True, "data": {"exchangeRate": "1500", "totalNgnAmount": "160000"}}
        service = OfframpRateService(TestConfig)
        with patch('aiohttp.ClientSession.get') as mock_get:
            mock_get.return_value.__aenter__.return_value = _response(200, payload)
            quote = await service.get_rate(Decimal("100"))

        assert quote.corrected is True
        assert quote.total == Decimal("150000")
        assert quote.original_api_amount == Decimal("160000")
        assert quote.provenance()["original_api_amount"] == "160000"

    @pytest.mark.asyncio
    async def test_total_within_tolerance_kept(self):
        """0.5% drift is within tolerance"""
        payload = {"success": True, "data": {"exchangeRate": "1500", "totalNgnAmount": "150750"}}
        service = OfframpRateService(TestConfig)
        with patch('aiohttp.ClientSession.get') as mock_get:
            mock_get.return_value.__aenter__.return_value = _response(200, payload)
            quote = await service.get_rate(Decimal("100"))

        assert quote.corrected is False
        assert quote.total == Decimal("150750")

    @pytest.mark.asyncio
    async def test_http_error_falls_back_to_static_rate(self):
        """Non-200 uses CURRENT_USDC_NGN_OFFRAMP_RATE"""
        service = OfframpRateService(TestConfig)
        with patch('aiohttp.ClientSession.get') as mock_get:
            mock_get.return_value.__aenter__.return_value = _response(500, {})
            quote = await service.get_rate(Decimal("10"))

        assert quote.source == SOURCE_FALLBACK_RATE
        assert quote.rate == Decimal("1550")
        assert quote.total == Decimal("15500")
        assert quote.is_fallback
        assert "HTTP 500" in quote.fallback_reason

    @pytest.mark.asyncio
    async def test_unsuccessful_payload_falls_back(self):
        """success=false is treated as a failure"""
        service = OfframpRateService(TestConfig)
        with patch('aiohttp.ClientSession.get') as mock_get:
            mock_get.return_value.__aenter__.return_value = _response(200, {"success": False, "data": None})
            quote = await service.get_rate(Decimal("10"))
        assert quote.source == SOURCE_FALLBACK_RATE

    @pytest.mark.asyncio
    async def test_connection_error_without_static_rate_uses_emergency(self):
        """No static rate configured -> emergency ₦1650"""
        service = OfframpRateService(NoStaticRateConfig)
        with patch('aiohttp.ClientSession.get', side_effect=aiohttp.ClientConnectionError("refused")):
            quote = await service.get_rate(Decimal("2"))

        assert quote.source == SOURCE_EMERGENCY
        assert quote.rate == Decimal("1650")
        assert quote.total == Decimal("3300")


class TestDexPriceOracles:
    """Jupiter (Solana) and EVM aggregator adapters"""

    @pytest.mark.asyncio
    async def test_jupiter_price(self):
        """usdPrice × amount"""
        mint = "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN"
        oracle = JupiterPriceOracle(TestConfig)
        with patch('aiohttp.ClientSession.get') as mock_get:
            mock_get.return_value.__aenter__.return_value = _response(200, {mint: {"usdPrice": 0.5}})
            price = await oracle.get_reference_value("JUP", "solana", mint, Decimal("10"))

        assert price.price_per_token == Decimal("0.5")
        assert price.usdc_value == Decimal("5.0")
        assert price.source == "jupiter"

    @pytest.mark.asyncio
    async def test_jupiter_missing_price_is_unavailable(self):
        """No entry for the mint means no price"""
        oracle = JupiterPriceOracle(TestConfig)
        with patch('aiohttp.ClientSession.get') as mock_get:
            mock_get.return_value.__aenter__.return_value = _response(200, {})
            with pytest.raises(UpstreamUnavailable):
                await oracle.get_reference_value("JUP", "solana", "mint", Decimal("10"))

    @pytest.mark.asyncio
    async def test_evm_aggregator_sell_amount_in_base_units(self):
        """2 tokens with 18 decimals are sold as 2e18; 6-decimal buyAmount is scaled back"""
        oracle = EvmAggregatorPriceOracle(TestConfig)
        with patch('aiohttp.ClientSession.get') as mock_get:
            mock_get.return_value.__aenter__.return_value = _response(200, {"buyAmount": "3000000", "route": {}})
            price = await oracle.get_reference_value("ZORA", "base", BASE_TOKEN_CONTRACT, Decimal("2"), 18)

        _, kwargs = mock_get.call_args
        assert kwargs["params"]["sellAmount"] == "2000000000000000000"
        assert kwargs["params"]["chainId"] == 8453
        assert kwargs["params"]["buyToken"] == BASE_USDC
        assert price.usdc_value == Decimal("3")
        assert price.price_per_token == Decimal("1.5")

    @pytest.mark.asyncio
    async def test_evm_aggregator_no_liquidity(self):
        """liquidityAvailable=false is an upstream failure"""
        oracle = EvmAggregatorPriceOracle(TestConfig)
        with patch('aiohttp.ClientSession.get') as mock_get:
            mock_get.return_value.__aenter__.return_value = _response(200, {"liquidityAvailable": False})
            with pytest.raises(UpstreamUnavailable):
                await oracle.get_reference_value("ZORA", "base", BASE_TOKEN_CONTRACT, Decimal("2"))

    @pytest.mark.asyncio
    async def test_evm_aggregator_timeout(self):
        """Timeouts become UpstreamUnavailable"""
        oracle = EvmAggregatorPriceOracle(TestConfig)
        with patch('aiohttp.ClientSession.get', side_effect=aiohttp.ServerTimeoutError("slow")):
            with pytest.raises(UpstreamUnavailable):
                await oracle.get_reference_value("ZORA", "base", BASE_TOKEN_CONTRACT, Decimal("2"))


class TestDexPriceRouting:
    """Network routing and the reference-asset shortcut"""

    @pytest.mark.asyncio
    async def test_reference_asset_needs_no_network_call(self):
        """USDC at its canonical contract is priced 1:1"""
        solana, evm = FakePriceOracle(), FakePriceOracle()
        service = DexPriceService(TestConfig, solana_oracle=solana, evm_oracle=evm)
        price = await service.get_reference_value("USDC", "base", BASE_USDC.lower(), Decimal("42"))
        assert price.usdc_value == Decimal("42")
        assert price.source == "direct"
        assert solana.calls == [] and evm.calls == []

    @pytest.mark.asyncio
    async def test_routes_by_network(self):
        """Solana goes to the Solana oracle, base/ethereum to the EVM oracle"""
        solana, evm = FakePriceOracle(), FakePriceOracle()
        service = DexPriceService(TestConfig, solana_oracle=solana, evm_oracle=evm)
        await service.get_reference_value("JUP", "solana", "mint", Decimal("1"))
        await service.get_reference_value("ZORA", "ethereum", "0xabc", Decimal("1"))
        assert [call[1] for call in solana.calls] == ["solana"]
        assert [call[1] for call in evm.calls] == ["ethereum"]

    @pytest.mark.asyncio
    async def test_usdc_symbol_at_unknown_contract_is_priced_by_dex(self):
        """A token calling itself USDC at another contract is not trusted as 1:1"""
        evm = FakePriceOracle()
        service = DexPriceService(TestConfig, solana_oracle=FakePriceOracle(), evm_oracle=evm)
        await service.get_reference_value("USDC", "base", "0xfake", Decimal("1"))
        assert len(evm.calls) == 1
