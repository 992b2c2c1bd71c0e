"""
Settlement executors
Token swap (deposit -> USDC) and NGN bank payout are run by external services;
this module is the narrow client boundary to both.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from models import OfframpOrder
from utils.exception_handler import UpstreamUnavailable

logger = logging.getLogger(__name__)


class SettlementError(Exception):
    """A settlement service accepted the call but refused or failed the operation"""
    pass


@dataclass(frozen=True)
class SwapResult:
    transaction_hash: str
    output_amount: Decimal  # reference asset received
    route: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PayoutResult:
    reference: str
    provider_reference: Optional[str]
    status: str
    amount: Decimal


class SwapExecutor(ABC):

    @abstractmethod
    async def execute_swap(self, order: OfframpOrder) -> SwapResult:
        """Swap the received deposit into the reference asset"""


class PayoutExecutor(ABC):

    @abstractmethod
    async def initiate_payout(self, order: OfframpOrder, amount: Decimal, reference: str) -> PayoutResult:
        """Start the NGN transfer; completion arrives later via the payout webhook"""


class _SettlementClient:
    """Shared request plumbing for the settlement services"""

    service_name = "settlement"

    def __init__(self, base_url: str, api_key: Optional[str], timeout_seconds: int):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=self._headers()) as session:
                async with session.post(url, json=body) as response:
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        payload = {}
                    payload = payload or {}
                    if response.status >= 500:
                        raise UpstreamUnavailable(
                            f"{self.service_name} service error (HTTP {response.status})",
                            {"status": response.status},
                        )
                    if response.status not in (200, 201, 202) or payload.get("success") is False:
                        message = payload.get("message") or payload.get("error") or f"HTTP {response.status}"
                        raise SettlementError(str(message))
                    return payload.get("data", payload)
        except asyncio.TimeoutError:
            logger.error(f"❌ {self.service_name.upper()}: Timeout after {self.timeout.total}s on {endpoint}")
            raise UpstreamUnavailable(f"{self.service_name} service timed out")
        except aiohttp.ClientError as e:
            logger.error(f"❌ {self.service_name.upper()}: Connection failed on {endpoint}: {e}")
            raise UpstreamUnavailable(f"{self.service_name} service unreachable")


class HttpSwapExecutor(_SettlementClient, SwapExecutor):

    service_name = "swap"

    def __init__(self, config=None):
        config = config or Config
        super().__init__(config.SWAP_SERVICE_URL, config.SWAP_SERVICE_API_KEY, config.SETTLEMENT_TIMEOUT_SECONDS)

    async def execute_swap(self, order: OfframpOrder) -> SwapResult:
        amount = order.received_amount if order.received_amount is not None else order.token_amount
        data = await self._post("/swaps", {
            "orderId": order.order_id,
            "network": order.target_network,
            "walletAddress": order.deposit_wallet_address,
            "keyReference": order.deposit_key_reference,
            "tokenAddress": order.token_contract_address,
            "tokenSymbol": order.target_token,
            "amount": str(amount),
        })
        return SwapResult(
            transaction_hash=data.get("transactionHash", ""),
            output_amount=Decimal(str(data.get("usdcAmount", "0"))),
            route=data.get("route") or {},
        )


class HttpPayoutExecutor(_SettlementClient, PayoutExecutor):

    service_name = "payout"

    def __init__(self, config=None):
        config = config or Config
        super().__init__(config.PAYOUT_SERVICE_URL, config.PAYOUT_API_KEY, config.SETTLEMENT_TIMEOUT_SECONDS)

    async def initiate_payout(self, order: OfframpOrder, amount: Decimal, reference: str) -> PayoutResult:
        data = await self._post("/payouts", {
            "accountNumber": order.recipient_account_number,
            "accountName": order.recipient_account_name,
            "bankCode": order.recipient_bank_code,
            "amount": str(amount),
            "currency": order.fiat_currency,
            "reference": reference,
            "narration": f"Crypto offramp payment for {order.target_token}",
        })
        return PayoutResult(
            reference=data.get("reference", reference),
            provider_reference=data.get("transactionId"),
            status=data.get("status", "pending"),
            amount=amount,
        )
