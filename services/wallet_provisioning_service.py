"""
Deposit wallet provisioning
Single-use custodial deposit addresses come from the custody service; the key
material stays there and only an opaque reference is stored on the order.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict

import aiohttp

from config import Config
from utils.exception_handler import UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionedWallet:
    address: str
    network: str
    key_reference: str
    generated_at: datetime


class WalletProvisioner(ABC):

    @abstractmethod
    async def provision(self, network: str, order_reference: str) -> ProvisionedWallet:
        """Raise UpstreamUnavailable when no wallet could be provisioned"""


class CustodyWalletProvisioner(WalletProvisioner):
    """HTTP client for the custody service wallet endpoint"""

    def __init__(self, config=None):
        self.config = config or Config
        self.base_url = self.config.WALLET_SERVICE_URL
        self.api_key = self.config.WALLET_SERVICE_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=self.config.WALLET_PROVISIONING_TIMEOUT_SECONDS)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def provision(self, network: str, order_reference: str) -> ProvisionedWallet:
        url = f"{self.base_url}/wallets"
        body = {"network": network, "reference": order_reference, "purpose": "offramp_deposit"}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=self._headers()) as session:
                async with session.post(url, json=body) as response:
                    if response.status not in (200, 201):
                        text = await response.text()
                        logger.error(f"❌ WALLET_PROVISION: HTTP {response.status} for {order_reference}: {text[:200]}")
                        raise UpstreamUnavailable(
                            f"Failed to generate {network} deposit wallet",
                            {"status": response.status},
                        )
                    payload = await response.json()
        except asyncio.TimeoutError:
            logger.error(f"❌ WALLET_PROVISION: Timeout for {order_reference} on {network}")
            raise UpstreamUnavailable(f"Deposit wallet generation timed out for {network}")
        except aiohttp.ClientError as e:
            logger.error(f"❌ WALLET_PROVISION: Connection failed for {order_reference}: {e}")
            raise UpstreamUnavailable(f"Failed to generate {network} deposit wallet")

        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        address = data.get("address")
        key_reference = data.get("keyReference") or data.get("key_reference")
        if not address or not key_reference:
            raise UpstreamUnavailable("Custody service returned an incomplete wallet")

        logger.info(f"🔐 WALLET_PROVISION: {network} deposit wallet {address} for {order_reference}")
        return ProvisionedWallet(
            address=address,
            network=network,
            key_reference=key_reference,
            generated_at=datetime.now(timezone.utc),
        )
