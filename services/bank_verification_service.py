"""
Bank Verification Service
Resolves NGN bank accounts before an order is created (Lenco API)
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from utils.exception_handler import UpstreamUnavailable, ValidationError
from utils.helpers import mask_account_number, validate_account_number, validate_bank_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedAccount:
    account_number: str
    account_name: str
    bank_code: str
    bank_name: Optional[str]
    provider: str
    verified_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_number": self.account_number,
            "account_name": self.account_name,
            "bank_code": self.bank_code,
            "bank_name": self.bank_name,
            "verified": True,
            "verification_provider": self.provider,
            "verified_at": self.verified_at.isoformat(),
        }


class BankVerifier(ABC):
    """Bank account resolution provider"""

    provider_name = "unknown"

    @abstractmethod
    async def verify_account(self, account_number: str, bank_code: str) -> Optional[VerifiedAccount]:
        """None when the account does not exist; UpstreamUnavailable when the provider is down"""

    @abstractmethod
    async def list_banks(self) -> List[Dict[str, Any]]:
        """Supported banks sorted by name"""

    async def search_banks(self, query: Optional[str]) -> List[Dict[str, Any]]:
        banks = await self.list_banks()
        if not query or not query.strip():
            return banks
        needle = query.strip().lower()
        return [
            bank for bank in banks
            if needle in str(bank.get("name", "")).lower() or query.strip() in str(bank.get("code", ""))
        ]

    async def get_bank(self, bank_code: str) -> Optional[Dict[str, Any]]:
        for bank in await self.list_banks():
            if bank.get("code") == bank_code:
                return bank
        return None


class LencoBankVerifier(BankVerifier):
    """Lenco account resolution and bank directory"""

    provider_name = "lenco"

    def __init__(self, config=None):
        self.config = config or Config
        self.base_url = self.config.LENCO_BASE_URL
        self.api_key = self.config.LENCO_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=self.config.BANK_VERIFICATION_TIMEOUT_SECONDS)
        self._banks_cache: Optional[List[Dict[str, Any]]] = None
        self._banks_cached_at = 0.0
        self._banks_cache_ttl = 3600

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _make_request(self, endpoint: str, params: Optional[Dict[str, str]] = None):
        """GET against Lenco; returns (status, payload)"""
        if not self.is_available():
            logger.error("❌ LENCO: Service not available - missing LENCO_API_KEY")
            raise UpstreamUnavailable("Bank verification provider is not configured")

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=self._headers()) as session:
                async with session.get(url, params=params) as response:
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        payload = {}
                    return response.status, payload or {}
        except asyncio.TimeoutError:
            logger.error(f"❌ LENCO: Timeout after {self.timeout.total}s on {endpoint}")
            raise UpstreamUnavailable("Bank verification provider timed out")
        except aiohttp.ClientError as e:
            logger.error(f"❌ LENCO: Connection failed on {endpoint}: {e}")
            raise UpstreamUnavailable("Failed to connect to bank verification provider")

    async def verify_account(self, account_number: str, bank_code: str) -> Optional[VerifiedAccount]:
        if not validate_account_number(account_number):
            raise ValidationError("Account number must be exactly 10 digits", {"field": "account_number"})
        if not validate_bank_code(bank_code):
            raise ValidationError("Bank code must be exactly 6 digits", {"field": "bank_code"})

        status, payload = await self._make_request(
            "/resolve", {"accountNumber": account_number, "bankCode": bank_code}
        )
        masked = mask_account_number(account_number)

        if status == 400:
            logger.info(f"ℹ️ LENCO: Account {masked} not found at bank {bank_code}")
            return None
        if status == 401:
            logger.error("❌ LENCO: Authentication failed - check LENCO_API_KEY")
            raise UpstreamUnavailable("Bank verification provider rejected our credentials")
        if status >= 500:
            logger.error(f"❌ LENCO: Provider error HTTP {status}")
            raise UpstreamUnavailable("Bank account resolution is temporarily unavailable")
        if status != 200 or not payload.get("status"):
            logger.info(f"ℹ️ LENCO: Account {masked} not resolvable (HTTP {status})")
            return None

        data = payload.get("data") or {}
        account_name = data.get("accountName")
        if not account_name:
            return None
        bank = data.get("bank") or {}

        logger.info(f"✅ LENCO: Verified {masked} at {bank.get('name') or bank_code}")
        return VerifiedAccount(
            account_number=data.get("accountNumber") or account_number,
            account_name=account_name,
            bank_code=bank.get("code") or bank_code,
            bank_name=bank.get("name"),
            provider=self.provider_name,
            verified_at=datetime.now(timezone.utc),
        )

    async def list_banks(self) -> List[Dict[str, Any]]:
        if self._banks_cache is not None and time.monotonic() - self._banks_cached_at < self._banks_cache_ttl:
            return self._banks_cache

        status, payload = await self._make_request("/banks")
        if status == 401:
            raise UpstreamUnavailable("Bank verification provider rejected our credentials")
        if status != 200 or not payload.get("status"):
            raise UpstreamUnavailable(f"Bank directory unavailable (HTTP {status})")

        banks = sorted(payload.get("data") or [], key=lambda bank: str(bank.get("name", "")).lower())
        self._banks_cache = banks
        self._banks_cached_at = time.monotonic()
        return banks
