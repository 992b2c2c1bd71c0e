"""Configuration management for the Off-ramp Order Service"""

import os
import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional

logger = logging.getLogger(__name__)


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_decimal(name: str, default: Optional[str]) -> Optional[Decimal]:
    value = os.getenv(name, default)
    if value is None or str(value).strip() == "":
        return None
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        logger.warning(f"⚠️ CONFIG: {name}={value!r} is not a valid decimal, using {default}")
        return Decimal(default) if default is not None else None


def _get_list(name: str, default: str) -> List[str]:
    return [item.strip().lower() for item in os.getenv(name, default).split(",") if item.strip()]


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT in ("production", "prod")
    SERVICE_NAME = os.getenv("SERVICE_NAME", "offramp-service")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./offramp.db")
    DATABASE_ECHO = _get_bool("DATABASE_ECHO", False)

    # Internal rate endpoint (reference asset -> fiat)
    INTERNAL_API_BASE_URL = os.getenv("INTERNAL_API_BASE_URL", "http://localhost:8000").rstrip("/")
    INTERNAL_RATE_TIMEOUT_SECONDS = int(os.getenv("INTERNAL_RATE_TIMEOUT_SECONDS", "10"))
    REFERENCE_ASSET = os.getenv("REFERENCE_ASSET", "USDC").upper()
    FIAT_CURRENCY = os.getenv("FIAT_CURRENCY", "NGN").upper()

    # Rate fallbacks: configured static rate, then the hard emergency rate
    CURRENT_USDC_NGN_OFFRAMP_RATE = _get_decimal("CURRENT_USDC_NGN_OFFRAMP_RATE", None)
    EMERGENCY_USDC_NGN_RATE = _get_decimal("EMERGENCY_USDC_NGN_RATE", "1650")

    # DEX price lookups (token -> reference asset)
    JUPITER_PRICE_API_URL = os.getenv("JUPITER_PRICE_API_URL", "https://lite-api.jup.ag/price/v3")
    EVM_PRICE_API_URL = os.getenv("EVM_PRICE_API_URL", "https://api.0x.org/swap/permit2/price")
    EVM_PRICE_API_KEY = os.getenv("EVM_PRICE_API_KEY")
    DEX_PRICE_TIMEOUT_SECONDS = int(os.getenv("DEX_PRICE_TIMEOUT_SECONDS", "10"))

    # USDC contract per network, used when the reference asset itself is deposited
    USDC_CONTRACTS = {
        "base": os.getenv("USDC_CONTRACT_BASE", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"),
        "ethereum": os.getenv("USDC_CONTRACT_ETHEREUM", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"),
        "solana": os.getenv("USDC_CONTRACT_SOLANA", "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"),
    }
    USDC_DECIMALS = {"base": 6, "ethereum": 6, "solana": 6}

    # Bank verification (Lenco)
    LENCO_API_KEY = os.getenv("LENCO_API_KEY")
    LENCO_BASE_URL = os.getenv("LENCO_BASE_URL", "https://api.lenco.co/access/v1").rstrip("/")
    BANK_VERIFICATION_TIMEOUT_SECONDS = int(os.getenv("BANK_VERIFICATION_TIMEOUT_SECONDS", "15"))

    # Custodial deposit wallets
    WALLET_SERVICE_URL = os.getenv("WALLET_SERVICE_URL", "http://localhost:8100").rstrip("/")
    WALLET_SERVICE_API_KEY = os.getenv("WALLET_SERVICE_API_KEY")
    WALLET_PROVISIONING_TIMEOUT_SECONDS = int(os.getenv("WALLET_PROVISIONING_TIMEOUT_SECONDS", "15"))

    # Swap and payout executors
    SWAP_SERVICE_URL = os.getenv("SWAP_SERVICE_URL", "http://localhost:8200").rstrip("/")
    SWAP_SERVICE_API_KEY = os.getenv("SWAP_SERVICE_API_KEY")
    PAYOUT_SERVICE_URL = os.getenv("PAYOUT_SERVICE_URL", "http://localhost:8300").rstrip("/")
    PAYOUT_API_KEY = os.getenv("PAYOUT_API_KEY")
    SETTLEMENT_TIMEOUT_SECONDS = int(os.getenv("SETTLEMENT_TIMEOUT_SECONDS", "30"))

    # Outbound business webhooks
    WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
    WEBHOOK_TIMEOUT_SECONDS = int(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
    WEBHOOK_USER_AGENT = os.getenv("WEBHOOK_USER_AGENT", "OfframpService/1.0")
    INTERNAL_NOTIFICATION_WEBHOOK_URL = os.getenv("INTERNAL_NOTIFICATION_WEBHOOK_URL")  # Operator review alerts

    # Inbound webhook verification
    DEPOSIT_WEBHOOK_SECRET = os.getenv("DEPOSIT_WEBHOOK_SECRET")
    PAYOUT_WEBHOOK_SECRET = os.getenv("PAYOUT_WEBHOOK_SECRET")

    # Order lifecycle
    ORDER_EXPIRY_HOURS = int(os.getenv("ORDER_EXPIRY_HOURS", "24"))
    QUOTE_VALIDITY_SECONDS = int(os.getenv("QUOTE_VALIDITY_SECONDS", "300"))
    STUCK_ORDER_THRESHOLD_MINUTES = int(os.getenv("STUCK_ORDER_THRESHOLD_MINUTES", "60"))
    MAX_RETRY_COUNT = int(os.getenv("MAX_RETRY_COUNT", "3"))
    MIN_REFERENCE_VALUE = _get_decimal("MIN_REFERENCE_VALUE", "0.5")
    DEPOSIT_AMOUNT_TOLERANCE_PERCENT = _get_decimal("DEPOSIT_AMOUNT_TOLERANCE_PERCENT", "1")
    QUOTE_CONSISTENCY_TOLERANCE_PERCENT = _get_decimal("QUOTE_CONSISTENCY_TOLERANCE_PERCENT", "1")
    SUPPORTED_NETWORKS = _get_list("SUPPORTED_NETWORKS", "base,solana,ethereum")

    # Reconciliation monitor
    RECONCILIATION_ENABLED = _get_bool("RECONCILIATION_ENABLED", True)
    RECONCILIATION_INTERVAL_SECONDS = int(os.getenv("RECONCILIATION_INTERVAL_SECONDS", "300"))
    RECONCILIATION_BATCH_SIZE = int(os.getenv("RECONCILIATION_BATCH_SIZE", "100"))

    # HTTP server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "5000"))

    @classmethod
    def validate(cls) -> List[str]:
        """Return a list of configuration problems; logs each one"""
        problems = []
        if not cls.WEBHOOK_SECRET:
            problems.append("WEBHOOK_SECRET is not set - outbound webhooks will be signed with an empty key")
        if not cls.LENCO_API_KEY:
            problems.append("LENCO_API_KEY is not set - bank verification will be unavailable")
        if cls.IS_PRODUCTION and not (cls.DEPOSIT_WEBHOOK_SECRET and cls.PAYOUT_WEBHOOK_SECRET):
            problems.append("Inbound webhook secrets are required in production")
        if cls.CURRENT_USDC_NGN_OFFRAMP_RATE is None:
            problems.append("CURRENT_USDC_NGN_OFFRAMP_RATE is not set - rate fallback goes straight to emergency rate")

        for problem in problems:
            if cls.IS_PRODUCTION:
                logger.error(f"❌ CONFIG: {problem}")
            else:
                logger.warning(f"⚠️ CONFIG: {problem}")
        return problems
