"""
Webhook Security Service - inbound signature validation
Deposit-watcher and payout-provider callbacks are verified over the raw body
"""

import hashlib
import hmac
import logging
from typing import Optional

from config import Config
from utils.exception_handler import InvalidWebhookSignature

logger = logging.getLogger(__name__)


def validate_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Validate an HMAC-SHA256 signature.

    Accepts both the "sha256=<hex>" form and a bare hex digest.
    """
    if not signature or not secret:
        return False
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    expected = f"sha256={digest}" if signature.startswith("sha256=") else digest
    return hmac.compare_digest(signature, expected)


class WebhookSecurityService:
    """Centralized inbound webhook verification"""

    def __init__(self, config=None):
        self.config = config or Config

    def verify(self, source: str, body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
        """
        Raise InvalidWebhookSignature unless the body is signed with secret.

        Without a configured secret, unsigned callbacks are accepted outside
        production and rejected in production.
        """
        if not secret:
            if self.config.IS_PRODUCTION:
                logger.critical(f"🚨 WEBHOOK_SECURITY: No secret configured for {source} in production")
                raise InvalidWebhookSignature(f"{source} webhook secret not configured")
            logger.warning(f"⚠️ WEBHOOK_SECURITY: No secret for {source} - accepting unsigned callback (development)")
            return

        if not signature:
            logger.warning(f"🚫 WEBHOOK_SECURITY: Missing signature on {source} callback")
            raise InvalidWebhookSignature("Missing webhook signature")

        if not validate_webhook_signature(body, signature, secret):
            logger.error(f"🚫 WEBHOOK_SECURITY: Invalid signature on {source} callback")
            raise InvalidWebhookSignature("Invalid webhook signature")

        logger.debug(f"✅ WEBHOOK_SECURITY: {source} signature verified")

    def verify_deposit(self, body: bytes, signature: Optional[str]) -> None:
        self.verify("deposit", body, signature, self.config.DEPOSIT_WEBHOOK_SECRET)

    def verify_payout(self, body: bytes, signature: Optional[str]) -> None:
        self.verify("payout", body, signature, self.config.PAYOUT_WEBHOOK_SECRET)
