"""Identifier generation and input validation helpers"""

import re
import secrets
import string
import time
import logging
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

_ALPHANUMERIC = string.ascii_uppercase + string.digits
_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{10}$")
_BANK_CODE_PATTERN = re.compile(r"^\d{6}$")


def generate_order_id(now_ms: Optional[int] = None) -> str:
    """System order id: OFF_{epoch_ms}_{9 uppercase alphanumerics}"""
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ALPHANUMERIC) for _ in range(9))
    return f"OFF_{timestamp}_{suffix}"


def generate_business_order_reference(token: str) -> str:
    """Business-facing reference: OFFRAMP-{TOKEN}-{8 uppercase hex}"""
    return f"OFFRAMP-{token.upper()}-{secrets.token_hex(4).upper()}"


def generate_payout_reference(business_order_reference: str) -> str:
    return f"OFFRAMP-{business_order_reference}"


def validate_email(email: str) -> bool:
    """Validate email address format"""
    if not email or not isinstance(email, str):
        return False
    if email.count("@") != 1 or ".." in email:
        return False
    local_part, domain_part = email.split("@")
    if not local_part or len(local_part) > 64 or not domain_part or len(domain_part) > 253:
        return False
    return _EMAIL_PATTERN.match(email) is not None


def validate_account_number(account_number: str) -> bool:
    """NUBAN account numbers are exactly 10 digits"""
    return bool(account_number) and _ACCOUNT_NUMBER_PATTERN.match(str(account_number)) is not None


def validate_bank_code(bank_code: str) -> bool:
    return bool(bank_code) and _BANK_CODE_PATTERN.match(str(bank_code)) is not None


def validate_webhook_url(url: str, allow_http: bool = True) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    allowed = ("https", "http") if allow_http else ("https",)
    return parsed.scheme in allowed and bool(parsed.netloc)


def mask_account_number(account_number: str) -> str:
    if not account_number or len(account_number) < 4:
        return "****"
    return f"******{account_number[-4:]}"
