"""
Inbound off-ramp webhooks
Deposit confirmations from the chain watcher and payout status from the bank
transfer provider. Signatures are checked over the raw body before parsing.
Re-delivered events are acknowledged with 200 and change nothing.
"""

import logging
from typing import Any, Dict, Optional

import orjson
from fastapi import APIRouter, Header, Request

from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _parse(body: bytes) -> Dict[str, Any]:
    if not body:
        raise ValidationError("Empty request body")
    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError:
        logger.error("❌ WEBHOOK_JSON: Invalid JSON format")
        raise ValidationError("Invalid JSON format")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be an object")
    # Providers that wrap the event in {"data": {...}}
    if isinstance(payload.get("data"), dict) and "event" in payload:
        return payload["data"]
    return payload


@router.post("/deposit-confirmation")
async def deposit_confirmation(request: Request, x_webhook_signature: Optional[str] = Header(None)):
    body = await request.body()
    request.app.state.webhook_security.verify_deposit(body, x_webhook_signature)
    payload = _parse(body)
    logger.info(
        f"📥 DEPOSIT_WEBHOOK: wallet={payload.get('walletAddress') or payload.get('wallet_address')} "
        f"tx={payload.get('transactionHash') or payload.get('transaction_hash')}"
    )
    result = await request.app.state.order_service.handle_deposit_confirmation(payload)
    return {"success": True, "data": result}


@router.post("/payout-status")
async def payout_status(request: Request, x_webhook_signature: Optional[str] = Header(None)):
    body = await request.body()
    request.app.state.webhook_security.verify_payout(body, x_webhook_signature)
    payload = _parse(body)
    logger.info(f"📥 PAYOUT_WEBHOOK: reference={payload.get('reference')} status={payload.get('status')}")
    result = await request.app.state.order_service.handle_payout_status(payload)
    return {"success": True, "data": result}
