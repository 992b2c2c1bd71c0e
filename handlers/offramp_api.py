"""
Business Off-ramp API
Thin FastAPI routes over OfframpOrderService; the upstream gateway authenticates
the business and forwards its id in X-Business-Id.
"""

import logging
from typing import Any, Dict, Optional

import orjson
from fastapi import APIRouter, Header, Query, Request

from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/offramp", tags=["offramp"])


def _service(request: Request):
    return request.app.state.order_service


def _business_id(x_business_id: Optional[str]) -> str:
    if not x_business_id or not x_business_id.strip():
        raise ValidationError("X-Business-Id header is required")
    return x_business_id.strip()


async def _json_body(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


@router.post("/quote")
async def get_quote(request: Request, x_business_id: Optional[str] = Header(None)):
    business_id = _business_id(x_business_id)
    data = await _service(request).get_quote(business_id, await _json_body(request))
    return {"success": True, "data": data}


@router.post("/orders", status_code=201)
async def create_order(request: Request, x_business_id: Optional[str] = Header(None)):
    business_id = _business_id(x_business_id)
    data = await _service(request).create_order(business_id, await _json_body(request))
    return {
        "success": True,
        "message": f"Off-ramp order created. Send {data['target_token']} to the provided wallet address.",
        "data": data,
    }


@router.get("/orders")
async def list_orders(
    request: Request,
    x_business_id: Optional[str] = Header(None),
    status: Optional[str] = Query(None),
    token: Optional[str] = Query(None),
    network: Optional[str] = Query(None),
    customer_email: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    page: int = Query(1),
    limit: int = Query(20),
):
    business_id = _business_id(x_business_id)
    data = await _service(request).list_orders(business_id, {
        "status": status,
        "token": token,
        "network": network,
        "customer_email": customer_email,
        "start_date": start_date,
        "end_date": end_date,
        "page": page,
        "limit": limit,
    })
    return {"success": True, "data": data}


@router.get("/stats")
async def get_stats(
    request: Request,
    x_business_id: Optional[str] = Header(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
):
    business_id = _business_id(x_business_id)
    data = await _service(request).get_stats(business_id, {"start_date": start_date, "end_date": end_date})
    return {"success": True, "data": data}


@router.get("/orders/{order_id}")
async def get_order(order_id: str, request: Request, x_business_id: Optional[str] = Header(None)):
    business_id = _business_id(x_business_id)
    data = await _service(request).get_order(business_id, order_id)
    return {"success": True, "data": data}


@router.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, request: Request, x_business_id: Optional[str] = Header(None)):
    business_id = _business_id(x_business_id)
    body = await _json_body(request)
    data = await _service(request).cancel_order(business_id, order_id, body.get("reason"))
    return {"success": True, "message": "Order cancelled", "data": data}


@router.post("/orders/{order_id}/retry")
async def retry_order(order_id: str, request: Request, x_business_id: Optional[str] = Header(None)):
    business_id = _business_id(x_business_id)
    body = await _json_body(request)
    data = await _service(request).retry_order(business_id, order_id, body.get("reason"))
    return {"success": True, "message": "Order retry initiated", "data": data}


@router.get("/banks")
async def list_banks(request: Request, search: Optional[str] = Query(None)):
    data = await _service(request).list_banks(search)
    return {"success": True, "data": data}


@router.post("/verify-account")
async def verify_account(request: Request):
    body = await _json_body(request)
    data = await _service(request).verify_bank_account(body.get("account_number"), body.get("bank_code"))
    return {"success": True, "data": data}
