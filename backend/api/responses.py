# api/responses.py
# ============================================================================
# VISA COLLECT — RESPONSE ENVELOPE
# ============================================================================
# Every endpoint answers with
#   {"success": bool, "message"?: str, "data"?: any, "error"?: {code, message}}
# ============================================================================

from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from schemas.payment import Payment


def success(data: Any = None, message: Optional[str] = None, status_code: int = 200, **extra) -> JSONResponse:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def failure(
    status_code: int,
    code: str,
    message: str,
    details: Optional[List[Dict[str, Any]]] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, "message": message, "error": error}),
    )


def payment_summary(payment: Payment) -> Dict[str, Any]:
    return {
        "payment_id": payment.payment_id,
        "application_id": payment.application_id,
        "order_id": payment.order_id,
        "transaction_id": payment.transaction_id,
        "status": payment.status.value,
        "amount": payment.amount,
        "currency": payment.currency,
        "payer_email": payment.payer.email if payment.payer else None,
        "payment_method": payment.payment_method,
        "refund_amount": payment.refund_amount,
        "refunded_at": payment.refunded_at,
        "created_at": payment.created_at,
        "updated_at": payment.updated_at,
    }
