# api/payment_routes.py
# ============================================================================
# VISA COLLECT — PAYPAL PAYMENT ENDPOINTS
# ============================================================================
# Mounted under {API_PREFIX}/payment.
# ============================================================================

from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from api.container import ServiceContainer, get_container
from api.responses import payment_summary, success
from services.errors import ValidationError

logger = structlog.get_logger().bind(component="payment_routes")

router = APIRouter(prefix="/payment", tags=["payments"])


class CreateOrderRequest(BaseModel):
    application_id: str = Field(..., min_length=1)
    amount: Decimal
    currency: str = "USD"
    description: Optional[str] = None


class CaptureOrderRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    application_id: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    payment_id: str = Field(..., min_length=1)
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


@router.post("/paypal/create", status_code=201)
async def create_paypal_order(body: CreateOrderRequest, container: ServiceContainer = Depends(get_container)):
    creation = await container.orchestrator.create_order(
        body.application_id,
        body.amount,
        currency=body.currency,
        description=body.description,
    )
    payment = creation.payment
    return success(
        {
            "payment_id": payment.payment_id,
            "order_id": payment.order_id,
            "approval_url": creation.approval_url,
            "status": payment.status.value,
            "amount": payment.amount,
            "currency": payment.currency,
        },
        message="Existing PayPal order returned" if creation.reused else "PayPal order created successfully",
        status_code=200 if creation.reused else 201,
    )


@router.post("/paypal/capture")
async def capture_paypal_order(body: CaptureOrderRequest, container: ServiceContainer = Depends(get_container)):
    outcome = await container.orchestrator.capture_order(body.order_id, body.application_id)
    payment = outcome.payment
    return success(
        {
            "payment_id": payment.payment_id,
            "order_id": payment.order_id,
            "transaction_id": payment.transaction_id,
            "status": payment.status.value,
            "amount": payment.amount,
            "currency": payment.currency,
            "payer_email": payment.payer.email if payment.payer else None,
        },
        message="Payment already completed" if outcome.already_completed else "Payment captured successfully",
    )


@router.post("/paypal/webhook")
async def paypal_webhook(request: Request, container: ServiceContainer = Depends(get_container)):
    """
    PayPal webhook receiver.

    Answers 200 for every verified delivery, including ones that fail to
    process; those are parked for retry. Only a bad signature is rejected.
    """
    try:
        payload: Dict[str, Any] = await request.json()
    except ValueError:
        raise ValidationError("Invalid webhook payload")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid webhook payload")
    outcome = await container.webhooks.handle(payload, request.headers)
    logger.info(
        "webhook_received",
        event_id=outcome.event_id,
        event_type=outcome.event_type,
        outcome=outcome.status,
    )
    return success(outcome.model_dump(), message="Webhook received")


@router.get("/application/{application_id}")
async def application_payments(application_id: str, container: ServiceContainer = Depends(get_container)):
    payments = await container.orchestrator.list_for_application(application_id)
    return success([payment_summary(p) for p in payments], count=len(payments))


@router.get("/stats/payment")
async def payment_stats(container: ServiceContainer = Depends(get_container)):
    return success(await container.orchestrator.stats())


@router.get("/{payment_id}")
async def payment_status(payment_id: str, container: ServiceContainer = Depends(get_container)):
    view = await container.orchestrator.get_status(payment_id)
    data = payment_summary(view.payment)
    data["gateway_status"] = view.gateway_status
    return success(data)


@router.post("/refund")
async def refund_payment(body: RefundRequest, container: ServiceContainer = Depends(get_container)):
    payment = await container.orchestrator.refund(body.payment_id, body.amount, body.reason)
    return success(
        {
            "payment_id": payment.payment_id,
            "refund_id": payment.refund_id,
            "status": payment.status.value,
            "refund_amount": payment.refund_amount,
            "currency": payment.currency,
        },
        message="Refund processed successfully",
    )
