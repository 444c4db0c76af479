# services/webhook_processor.py
# ============================================================================
# VISA COLLECT — PAYPAL WEBHOOK PROCESSOR
# ============================================================================
# verify -> normalise -> locate payment -> dedupe -> apply -> record
#
# Signature failures are the only error surfaced to PayPal. Anything that
# goes wrong after verification is logged, parked in the dead letter queue
# and acknowledged, so PayPal's redelivery policy is never triggered by our
# own faults.
# ============================================================================

from typing import Any, Dict, Literal, Mapping, Optional

import structlog
from pydantic import BaseModel

from gateway.paypal import PayPalGateway, WebhookSignature
from schemas.payment import (
    GatewayEvent,
    Payment,
    PaymentCompletedEvent,
    PaymentDeniedEvent,
    PaymentRefundedEvent,
    WebhookEventRecord,
)
from services.errors import WebhookVerificationFailed
from services.payment_orchestrator import PaymentOrchestrator
from storage.repositories import DeadLetterQueue, InMemoryDeadLetterQueue

logger = structlog.get_logger().bind(component="webhook_processor")


class WebhookOutcome(BaseModel):
    status: Literal["applied", "duplicate", "unmatched", "ignored", "failed"]
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    payment_id: Optional[str] = None


class WebhookProcessor:
    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        gateway: PayPalGateway,
        dead_letters: Optional[DeadLetterQueue] = None,
    ):
        self.orchestrator = orchestrator
        self.payments = orchestrator.payments
        self.gateway = gateway
        self.dead_letters = dead_letters or InMemoryDeadLetterQueue()

    async def handle(self, payload: Dict[str, Any], headers: Mapping[str, str]) -> WebhookOutcome:
        """Entry point for one delivery. Raises only on a bad signature."""
        signature = WebhookSignature.from_headers(headers)
        if not await self.gateway.verify_webhook_signature(payload, signature):
            logger.warning(
                "webhook_signature_invalid",
                transmission_id=signature.transmission_id,
                event_type=payload.get("event_type"),
            )
            raise WebhookVerificationFailed("Invalid webhook signature")

        try:
            return await self.process(payload)
        except Exception as e:
            logger.exception(
                "webhook_processing_failed",
                event_id=payload.get("id"),
                event_type=payload.get("event_type"),
            )
            if payload.get("id"):
                await self.dead_letters.enqueue(
                    payload["id"],
                    payload.get("event_type", ""),
                    payload,
                    str(e),
                )
            return WebhookOutcome(
                status="failed",
                event_id=payload.get("id"),
                event_type=payload.get("event_type"),
            )

    async def process(self, payload: Dict[str, Any]) -> WebhookOutcome:
        event = self.gateway.parse_webhook_event(payload)
        outcome = {"event_id": event.event_id, "event_type": event.event_type}

        if not event.event_id:
            logger.warning("webhook_without_event_id", event_type=event.event_type)
            return WebhookOutcome(status="ignored", **outcome)

        payment = await self._locate(event)
        if payment is None:
            logger.info(
                "webhook_payment_not_found",
                event_id=event.event_id,
                order_id=event.order_id,
                transaction_id=event.transaction_id,
            )
            return WebhookOutcome(status="unmatched", **outcome)

        outcome["payment_id"] = payment.payment_id
        if payment.has_event(event.event_id):
            logger.info("webhook_duplicate", event_id=event.event_id, payment_id=payment.payment_id)
            return WebhookOutcome(status="duplicate", **outcome)

        await self._apply(payment, event)

        recorded = await self.payments.append_webhook_event(
            payment.payment_id,
            WebhookEventRecord(event_id=event.event_id, event_type=event.event_type),
        )
        if not recorded:
            # A concurrent delivery of the same event recorded it first.
            return WebhookOutcome(status="duplicate", **outcome)

        logger.info(
            "webhook_applied",
            event_id=event.event_id,
            event_type=event.event_type,
            payment_id=payment.payment_id,
        )
        return WebhookOutcome(status="applied" if event.kind != "unknown" else "ignored", **outcome)

    async def _locate(self, event: GatewayEvent) -> Optional[Payment]:
        if event.order_id:
            payment = await self.payments.get_by_order(event.order_id)
            if payment is not None:
                return payment
        if event.transaction_id:
            return await self.payments.get_by_transaction(event.transaction_id)
        return None

    async def _apply(self, payment: Payment, event: GatewayEvent):
        if isinstance(event, PaymentCompletedEvent):
            await self.orchestrator.apply_completed(payment, event)
        elif isinstance(event, PaymentDeniedEvent):
            await self.orchestrator.apply_denied(payment, event)
        elif isinstance(event, PaymentRefundedEvent):
            await self.orchestrator.apply_refunded(payment, event)
        else:
            logger.info("webhook_event_unhandled", event_type=event.event_type, payment_id=payment.payment_id)

    async def retry_dead_letters(self, limit: int = 50) -> Dict[str, int]:
        """Reprocess parked events whose back-off has elapsed."""
        retried = succeeded = 0
        for entry in await self.dead_letters.get_due(limit):
            retried += 1
            try:
                await self.process(entry.payload)
            except Exception as e:
                logger.warning("dead_letter_retry_failed", event_id=entry.event_id, error=str(e))
                await self.dead_letters.enqueue(entry.event_id, entry.event_type, entry.payload, str(e))
                continue
            await self.dead_letters.mark_processed(entry.event_id)
            succeeded += 1
        if retried:
            logger.info("dead_letters_retried", retried=retried, succeeded=succeeded)
        return {"retried": retried, "succeeded": succeeded}
