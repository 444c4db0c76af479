# services/payment_orchestrator.py
# ============================================================================
# VISA COLLECT — PAYMENT ORCHESTRATOR
# ============================================================================
# Owns the payment lifecycle:
#
#   PENDING -> CREATED -> APPROVED -> COMPLETED -> REFUNDED
#        \________\__________\______> FAILED | CANCELLED
#
# PayPal is the source of truth for money movement. Capture always starts
# from a live order lookup, and every status write is a conditional
# transition shared with the webhook processor: whichever path settles a
# payment first wins, the other becomes a no-op.
# ============================================================================

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from pydantic import BaseModel

from gateway.paypal import (
    ISSUE_ORDER_ALREADY_CAPTURED,
    PayPalGateway,
    generate_idempotency_key,
    is_valid_amount,
    is_valid_currency,
)
from schemas.application import Application, ApplicationStatus
from schemas.payment import (
    SETTLEABLE_STATUSES,
    GatewayOrder,
    Payment,
    PaymentCompletedEvent,
    PaymentDeniedEvent,
    PaymentRefundedEvent,
    PaymentStatus,
)
from services.application_workflow import ApplicationWorkflow
from services.errors import (
    Conflict,
    GatewayError,
    InvalidState,
    NotFound,
    ValidationError,
    VisaServiceError,
)
from services.fees import calculate_total_fee
from services.notifications import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    NotificationDispatcher,
)
from storage.repositories import PaymentRepository

logger = structlog.get_logger().bind(component="payment_orchestrator")


PAYABLE_STATUSES = frozenset({
    ApplicationStatus.DOCUMENTS_COMPLETED,
    ApplicationStatus.SUBMITTED,
    ApplicationStatus.PAID,
})

# Local statuses worth asking PayPal about on a status query.
ENRICHABLE_STATUSES = frozenset({
    PaymentStatus.PENDING,
    PaymentStatus.CREATED,
    PaymentStatus.APPROVED,
})

# Statuses a losing concurrent capture can still settle from.
RACE_TOLERANT_STATUSES = frozenset({
    PaymentStatus.APPROVED,
    PaymentStatus.COMPLETED,
})

MAX_DESCRIPTION_LENGTH = 127
MAX_REFUND_REASON_LENGTH = 255
DEFAULT_REFUND_REASON = "Refund requested by customer"


def generate_payment_id() -> str:
    return f"PAY-{uuid4().hex[:8].upper()}"


def expected_amount(application: Application) -> Decimal:
    """The submitted total, or the current estimate for an unsubmitted application."""
    if application.total_fee is not None:
        return application.total_fee
    return calculate_total_fee(
        application.visa_fee,
        application.service_fee,
        len(application.additional_applicants),
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# RESULTS
# =============================================================================

class OrderCreation(BaseModel):
    payment: Payment
    approval_url: str
    reused: bool = False


class CaptureOutcome(BaseModel):
    payment: Payment
    already_completed: bool = False


class PaymentStatusView(BaseModel):
    payment: Payment
    gateway_status: Optional[str] = None


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class PaymentOrchestrator:
    def __init__(
        self,
        payments: PaymentRepository,
        workflow: ApplicationWorkflow,
        gateway: PayPalGateway,
        notifications: Optional[NotificationDispatcher] = None,
    ):
        self.payments = payments
        self.workflow = workflow
        self.gateway = gateway
        self.notifications = notifications or workflow.notifications

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create_order(
        self,
        application_id: str,
        amount: Decimal,
        currency: str = "USD",
        description: Optional[str] = None,
    ) -> OrderCreation:
        """
        Create (or hand back) the PayPal order for an application.

        A PENDING payment flagged ``pending_capture`` is reused: its current
        approval link is fetched again instead of opening a second order.
        Any other active payment is a Conflict.
        """
        currency = (currency or "USD").upper()
        self._validate_order_input(amount, currency, description)
        amount = Decimal(str(amount))

        application = await self.workflow.get(application_id)
        if application.status not in PAYABLE_STATUSES:
            raise InvalidState("Application is not ready for payment")
        expected = expected_amount(application)
        if amount != expected:
            logger.warning(
                "payment_amount_mismatch",
                application_id=application_id,
                requested=str(amount),
                expected=str(expected),
                fee_final=application.total_fee is not None,
            )

        existing = await self.payments.find_active(application_id)
        if existing is not None:
            return await self._reuse_or_conflict(existing)

        idempotency_key = generate_idempotency_key()
        order = await self.gateway.create_order(
            amount,
            currency,
            description or f"Visa Application Payment - {application_id}",
            idempotency_key=idempotency_key,
        )
        if not order.approval_url:
            raise GatewayError("Failed to get PayPal approval URL", payload=order.raw)

        payment = Payment(
            payment_id=generate_payment_id(),
            application_id=application_id,
            order_id=order.order_id,
            status=PaymentStatus.PENDING,
            amount=amount,
            currency=currency,
            description=description,
            idempotency_key=idempotency_key,
            metadata={
                "pending_capture": True,
                "gateway_order": order.raw,
                "created_at": _now().isoformat(),
            },
        )

        blocking = await self.payments.insert_if_no_active(payment)
        if blocking is not None:
            # A concurrent request won; the order just created is never used.
            logger.warning(
                "orphan_gateway_order",
                application_id=application_id,
                order_id=order.order_id,
                winner_payment_id=blocking.payment_id,
            )
            return await self._reuse_or_conflict(blocking)

        logger.info(
            "payment_created",
            application_id=application_id,
            payment_id=payment.payment_id,
            order_id=order.order_id,
            amount=str(amount),
            currency=currency,
        )
        return OrderCreation(payment=payment, approval_url=order.approval_url)

    @staticmethod
    def _validate_order_input(amount: Any, currency: str, description: Optional[str]):
        errors = []
        if not is_valid_amount(amount):
            errors.append({"field": "amount", "message": "Amount must be greater than 0 and at most 10000"})
        if not is_valid_currency(currency):
            errors.append({"field": "currency", "message": "Unsupported currency"})
        if description and len(description) > MAX_DESCRIPTION_LENGTH:
            errors.append({"field": "description", "message": "Description is too long"})
        if errors:
            raise ValidationError("Validation failed", details=errors)

    async def _reuse_or_conflict(self, existing: Payment) -> OrderCreation:
        if not existing.is_reusable_pending:
            raise Conflict("Payment already exists for this application")

        order = await self.gateway.get_order(existing.order_id)
        if not order.approval_url:
            raise GatewayError("Failed to get PayPal approval URL", payload=order.raw)
        logger.info(
            "pending_payment_reused",
            application_id=existing.application_id,
            payment_id=existing.payment_id,
            order_id=existing.order_id,
        )
        return OrderCreation(payment=existing, approval_url=order.approval_url, reused=True)

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    async def capture_order(self, order_id: str, application_id: str) -> CaptureOutcome:
        payment = await self.payments.get_by_order(order_id, application_id)
        if payment is None:
            raise NotFound("Payment record not found")

        try:
            live = await self.gateway.get_order(order_id)
            logger.info(
                "capture_reconciling",
                payment_id=payment.payment_id,
                order_id=order_id,
                gateway_status=live.status,
                local_status=payment.status.value,
            )

            if live.status == "COMPLETED":
                return await self._settle(payment, live, already_completed=True)
            if live.status == "APPROVED":
                return await self._capture_approved(payment, order_id)
            if live.status == "CREATED":
                raise InvalidState(
                    "Payment has not been approved by the user yet. "
                    "Please complete the PayPal approval process."
                )
            raise InvalidState(f"Invalid PayPal order status for capture: {live.status}")

        except GatewayError as e:
            await self._mark_failed(payment, e.message)
            raise GatewayError(
                "Failed to capture PayPal payment",
                http_status=e.http_status,
                issue=e.issue,
                payload=e.payload,
            ) from e
        except VisaServiceError:
            raise
        except Exception as e:
            logger.exception("capture_unexpected_error", payment_id=payment.payment_id, order_id=order_id)
            await self._mark_failed(payment, str(e))
            raise GatewayError("Failed to capture PayPal payment") from e

    async def _capture_approved(self, payment: Payment, order_id: str) -> CaptureOutcome:
        if payment.status != PaymentStatus.APPROVED:
            approved = await self.payments.transition(payment.payment_id, PaymentStatus.APPROVED)
            if approved is None:
                current = await self.payments.get(payment.payment_id)
                if current is None or current.status not in RACE_TOLERANT_STATUSES:
                    status = current.status.value if current else "MISSING"
                    raise InvalidState(f"Payment cannot be captured. PayPal status: APPROVED, DB status: {status}")
                if current.status == PaymentStatus.COMPLETED:
                    return CaptureOutcome(payment=current, already_completed=True)
                # A concurrent capture approved it first; PayPal decides who captures.
                logger.info("capture_concurrent_attempt", payment_id=payment.payment_id, order_id=order_id)
                approved = current
            payment = approved

        try:
            captured = await self.gateway.capture_order(order_id)
        except GatewayError as e:
            if e.issue != ISSUE_ORDER_ALREADY_CAPTURED:
                raise
            logger.info("order_already_captured", payment_id=payment.payment_id, order_id=order_id)
            refreshed = await self.gateway.get_order(order_id)
            return await self._settle(payment, refreshed, already_completed=True)

        return await self._settle(payment, captured, already_completed=False)

    async def _settle(self, payment: Payment, order: GatewayOrder, already_completed: bool) -> CaptureOutcome:
        """Record a gateway-confirmed capture; first writer wins."""
        if payment.status == PaymentStatus.FAILED:
            # PayPal says the money moved; reopen so COMPLETED is reachable.
            await self.payments.transition(
                payment.payment_id,
                PaymentStatus.APPROVED,
                allowed_from=[PaymentStatus.FAILED],
            )

        settled = await self.payments.transition(
            payment.payment_id,
            PaymentStatus.COMPLETED,
            self._capture_changes(payment, order),
        )

        await self.workflow.mark_paid(payment.application_id)

        if settled is None:
            current = await self.payments.get(payment.payment_id)
            logger.info(
                "settlement_already_applied",
                payment_id=payment.payment_id,
                status=current.status.value if current else None,
            )
            return CaptureOutcome(payment=current or payment, already_completed=True)

        logger.info(
            "payment_completed",
            payment_id=settled.payment_id,
            application_id=settled.application_id,
            transaction_id=settled.transaction_id,
        )
        self._notify_completed(settled)
        return CaptureOutcome(payment=settled, already_completed=already_completed)

    @staticmethod
    def _capture_changes(payment: Payment, order: GatewayOrder) -> Dict[str, Any]:
        capture = order.capture
        metadata = dict(payment.metadata)
        metadata.update(pending_capture=False, captured_at=_now().isoformat())
        changes: Dict[str, Any] = {
            "metadata": metadata,
            "gateway_response": order.raw,
            "error_message": None,
        }
        if capture is not None:
            changes["transaction_id"] = capture.capture_id or payment.transaction_id
            changes["gateway_fee"] = capture.fee
        if order.payer is not None:
            changes["payer"] = order.payer
        if order.payment_method:
            changes["payment_method"] = order.payment_method
        return changes

    async def _mark_failed(self, payment: Payment, message: str):
        failed = await self.payments.transition(
            payment.payment_id,
            PaymentStatus.FAILED,
            {"error_message": message},
            allowed_from=SETTLEABLE_STATUSES,
        )
        if failed is not None:
            logger.error("payment_failed", payment_id=payment.payment_id, error=message)
            self.notifications.dispatch(PAYMENT_FAILED, {
                "payment_id": failed.payment_id,
                "application_id": failed.application_id,
                "reason": message,
            })

    def _notify_completed(self, payment: Payment):
        self.notifications.dispatch(PAYMENT_COMPLETED, {
            "payment_id": payment.payment_id,
            "application_id": payment.application_id,
            "transaction_id": payment.transaction_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "payment_method": payment.payment_method,
        })

    # -------------------------------------------------------------------------
    # Refund
    # -------------------------------------------------------------------------

    async def refund(
        self,
        payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Payment:
        payment = await self.payments.get(payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.status != PaymentStatus.COMPLETED or payment.has_refund:
            raise InvalidState(f"Payment cannot be refunded. Status: {payment.status.value}")
        if reason and len(reason) > MAX_REFUND_REASON_LENGTH:
            raise ValidationError("Validation failed", details=[{"field": "reason", "message": "Reason is too long"}])

        refund_amount = Decimal(str(amount)) if amount is not None else payment.amount
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise ValidationError(
                "Validation failed",
                details=[{"field": "amount", "message": "Refund amount must be positive and not exceed the payment"}],
            )
        if not payment.transaction_id:
            raise InvalidState("Payment has no capture to refund")

        try:
            result = await self.gateway.refund_capture(
                payment.transaction_id,
                refund_amount,
                payment.currency,
                reason or DEFAULT_REFUND_REASON,
            )
        except GatewayError as e:
            logger.error("refund_failed", payment_id=payment_id, error=e.message, issue=e.issue)
            raise GatewayError("Failed to process refund", http_status=e.http_status, issue=e.issue) from e

        metadata = dict(payment.metadata)
        metadata["refund_response"] = result.raw
        refunded = await self.payments.transition(
            payment_id,
            PaymentStatus.REFUNDED,
            {
                "refund_id": result.refund_id,
                "refund_amount": refund_amount,
                "refund_reason": reason,
                "refunded_at": _now(),
                "metadata": metadata,
            },
            allowed_from=[PaymentStatus.COMPLETED],
        )
        if refunded is None:
            current = await self.payments.get(payment_id)
            logger.warning("refund_already_recorded", payment_id=payment_id)
            return current or payment

        logger.info("payment_refunded", payment_id=payment_id, refund_id=result.refund_id, amount=str(refund_amount))
        self.notifications.dispatch(PAYMENT_REFUNDED, {
            "payment_id": payment_id,
            "application_id": refunded.application_id,
            "refund_amount": str(refund_amount),
        })
        return refunded

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_status(self, payment_id: str) -> PaymentStatusView:
        payment = await self.payments.get(payment_id)
        if payment is None:
            raise NotFound("Payment not found")

        gateway_status = None
        if payment.status in ENRICHABLE_STATUSES:
            try:
                gateway_status = (await self.gateway.get_order(payment.order_id)).status
            except Exception as e:
                logger.warning("gateway_status_unavailable", payment_id=payment_id, error=str(e))
        return PaymentStatusView(payment=payment, gateway_status=gateway_status)

    async def list_for_application(self, application_id: str) -> List[Payment]:
        return await self.payments.list_by_application(application_id)

    async def stats(self) -> Dict[str, Dict[str, Any]]:
        return await self.payments.aggregate_by_status()

    # -------------------------------------------------------------------------
    # Webhook-driven transitions
    # -------------------------------------------------------------------------

    async def apply_completed(self, payment: Payment, event: PaymentCompletedEvent) -> Optional[Payment]:
        metadata = dict(payment.metadata)
        metadata.update(pending_capture=False, completed_via="webhook", completed_event_id=event.event_id)
        changes: Dict[str, Any] = {"metadata": metadata}
        if event.transaction_id:
            changes["transaction_id"] = event.transaction_id

        if payment.status == PaymentStatus.FAILED:
            await self.payments.transition(payment.payment_id, PaymentStatus.APPROVED, allowed_from=[PaymentStatus.FAILED])
        completed = await self.payments.transition(payment.payment_id, PaymentStatus.COMPLETED, changes)

        await self.workflow.mark_paid(payment.application_id)
        if completed is not None:
            logger.info("webhook_payment_completed", payment_id=payment.payment_id, event_id=event.event_id)
            self._notify_completed(completed)
        return completed

    async def apply_denied(self, payment: Payment, event: PaymentDeniedEvent) -> Optional[Payment]:
        if payment.status == PaymentStatus.COMPLETED:
            logger.warning("webhook_denial_after_completion", payment_id=payment.payment_id, event_id=event.event_id)
            return None
        failed = await self.payments.transition(
            payment.payment_id,
            PaymentStatus.FAILED,
            {"error_message": event.reason},
            allowed_from=SETTLEABLE_STATUSES,
        )
        if failed is not None:
            logger.info("webhook_payment_denied", payment_id=payment.payment_id, reason=event.reason)
            self.notifications.dispatch(PAYMENT_FAILED, {
                "payment_id": failed.payment_id,
                "application_id": failed.application_id,
                "reason": event.reason,
            })
        return failed

    async def apply_refunded(self, payment: Payment, event: PaymentRefundedEvent) -> Optional[Payment]:
        refunded = await self.payments.transition(
            payment.payment_id,
            PaymentStatus.REFUNDED,
            {
                "refund_id": event.refund_id,
                "refund_amount": event.amount if event.amount is not None else payment.amount,
                "refunded_at": _now(),
            },
            allowed_from=[PaymentStatus.COMPLETED],
        )
        if refunded is not None:
            logger.info("webhook_payment_refunded", payment_id=payment.payment_id, event_id=event.event_id)
            self.notifications.dispatch(PAYMENT_REFUNDED, {
                "payment_id": refunded.payment_id,
                "application_id": refunded.application_id,
                "refund_amount": str(refunded.refund_amount),
            })
        return refunded

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def reconcile(self, payment: Payment) -> str:
        """
        Compare one stale payment with its PayPal order.

        Returns the action taken: "settled", "cancelled" or "unchanged".
        """
        order = await self.gateway.get_order(payment.order_id)
        if order.status == "COMPLETED":
            outcome = await self._settle(payment, order, already_completed=True)
            return "settled" if outcome.payment.status == PaymentStatus.COMPLETED else "unchanged"
        if order.status == "VOIDED":
            cancelled = await self.payments.transition(
                payment.payment_id,
                PaymentStatus.CANCELLED,
                {"error_message": "Order voided by PayPal"},
                allowed_from=SETTLEABLE_STATUSES,
            )
            return "cancelled" if cancelled is not None else "unchanged"
        if order.status == "APPROVED" and payment.status != PaymentStatus.APPROVED:
            await self.payments.transition(payment.payment_id, PaymentStatus.APPROVED, allowed_from=SETTLEABLE_STATUSES)
        return "unchanged"
