# schemas/payment.py
# ============================================================================
# VISA COLLECT — PAYMENT SCHEMAS
# ============================================================================
# Payment entity, its closed status machine, and the narrow typed views of
# PayPal payloads the orchestrator actually consumes. The raw payload is
# always kept alongside for audit.
# ============================================================================

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


# =============================================================================
# STATUS MACHINE
# =============================================================================

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    CREATED = "CREATED"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        return target in PAYMENT_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not PAYMENT_TRANSITIONS[self]


PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.CREATED,
        PaymentStatus.APPROVED,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.CREATED: frozenset({
        PaymentStatus.APPROVED,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.APPROVED: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    # A failed capture may be retried once the buyer re-approves.
    PaymentStatus.FAILED: frozenset({PaymentStatus.APPROVED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}


def sources_for(target: PaymentStatus) -> FrozenSet[PaymentStatus]:
    """Every status from which ``target`` may legally be entered."""
    return frozenset(s for s, targets in PAYMENT_TRANSITIONS.items() if target in targets)


# Statuses that block creation of another order for the same application.
ACTIVE_STATUSES: FrozenSet[PaymentStatus] = frozenset({
    PaymentStatus.PENDING,
    PaymentStatus.CREATED,
    PaymentStatus.APPROVED,
    PaymentStatus.COMPLETED,
})

# Statuses the gateway may still settle.
SETTLEABLE_STATUSES: FrozenSet[PaymentStatus] = frozenset({
    PaymentStatus.PENDING,
    PaymentStatus.CREATED,
    PaymentStatus.APPROVED,
})

VALID_CURRENCIES = ("USD", "EUR", "GBP", "CAD", "AUD")
MAX_AMOUNT = Decimal("10000")


# =============================================================================
# PAYMENT ENTITY
# =============================================================================

class PayerInfo(BaseModel):
    payer_id: Optional[str] = None
    email: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None

    @property
    def full_name(self) -> Optional[str]:
        parts = [p for p in (self.given_name, self.surname) if p]
        return " ".join(parts) or None


class WebhookEventRecord(BaseModel):
    """One gateway notification already applied to a payment."""
    event_id: str
    event_type: str
    received_at: datetime = Field(default_factory=utcnow)


class Payment(BaseModel):
    payment_id: str
    application_id: str
    order_id: str
    transaction_id: Optional[str] = None

    status: PaymentStatus = PaymentStatus.PENDING
    amount: Decimal
    currency: str = "USD"
    description: Optional[str] = None

    payer: Optional[PayerInfo] = None
    payment_method: str = "paypal"
    gateway_fee: Optional[Decimal] = None
    gateway_response: Optional[Dict[str, Any]] = None

    webhook_events: List[WebhookEventRecord] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    error_message: Optional[str] = None

    refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def is_reusable_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING and bool(self.metadata.get("pending_capture"))

    @property
    def has_refund(self) -> bool:
        return self.refunded_at is not None or self.refund_amount is not None

    def has_event(self, event_id: str) -> bool:
        return any(e.event_id == event_id for e in self.webhook_events)


# =============================================================================
# GATEWAY ORDER VIEW
# =============================================================================

class CaptureDetails(BaseModel):
    capture_id: str
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    fee: Optional[Decimal] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CaptureDetails":
        amount = payload.get("amount") or {}
        breakdown = payload.get("seller_receivable_breakdown") or {}
        fee = (breakdown.get("paypal_fee") or {}).get("value")
        return cls(
            capture_id=payload.get("id", ""),
            status=payload.get("status"),
            amount=to_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            fee=to_decimal(fee),
        )


class GatewayOrder(BaseModel):
    """The handful of order fields this service reads."""
    order_id: str
    status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    approval_url: Optional[str] = None
    capture: Optional[CaptureDetails] = None
    payer: Optional[PayerInfo] = None
    payment_method: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GatewayOrder":
        units = payload.get("purchase_units") or [{}]
        unit = units[0] if units else {}
        amount = unit.get("amount") or {}

        captures = (unit.get("payments") or {}).get("captures") or []
        capture = CaptureDetails.from_payload(captures[0]) if captures else None

        approval_url = next(
            (link.get("href") for link in payload.get("links") or [] if link.get("rel") == "approve"),
            None,
        )

        payer = None
        raw_payer = payload.get("payer")
        if raw_payer:
            name = raw_payer.get("name") or {}
            payer = PayerInfo(
                payer_id=raw_payer.get("payer_id"),
                email=raw_payer.get("email_address"),
                given_name=name.get("given_name"),
                surname=name.get("surname"),
            )

        source = payload.get("payment_source") or {}
        payment_method = next(iter(source), None) if isinstance(source, dict) else None

        return cls(
            order_id=payload.get("id", ""),
            status=payload.get("status", "UNKNOWN"),
            amount=to_decimal(amount.get("value")) or (capture.amount if capture else None),
            currency=amount.get("currency_code") or (capture.currency if capture else None),
            approval_url=approval_url,
            capture=capture,
            payer=payer,
            payment_method=payment_method,
            raw=payload,
        )


class RefundResult(BaseModel):
    refund_id: str
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    raw: Dict[str, Any] = Field(default_factory=dict, repr=False)


# =============================================================================
# NORMALISED WEBHOOK EVENTS
# =============================================================================

class _GatewayEvent(BaseModel):
    event_id: str
    event_type: str
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, repr=False)


class PaymentCompletedEvent(_GatewayEvent):
    kind: Literal["completed"] = "completed"


class PaymentDeniedEvent(_GatewayEvent):
    kind: Literal["denied"] = "denied"
    reason: str = "Payment denied by gateway"


class PaymentRefundedEvent(_GatewayEvent):
    kind: Literal["refunded"] = "refunded"
    refund_id: Optional[str] = None


class UnknownEvent(_GatewayEvent):
    kind: Literal["unknown"] = "unknown"


GatewayEvent = Union[PaymentCompletedEvent, PaymentDeniedEvent, PaymentRefundedEvent, UnknownEvent]
