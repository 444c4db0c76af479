# storage/repositories.py
# ============================================================================
# VISA COLLECT — REPOSITORIES
# ============================================================================
# Abstract persistence interfaces plus asyncio.Lock-guarded in-memory
# implementations. The PostgreSQL implementations live in database.py.
#
# Every status change goes through a conditional transition: the new status
# is written only if the current one is in an allowed source set, so the
# first writer wins and later writers observe None.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, Field, computed_field

from schemas.application import Application, ApplicationStatus, application_sources_for
from schemas.payment import (
    ACTIVE_STATUSES,
    Payment,
    PaymentStatus,
    WebhookEventRecord,
    sources_for,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def allowed_sources(target: PaymentStatus, allowed_from: Optional[Iterable[PaymentStatus]] = None) -> FrozenSet[PaymentStatus]:
    """Caller-narrowed source set, never wider than the status machine allows."""
    legal = sources_for(target)
    if allowed_from is None:
        return legal
    return legal & frozenset(allowed_from)


# =============================================================================
# INTERFACES
# =============================================================================

class ApplicationRepository(ABC):
    """Application persistence interface"""

    @abstractmethod
    async def get(self, application_id: str) -> Optional[Application]:
        pass

    @abstractmethod
    async def exists(self, application_id: str) -> bool:
        pass

    @abstractmethod
    async def insert(self, application: Application) -> bool:
        """Store a new application; False if the identifier is taken."""

    @abstractmethod
    async def save(self, application: Application) -> Application:
        pass

    @abstractmethod
    async def transition_status(
        self,
        application_id: str,
        target: ApplicationStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[Application]:
        """Move to ``target`` only from a legal source status."""


class PaymentRepository(ABC):
    """Payment persistence interface"""

    @abstractmethod
    async def get(self, payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_order(self, order_id: str, application_id: Optional[str] = None) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def list_by_application(self, application_id: str) -> List[Payment]:
        """Newest first."""

    @abstractmethod
    async def find_active(self, application_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def insert_if_no_active(self, payment: Payment) -> Optional[Payment]:
        """
        Insert ``payment`` unless its application already has an active one.

        Returns the blocking active payment, or None when the insert happened.
        """

    @abstractmethod
    async def transition(
        self,
        payment_id: str,
        target: PaymentStatus,
        changes: Optional[Dict[str, Any]] = None,
        allowed_from: Optional[Iterable[PaymentStatus]] = None,
    ) -> Optional[Payment]:
        """Conditionally set status; None when the current status is not a legal source."""

    @abstractmethod
    async def append_webhook_event(self, payment_id: str, record: WebhookEventRecord) -> bool:
        """Append to the event log; False if the event id is already present."""

    @abstractmethod
    async def aggregate_by_status(self) -> Dict[str, Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_stale(
        self,
        statuses: Iterable[PaymentStatus],
        older_than: datetime,
        limit: int = 10,
    ) -> List[Payment]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryApplicationRepository(ApplicationRepository):
    """Thread-safe in-memory application repository"""

    def __init__(self):
        self._applications: Dict[str, Application] = {}
        self._lock = asyncio.Lock()

    async def get(self, application_id: str) -> Optional[Application]:
        async with self._lock:
            app = self._applications.get(application_id)
            return app.model_copy(deep=True) if app else None

    async def exists(self, application_id: str) -> bool:
        async with self._lock:
            return application_id in self._applications

    async def insert(self, application: Application) -> bool:
        async with self._lock:
            if application.application_id in self._applications:
                return False
            self._applications[application.application_id] = application.model_copy(deep=True)
            return True

    async def save(self, application: Application) -> Application:
        async with self._lock:
            stored = application.model_copy(update={"updated_at": _utcnow()}, deep=True)
            self._applications[application.application_id] = stored
            return stored.model_copy(deep=True)

    async def transition_status(
        self,
        application_id: str,
        target: ApplicationStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[Application]:
        async with self._lock:
            current = self._applications.get(application_id)
            if current is None or current.status not in application_sources_for(target):
                return None
            update = dict(changes or {})
            update.update(status=target, updated_at=_utcnow())
            stored = current.model_copy(update=update, deep=True)
            self._applications[application_id] = stored
            return stored.model_copy(deep=True)


class InMemoryPaymentRepository(PaymentRepository):
    """Thread-safe in-memory payment repository"""

    def __init__(self):
        self._payments: Dict[str, Payment] = {}
        self._lock = asyncio.Lock()

    def _find(self, predicate) -> Optional[Payment]:
        for payment in self._payments.values():
            if predicate(payment):
                return payment
        return None

    def _active_for(self, application_id: str) -> Optional[Payment]:
        candidates = [
            p for p in self._payments.values()
            if p.application_id == application_id and p.status in ACTIVE_STATUSES
        ]
        candidates.sort(key=lambda p: p.created_at, reverse=True)
        return candidates[0] if candidates else None

    async def get(self, payment_id: str) -> Optional[Payment]:
        async with self._lock:
            payment = self._payments.get(payment_id)
            return payment.model_copy(deep=True) if payment else None

    async def get_by_order(self, order_id: str, application_id: Optional[str] = None) -> Optional[Payment]:
        async with self._lock:
            payment = self._find(
                lambda p: p.order_id == order_id
                and (application_id is None or p.application_id == application_id)
            )
            return payment.model_copy(deep=True) if payment else None

    async def get_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        async with self._lock:
            payment = self._find(lambda p: p.transaction_id == transaction_id)
            return payment.model_copy(deep=True) if payment else None

    async def list_by_application(self, application_id: str) -> List[Payment]:
        async with self._lock:
            payments = [p for p in self._payments.values() if p.application_id == application_id]
            payments.sort(key=lambda p: p.created_at, reverse=True)
            return [p.model_copy(deep=True) for p in payments]

    async def find_active(self, application_id: str) -> Optional[Payment]:
        async with self._lock:
            payment = self._active_for(application_id)
            return payment.model_copy(deep=True) if payment else None

    async def insert_if_no_active(self, payment: Payment) -> Optional[Payment]:
        async with self._lock:
            existing = self._active_for(payment.application_id)
            if existing is not None:
                return existing.model_copy(deep=True)
            self._payments[payment.payment_id] = payment.model_copy(deep=True)
            return None

    async def transition(
        self,
        payment_id: str,
        target: PaymentStatus,
        changes: Optional[Dict[str, Any]] = None,
        allowed_from: Optional[Iterable[PaymentStatus]] = None,
    ) -> Optional[Payment]:
        async with self._lock:
            current = self._payments.get(payment_id)
            if current is None or current.status not in allowed_sources(target, allowed_from):
                return None
            update = dict(changes or {})
            update.update(status=target, updated_at=_utcnow())
            stored = current.model_copy(update=update, deep=True)
            self._payments[payment_id] = stored
            return stored.model_copy(deep=True)

    async def append_webhook_event(self, payment_id: str, record: WebhookEventRecord) -> bool:
        async with self._lock:
            current = self._payments.get(payment_id)
            if current is None or current.has_event(record.event_id):
                return False
            current.webhook_events.append(record)
            return True

    async def aggregate_by_status(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            stats: Dict[str, Dict[str, Any]] = {}
            for payment in self._payments.values():
                bucket = stats.setdefault(
                    payment.status.value.lower(),
                    {"count": 0, "total_amount": Decimal("0")},
                )
                bucket["count"] += 1
                bucket["total_amount"] += payment.amount
            return stats

    async def list_stale(
        self,
        statuses: Iterable[PaymentStatus],
        older_than: datetime,
        limit: int = 10,
    ) -> List[Payment]:
        wanted = frozenset(statuses)
        async with self._lock:
            stale = [
                p for p in self._payments.values()
                if p.status in wanted and p.updated_at <= older_than
            ]
            stale.sort(key=lambda p: p.updated_at)
            return [p.model_copy(deep=True) for p in stale[:limit]]


# =============================================================================
# WEBHOOK DEAD LETTER QUEUE
# =============================================================================

class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    EXHAUSTED = "exhausted"


class DeadLetterEntry(BaseModel):
    """Webhook event whose processing raised."""
    event_id: str
    event_type: str
    payload: Dict[str, Any]
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    attempt_count: int = 1
    max_attempts: int = 5
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None

    @computed_field
    @property
    def is_retriable(self) -> bool:
        return self.status == DeadLetterStatus.PENDING and self.attempt_count < self.max_attempts


class DeadLetterQueue(ABC):
    """Dead Letter Queue interface"""

    @abstractmethod
    async def enqueue(self, event_id: str, event_type: str, payload: Dict[str, Any], error: str) -> DeadLetterEntry:
        pass

    @abstractmethod
    async def get_due(self, limit: int = 100) -> List[DeadLetterEntry]:
        pass

    @abstractmethod
    async def mark_processed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def get_stats(self) -> Dict[str, int]:
        pass


class InMemoryDeadLetterQueue(DeadLetterQueue):
    """DLQ for webhook events that failed to apply"""

    BASE_BACKOFF_SECONDS = 30

    def __init__(self, max_attempts: int = 5):
        self._queue: Dict[str, DeadLetterEntry] = {}
        self._max_attempts = max_attempts
        self._lock = asyncio.Lock()

    def _backoff(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.BASE_BACKOFF_SECONDS * (2 ** (attempts - 1)))

    async def enqueue(self, event_id: str, event_type: str, payload: Dict[str, Any], error: str) -> DeadLetterEntry:
        async with self._lock:
            now = _utcnow()
            entry = self._queue.get(event_id)
            if entry is None:
                entry = DeadLetterEntry(
                    event_id=event_id,
                    event_type=event_type,
                    payload=payload,
                    max_attempts=self._max_attempts,
                )
            else:
                entry.attempt_count += 1
            entry.last_error = error
            if entry.attempt_count >= entry.max_attempts:
                entry.status = DeadLetterStatus.EXHAUSTED
                entry.next_retry_at = None
            else:
                entry.status = DeadLetterStatus.PENDING
                entry.next_retry_at = now + self._backoff(entry.attempt_count)
            self._queue[event_id] = entry
            return entry.model_copy(deep=True)

    async def get_due(self, limit: int = 100) -> List[DeadLetterEntry]:
        async with self._lock:
            now = _utcnow()
            due = [
                e for e in self._queue.values()
                if e.status == DeadLetterStatus.PENDING
                and (e.next_retry_at is None or e.next_retry_at <= now)
            ]
            return [e.model_copy(deep=True) for e in due[:limit]]

    async def mark_processed(self, event_id: str) -> None:
        async with self._lock:
            if event_id in self._queue:
                self._queue[event_id].status = DeadLetterStatus.PROCESSED
                self._queue[event_id].processed_at = _utcnow()

    async def get_stats(self) -> Dict[str, int]:
        async with self._lock:
            return {
                "total": len(self._queue),
                "pending": sum(1 for e in self._queue.values() if e.status == DeadLetterStatus.PENDING),
                "processed": sum(1 for e in self._queue.values() if e.status == DeadLetterStatus.PROCESSED),
                "exhausted": sum(1 for e in self._queue.values() if e.status == DeadLetterStatus.EXHAUSTED),
            }
