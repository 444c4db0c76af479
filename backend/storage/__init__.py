# storage/__init__.py
# ============================================================================
# VISA COLLECT — STORAGE MODULE
# ============================================================================
# Repository interfaces with in-memory implementations. The Postgres
# implementations live in the top-level database module.
# ============================================================================

from storage.repositories import (
    ApplicationRepository,
    PaymentRepository,
    DeadLetterQueue,
    DeadLetterEntry,
    DeadLetterStatus,
    InMemoryApplicationRepository,
    InMemoryPaymentRepository,
    InMemoryDeadLetterQueue,
)

__all__ = [
    "ApplicationRepository",
    "PaymentRepository",
    "DeadLetterQueue",
    "DeadLetterEntry",
    "DeadLetterStatus",
    "InMemoryApplicationRepository",
    "InMemoryPaymentRepository",
    "InMemoryDeadLetterQueue",
]
