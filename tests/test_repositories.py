from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from schemas.application import Application, ApplicationStatus
from schemas.payment import (
    ACTIVE_STATUSES,
    SETTLEABLE_STATUSES,
    Payment,
    PaymentStatus,
    WebhookEventRecord,
)
from storage.repositories import (
    DeadLetterStatus,
    InMemoryApplicationRepository,
    InMemoryDeadLetterQueue,
    InMemoryPaymentRepository,
    allowed_sources,
)


def make_payment(payment_id="PAY-1", application_id="TUR-1", status=PaymentStatus.PENDING, **extra) -> Payment:
    return Payment(
        payment_id=payment_id,
        application_id=application_id,
        order_id=f"ORDER-{payment_id}",
        status=status,
        amount=Decimal("84"),
        **extra,
    )


@pytest.fixture
def payments():
    return InMemoryPaymentRepository()


# =============================================================================
# STATUS MACHINE
# =============================================================================

def test_terminal_payment_statuses():
    assert PaymentStatus.REFUNDED.is_terminal
    assert PaymentStatus.CANCELLED.is_terminal
    assert not PaymentStatus.FAILED.is_terminal
    assert PaymentStatus.FAILED.can_transition_to(PaymentStatus.APPROVED)
    assert not PaymentStatus.COMPLETED.can_transition_to(PaymentStatus.FAILED)


def test_allowed_sources_never_widen():
    assert allowed_sources(PaymentStatus.REFUNDED) == {PaymentStatus.COMPLETED}
    assert allowed_sources(PaymentStatus.FAILED, [PaymentStatus.COMPLETED]) == frozenset()
    assert allowed_sources(PaymentStatus.FAILED, SETTLEABLE_STATUSES) == SETTLEABLE_STATUSES


# =============================================================================
# PAYMENTS
# =============================================================================

async def test_transition_is_conditional(payments):
    await payments.insert_if_no_active(make_payment())

    completed = await payments.transition("PAY-1", PaymentStatus.COMPLETED, {"transaction_id": "CAP-1"})
    assert completed.status == PaymentStatus.COMPLETED
    assert completed.transaction_id == "CAP-1"

    assert await payments.transition("PAY-1", PaymentStatus.COMPLETED) is None
    assert await payments.transition("PAY-1", PaymentStatus.FAILED) is None
    assert await payments.transition("PAY-MISSING", PaymentStatus.COMPLETED) is None


async def test_transition_respects_allowed_from(payments):
    await payments.insert_if_no_active(make_payment())
    assert await payments.transition("PAY-1", PaymentStatus.FAILED, allowed_from=[PaymentStatus.APPROVED]) is None
    failed = await payments.transition("PAY-1", PaymentStatus.FAILED, allowed_from=SETTLEABLE_STATUSES)
    assert failed.status == PaymentStatus.FAILED


async def test_one_active_payment_per_application(payments):
    assert await payments.insert_if_no_active(make_payment("PAY-1")) is None

    blocking = await payments.insert_if_no_active(make_payment("PAY-2"))
    assert blocking.payment_id == "PAY-1"

    await payments.transition("PAY-1", PaymentStatus.FAILED)
    assert await payments.insert_if_no_active(make_payment("PAY-2")) is None
    active = await payments.find_active("TUR-1")
    assert active.payment_id == "PAY-2"
    assert all(p.status in ACTIVE_STATUSES for p in [active])


async def test_returned_payments_are_copies(payments):
    await payments.insert_if_no_active(make_payment())
    fetched = await payments.get("PAY-1")
    fetched.metadata["mutated"] = True
    assert "mutated" not in (await payments.get("PAY-1")).metadata


async def test_lookups(payments):
    await payments.insert_if_no_active(make_payment("PAY-1", transaction_id="CAP-9"))
    assert (await payments.get_by_order("ORDER-PAY-1")).payment_id == "PAY-1"
    assert await payments.get_by_order("ORDER-PAY-1", "TUR-OTHER") is None
    assert (await payments.get_by_transaction("CAP-9")).payment_id == "PAY-1"


async def test_list_by_application_newest_first(payments):
    older = make_payment("PAY-OLD", status=PaymentStatus.FAILED, created_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
    newer = make_payment("PAY-NEW")
    await payments.insert_if_no_active(older)
    await payments.insert_if_no_active(newer)
    assert [p.payment_id for p in await payments.list_by_application("TUR-1")] == ["PAY-NEW", "PAY-OLD"]


async def test_webhook_events_deduplicated(payments):
    await payments.insert_if_no_active(make_payment())
    record = WebhookEventRecord(event_id="WH-1", event_type="PAYMENT.CAPTURE.COMPLETED")

    assert await payments.append_webhook_event("PAY-1", record) is True
    assert await payments.append_webhook_event("PAY-1", record) is False
    assert await payments.append_webhook_event("PAY-MISSING", record) is False
    assert len((await payments.get("PAY-1")).webhook_events) == 1


async def test_aggregate_by_status(payments):
    await payments.insert_if_no_active(make_payment("PAY-1", "TUR-1"))
    await payments.insert_if_no_active(make_payment("PAY-2", "TUR-2"))
    await payments.transition("PAY-2", PaymentStatus.COMPLETED)

    stats = await payments.aggregate_by_status()

    assert stats == {
        "pending": {"count": 1, "total_amount": Decimal("84")},
        "completed": {"count": 1, "total_amount": Decimal("84")},
    }


async def test_list_stale(payments):
    await payments.insert_if_no_active(make_payment("PAY-1", "TUR-1"))
    await payments.insert_if_no_active(make_payment("PAY-2", "TUR-2"))
    await payments.transition("PAY-2", PaymentStatus.COMPLETED)

    past = datetime.now(timezone.utc) - timedelta(hours=1)
    future = datetime.now(timezone.utc) + timedelta(seconds=5)

    assert await payments.list_stale(SETTLEABLE_STATUSES, older_than=past) == []
    stale = await payments.list_stale(SETTLEABLE_STATUSES, older_than=future)
    assert [p.payment_id for p in stale] == ["PAY-1"]


# =============================================================================
# APPLICATIONS
# =============================================================================

async def test_application_insert_and_transition():
    repo = InMemoryApplicationRepository()
    application = Application(
        application_id="TUR-1",
        passport_country="India",
        email="a@example.com",
        status=ApplicationStatus.SUBMITTED,
    )

    assert await repo.insert(application) is True
    assert await repo.insert(application) is False
    assert await repo.exists("TUR-1")

    paid = await repo.transition_status("TUR-1", ApplicationStatus.PAID)
    assert paid.status == ApplicationStatus.PAID
    assert await repo.transition_status("TUR-1", ApplicationStatus.PAID) is None
    assert await repo.transition_status("TUR-MISSING", ApplicationStatus.PAID) is None


# =============================================================================
# DEAD LETTER QUEUE
# =============================================================================

async def test_dead_letter_backoff_and_exhaustion():
    queue = InMemoryDeadLetterQueue(max_attempts=3)
    before = datetime.now(timezone.utc)

    first = await queue.enqueue("WH-1", "PAYMENT.CAPTURE.COMPLETED", {"id": "WH-1"}, "boom")
    assert first.attempt_count == 1
    assert first.is_retriable
    assert first.next_retry_at >= before + timedelta(seconds=30)

    second = await queue.enqueue("WH-1", "PAYMENT.CAPTURE.COMPLETED", {"id": "WH-1"}, "boom again")
    assert second.attempt_count == 2
    assert second.next_retry_at >= before + timedelta(seconds=60)
    assert second.last_error == "boom again"

    third = await queue.enqueue("WH-1", "PAYMENT.CAPTURE.COMPLETED", {"id": "WH-1"}, "still broken")
    assert third.status == DeadLetterStatus.EXHAUSTED
    assert not third.is_retriable
    assert await queue.get_due() == []
    assert await queue.get_stats() == {"total": 1, "pending": 0, "processed": 0, "exhausted": 1}


async def test_dead_letter_due_and_processed():
    queue = InMemoryDeadLetterQueue()
    await queue.enqueue("WH-1", "PAYMENT.CAPTURE.COMPLETED", {"id": "WH-1"}, "boom")
    assert await queue.get_due() == []

    queue._queue["WH-1"].next_retry_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    due = await queue.get_due()
    assert [e.event_id for e in due] == ["WH-1"]

    await queue.mark_processed("WH-1")
    assert await queue.get_due() == []
    assert (await queue.get_stats())["processed"] == 1
