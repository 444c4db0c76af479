# api/container.py
# ============================================================================
# VISA COLLECT — SERVICE CONTAINER
# ============================================================================
# Wires repositories, the PayPal gateway, notifications and the three
# domain services together. Tests build one with in-memory storage and a
# fake PayPal transport; the server builds one from environment config.
# ============================================================================

from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

from fastapi import Request

from gateway.paypal import PayPalGateway
from services.application_workflow import ApplicationWorkflow, utc_today
from services.notifications import EventBusNotifier, NotificationDispatcher, Notifier
from services.payment_orchestrator import PaymentOrchestrator
from services.webhook_processor import WebhookProcessor
from storage.repositories import (
    ApplicationRepository,
    DeadLetterQueue,
    InMemoryApplicationRepository,
    InMemoryDeadLetterQueue,
    InMemoryPaymentRepository,
    PaymentRepository,
)


@dataclass
class ServiceContainer:
    applications: ApplicationRepository
    payments: PaymentRepository
    dead_letters: DeadLetterQueue
    gateway: PayPalGateway
    notifications: NotificationDispatcher
    workflow: ApplicationWorkflow
    orchestrator: PaymentOrchestrator
    webhooks: WebhookProcessor
    storage_backend: str = "memory"

    @classmethod
    def build(
        cls,
        applications: Optional[ApplicationRepository] = None,
        payments: Optional[PaymentRepository] = None,
        dead_letters: Optional[DeadLetterQueue] = None,
        gateway: Optional[PayPalGateway] = None,
        notifier: Optional[Notifier] = None,
        today: Callable[[], date] = utc_today,
        storage_backend: str = "memory",
    ) -> "ServiceContainer":
        applications = applications or InMemoryApplicationRepository()
        payments = payments or InMemoryPaymentRepository()
        dead_letters = dead_letters or InMemoryDeadLetterQueue()
        gateway = gateway or PayPalGateway()
        notifications = NotificationDispatcher(notifier)

        workflow = ApplicationWorkflow(applications, notifications, today=today)
        orchestrator = PaymentOrchestrator(payments, workflow, gateway, notifications)
        webhooks = WebhookProcessor(orchestrator, gateway, dead_letters)

        return cls(
            applications=applications,
            payments=payments,
            dead_letters=dead_letters,
            gateway=gateway,
            notifications=notifications,
            workflow=workflow,
            orchestrator=orchestrator,
            webhooks=webhooks,
            storage_backend=storage_backend,
        )

    @classmethod
    def from_config(cls, storage_backend: str, rabbitmq_url: str = "", exchange: str = "visa_collect") -> "ServiceContainer":
        if storage_backend == "postgres":
            from database import PostgresApplicationRepository, PostgresPaymentRepository

            applications, payments = PostgresApplicationRepository(), PostgresPaymentRepository()
        else:
            applications, payments = InMemoryApplicationRepository(), InMemoryPaymentRepository()

        notifier = EventBusNotifier(rabbitmq_url, exchange) if rabbitmq_url else None
        return cls.build(
            applications=applications,
            payments=payments,
            notifier=notifier,
            storage_backend=storage_backend,
        )

    @property
    def event_bus(self) -> Optional[EventBusNotifier]:
        notifier = self.notifications.notifier
        return notifier if isinstance(notifier, EventBusNotifier) else None

    async def close(self):
        await self.notifications.close()
        await self.gateway.close()


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency; the container lives on app.state."""
    return request.app.state.container
