# services/notifications.py
# ============================================================================
# VISA COLLECT — NOTIFICATIONS
# ============================================================================
# Best-effort side effects. Events are published after the state change has
# been persisted, on their own task, so a broken broker or mail consumer can
# never fail or roll back the request that triggered them.
#
# Consumers on the exchange render and send the actual e-mails.
# ============================================================================

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import aio_pika
import structlog

logger = structlog.get_logger().bind(component="notifications")


APPLICATION_STARTED = "application.started"
APPLICATION_SUBMITTED = "application.submitted"
PAYMENT_COMPLETED = "payment.completed"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"


class Notifier(ABC):
    @abstractmethod
    async def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        pass

    async def close(self):
        pass


class LoggingNotifier(Notifier):
    """Writes events to the structured log only."""

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        logger.info("notification_logged", event_type=event_type, **payload)
        return True


class EventBusNotifier(Notifier):
    """Publishes events to a RabbitMQ topic exchange, falling back to logs."""

    def __init__(self, url: str, exchange_name: str = "visa_collect"):
        self.url = url
        self.exchange_name = exchange_name
        self._connection = None
        self._channel = None
        self._exchange = None
        self._fallback = LoggingNotifier()

    @property
    def is_connected(self) -> bool:
        return self._exchange is not None

    async def initialize(self) -> bool:
        try:
            self._connection = await aio_pika.connect_robust(self.url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                self.exchange_name,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
            logger.info("rabbitmq_connected", exchange=self.exchange_name)
            return True
        except Exception as e:
            logger.warning("rabbitmq_unavailable", error=str(e))
            self._exchange = None
            return False

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        if not self.is_connected:
            logger.warning("event_not_published", reason="rabbitmq_not_connected", event_type=event_type)
            return await self._fallback.publish(event_type, payload)

        message = aio_pika.Message(
            body=json.dumps({
                "event_type": event_type,
                "payload": payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }, default=str).encode(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await self._exchange.publish(message, routing_key=event_type)
        logger.info("event_published", event_type=event_type)
        return True

    async def close(self):
        if self._connection:
            await self._connection.close()
            self._connection = None
            self._exchange = None


class NotificationDispatcher:
    """
    Fire-and-forget front for a Notifier.

    Each dispatch runs on its own task; failures are logged from the task's
    done callback and never reach the caller.
    """

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or LoggingNotifier()
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, event_type: str, payload: Dict[str, Any]) -> asyncio.Task:
        task = asyncio.create_task(self.notifier.publish(event_type, payload))
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, event_type))
        return task

    def _on_done(self, task: asyncio.Task, event_type: str):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("notification_failed", event_type=event_type, error=str(error))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        await self.drain()
        await self.notifier.close()
