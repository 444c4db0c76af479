"""
Reconciliation Loop - Stale Payment Safety Net
==============================================
Background task that finds payments stuck before settlement and asks
PayPal what really happened to their orders.

Features:
- Runs every RECONCILIATION_INTERVAL seconds (default 5 minutes)
- Picks PENDING / CREATED / APPROVED payments untouched for longer than
  RECONCILIATION_THRESHOLD minutes
- Settles orders PayPal reports COMPLETED, cancels VOIDED ones
- Retries webhook events parked in the dead letter queue
"""

import os
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import structlog

from schemas.payment import SETTLEABLE_STATUSES
from services.payment_orchestrator import PaymentOrchestrator
from services.webhook_processor import WebhookProcessor

# Configure logger
logger = structlog.get_logger().bind(component="reconciliation")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ReconciliationConfig:
    """Reconciliation loop configuration"""

    # How often to look for stale payments (seconds)
    CHECK_INTERVAL = int(os.getenv("RECONCILIATION_INTERVAL", "300"))

    # How long before a payment is considered stale (minutes)
    STALE_THRESHOLD = int(os.getenv("RECONCILIATION_THRESHOLD", "30"))

    # Maximum payments to reconcile per cycle
    MAX_PAYMENTS_PER_CYCLE = int(os.getenv("RECONCILIATION_BATCH_SIZE", "20"))

    ENABLED = os.getenv("RECONCILIATION_ENABLED", "false").lower() == "true"


config = ReconciliationConfig()


# =============================================================================
# RECONCILIATION LOGIC
# =============================================================================

async def reconcile_once(
    orchestrator: PaymentOrchestrator,
    webhooks: Optional[WebhookProcessor] = None,
    threshold_minutes: Optional[int] = None,
    limit: Optional[int] = None,
) -> Dict[str, int]:
    """
    Run one reconciliation cycle.

    Returns counters per outcome; a gateway failure on one payment is
    counted as an error and does not stop the cycle.
    """
    threshold = threshold_minutes if threshold_minutes is not None else config.STALE_THRESHOLD
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=threshold)
    stale = await orchestrator.payments.list_stale(
        SETTLEABLE_STATUSES,
        older_than=cutoff,
        limit=limit or config.MAX_PAYMENTS_PER_CYCLE,
    )

    counts = {"checked": 0, "settled": 0, "cancelled": 0, "unchanged": 0, "errors": 0}
    if stale:
        logger.warning("stale_payments_found", count=len(stale))

    for payment in stale:
        counts["checked"] += 1
        try:
            action = await orchestrator.reconcile(payment)
        except Exception as e:
            counts["errors"] += 1
            logger.error(
                "reconciliation_failed",
                payment_id=payment.payment_id,
                order_id=payment.order_id,
                error=str(e),
            )
            continue
        counts[action] += 1
        if action != "unchanged":
            logger.info("payment_reconciled", payment_id=payment.payment_id, action=action)

    if webhooks is not None:
        retried = await webhooks.retry_dead_letters()
        counts["dead_letters_retried"] = retried["retried"]

    return counts


async def reconciliation_loop(orchestrator: PaymentOrchestrator, webhooks: Optional[WebhookProcessor] = None):
    """Background task; cancel it to stop."""
    logger.info(
        "reconciliation_loop_started",
        interval=config.CHECK_INTERVAL,
        threshold=config.STALE_THRESHOLD,
    )

    while True:
        try:
            counts = await reconcile_once(orchestrator, webhooks)
            if counts["checked"]:
                logger.info("reconciliation_cycle_complete", **counts)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("reconciliation_loop_error", error=str(e))

        await asyncio.sleep(config.CHECK_INTERVAL)
