# gateway/__init__.py
# ============================================================================
# VISA COLLECT — PAYMENT GATEWAY MODULE
# ============================================================================

from gateway.paypal import (
    PayPalConfig,
    PayPalGateway,
    AccessToken,
    WebhookSignature,
    generate_idempotency_key,
    is_valid_amount,
    is_valid_currency,
)

__all__ = [
    "PayPalConfig",
    "PayPalGateway",
    "AccessToken",
    "WebhookSignature",
    "generate_idempotency_key",
    "is_valid_amount",
    "is_valid_currency",
]
