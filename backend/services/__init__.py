# services/__init__.py
# ============================================================================
# VISA COLLECT — SERVICES MODULE
# ============================================================================
# Workflow, payment orchestration, webhook processing and notifications.
# Only the dependency-free pieces are re-exported here; import the service
# classes from their own modules.
# ============================================================================

from services.errors import (
    Conflict,
    GatewayAuthError,
    GatewayError,
    InvalidState,
    NotFound,
    ResourceExhausted,
    Unauthorized,
    ValidationError,
    VisaServiceError,
    WebhookVerificationFailed,
)

from services.fees import (
    FeeSchedule,
    calculate_total_fee,
    get_fee_schedule,
    get_supported_countries,
)

__all__ = [
    # Errors
    "VisaServiceError",
    "ValidationError",
    "NotFound",
    "Conflict",
    "InvalidState",
    "Unauthorized",
    "WebhookVerificationFailed",
    "GatewayError",
    "GatewayAuthError",
    "ResourceExhausted",
    # Fees
    "FeeSchedule",
    "calculate_total_fee",
    "get_fee_schedule",
    "get_supported_countries",
]
