# services/errors.py
# ============================================================================
# VISA COLLECT — ERROR TAXONOMY
# ============================================================================
# Every error raised by the workflow, payment and webhook services derives
# from VisaServiceError. The API layer renders them into the response
# envelope; only operational errors expose their message to the client.
# ============================================================================

from typing import Any, Dict, List, Optional


class VisaServiceError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"
    is_operational: bool = True
    public_message: str = "Something went wrong!"

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def client_message(self) -> str:
        return self.message if self.is_operational else self.public_message


class ValidationError(VisaServiceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFound(VisaServiceError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(VisaServiceError):
    status_code = 400
    code = "CONFLICT"


class InvalidState(VisaServiceError):
    status_code = 400
    code = "INVALID_STATE"


class Unauthorized(VisaServiceError):
    status_code = 403
    code = "FORBIDDEN"


class WebhookVerificationFailed(VisaServiceError):
    status_code = 400
    code = "WEBHOOK_VERIFICATION_FAILED"


class GatewayError(VisaServiceError):
    """Payment gateway call failed or returned an unexpected shape."""

    status_code = 500
    code = "GATEWAY_ERROR"
    is_operational = False
    public_message = "Payment gateway error. Please try again later."

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        issue: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.http_status = http_status
        self.issue = issue
        self.payload = payload or {}


class GatewayAuthError(GatewayError):
    """Credentials missing or rejected by the gateway."""


class ResourceExhausted(VisaServiceError):
    status_code = 500
    code = "RESOURCE_EXHAUSTED"
    is_operational = False
