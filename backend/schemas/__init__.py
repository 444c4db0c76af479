# schemas/__init__.py
from schemas.application import Application, ApplicationStatus
from schemas.payment import Payment, PaymentStatus

__all__ = [
    "Application",
    "ApplicationStatus",
    "Payment",
    "PaymentStatus",
]
