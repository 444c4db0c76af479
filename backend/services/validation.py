# services/validation.py
# ============================================================================
# VISA COLLECT — DATE-DEPENDENT CHECKS
# ============================================================================
# Format rules live on the pydantic models; the checks here depend on "today"
# and are therefore run by the workflow with an injectable clock.
# ============================================================================

import re
from datetime import date
from typing import Any, Dict, List, Optional

from schemas.application import EMAIL_PATTERN, ApplicantDetails
from services.errors import ValidationError
from services.fees import is_supported_country


MIN_AGE_YEARS = 18
MAX_PASSPORT_VALIDITY_YEARS = 10

SUPPORTED_VISA_TYPE = "Electronic Visa"
SUPPORTED_DESTINATION = "Turkey"

_EMAIL_RE = re.compile(EMAIL_PATTERN)


def _add_years(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return day.replace(year=day.year + years, day=28)


def age_on(date_of_birth: date, today: date) -> int:
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def applicant_errors(applicant: ApplicantDetails, today: date, prefix: str = "") -> List[Dict[str, Any]]:
    """Collect every temporal rule the applicant breaks."""
    errors: List[Dict[str, Any]] = []

    def fail(field: str, message: str) -> None:
        errors.append({"field": f"{prefix}{field}", "message": message})

    if age_on(applicant.date_of_birth, today) < MIN_AGE_YEARS:
        fail("date_of_birth", "Applicant must be at least 18 years old")
    if applicant.passport_issue_date > today:
        fail("passport_issue_date", "Passport issue date cannot be in the future")
    if not (today < applicant.passport_expiry_date <= _add_years(today, MAX_PASSPORT_VALIDITY_YEARS)):
        fail(
            "passport_expiry_date",
            "Passport expiry date must be in the future and not more than 10 years from now",
        )
    if applicant.arrival_date < today:
        fail("arrival_date", "Arrival date must be today or in the future")
    return errors


def validate_applicant(applicant: ApplicantDetails, today: date, prefix: str = "") -> None:
    errors = applicant_errors(applicant, today, prefix)
    if errors:
        raise ValidationError("Validation failed", details=errors)


def validate_application_basics(
    passport_country: str,
    visa_type: Optional[str],
    destination: Optional[str],
    email: str,
) -> str:
    """Check start/update fields and return the normalised e-mail."""
    errors: List[Dict[str, Any]] = []
    if not passport_country or len(passport_country) > 100:
        errors.append({"field": "passport_country", "message": "Passport country is required"})
    elif not is_supported_country(passport_country):
        errors.append({
            "field": "passport_country",
            "message": "Selected country is not supported for e-visa application",
        })
    if (visa_type or SUPPORTED_VISA_TYPE) != SUPPORTED_VISA_TYPE:
        errors.append({"field": "visa_type", "message": "Only Electronic Visa is currently supported"})
    if (destination or SUPPORTED_DESTINATION) != SUPPORTED_DESTINATION:
        errors.append({"field": "destination", "message": "Destination must be Turkey"})

    normalised = (email or "").strip().lower()
    if not _EMAIL_RE.match(normalised):
        errors.append({"field": "email", "message": "Invalid email format"})

    if errors:
        raise ValidationError("Validation failed", details=errors)
    return normalised
