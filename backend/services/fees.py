# services/fees.py
# ============================================================================
# VISA COLLECT — FEE SCHEDULES
# ============================================================================
# Static per-country e-visa fee table and the total fee formula:
#     total = (visa_fee + service_fee) x (1 + additional_applicants)
# ============================================================================

from decimal import Decimal
from typing import Dict, List, Optional, Union

from pydantic import BaseModel


DEFAULT_SERVICE_FEE = Decimal("35")

Number = Union[int, float, str, Decimal]


class FeeSchedule(BaseModel):
    country: str
    visa_fee: Decimal
    service_fee: Decimal = DEFAULT_SERVICE_FEE
    duration: str = "30 Days"
    number_of_entries: str = "Single-Entry"
    currency: str = "USD"
    is_active: bool = True

    @property
    def per_applicant(self) -> Decimal:
        return self.visa_fee + self.service_fee


def _schedule(country: str, visa_fee: int, duration: str = "30 Days", entries: str = "Single-Entry") -> FeeSchedule:
    return FeeSchedule(
        country=country,
        visa_fee=Decimal(visa_fee),
        duration=duration,
        number_of_entries=entries,
    )


_MULTI = "Multiple-Entry"

FEE_TABLE: Dict[str, FeeSchedule] = {s.country: s for s in [
    _schedule("Afghanistan", 66),
    _schedule("Algeria", 56),
    _schedule("Antigua and Barbuda", 46, "90 Days", _MULTI),
    _schedule("Armenia", 36, "30 Days", _MULTI),
    _schedule("Australia", 66, "90 Days", _MULTI),
    _schedule("Bahamas", 26, "90 Days", _MULTI),
    _schedule("Bangladesh", 66),
    _schedule("Barbados", 26, "30 Days", _MULTI),
    _schedule("Bermuda", 26, "90 Days", _MULTI),
    _schedule("Bhutan", 46),
    _schedule("Cambodia", 46),
    _schedule("Cape Verde", 66),
    _schedule("China", 66, "90 Days", _MULTI),
    _schedule("Dominican Republic", 46, "90 Days", _MULTI),
    _schedule("East Timor", 46),
    _schedule("Egypt", 36),
    _schedule("Equatorial Guinea", 66),
    _schedule("Fiji", 26),
    _schedule("Greek Cypriot Administration of Southern Cyprus", 46),
    _schedule("Grenada", 66, "90 Days", _MULTI),
    _schedule("Hong Kong (BN(O))", 36, "90 Days", _MULTI),
    _schedule("India", 49),
    _schedule("Iraq", 0),
    _schedule("Jamaica", 26, "90 Days", _MULTI),
    _schedule("Libya", 66),
    _schedule("Maldives", 26, "90 Days", _MULTI),
    _schedule("Mauritius", 26, "30 Days", _MULTI),
    _schedule("Mexico", 0),
    _schedule("Namibia", 96),
    _schedule("Nepal", 36),
    _schedule("Pakistan", 66),
    _schedule("Palestine", 26),
    _schedule("Philippines", 26),
    _schedule("Saint Lucia", 26, "90 Days", _MULTI),
    _schedule("Saint Vincent and the Grenadines", 46, "90 Days", _MULTI),
    _schedule("Senegal", 46),
    _schedule("Solomon Islands", 46),
    _schedule("South Africa", 0, "30 Days", _MULTI),
    _schedule("Sri Lanka", 41),
    _schedule("Suriname", 51),
    _schedule("Taiwan", 0, "30 Days", _MULTI),
    _schedule("Vanuatu", 26),
    _schedule("Vietnam", 51),
    _schedule("Yemen", 66),
]}


def get_supported_countries() -> List[str]:
    return sorted(FEE_TABLE)


def is_supported_country(country: str) -> bool:
    return country in FEE_TABLE


def get_fee_schedule(country: str) -> Optional[FeeSchedule]:
    schedule = FEE_TABLE.get(country)
    if schedule is None or not schedule.is_active:
        return None
    return schedule


def list_fee_schedules() -> List[FeeSchedule]:
    return [FEE_TABLE[c] for c in get_supported_countries() if FEE_TABLE[c].is_active]


def calculate_total_fee(visa_fee: Number, service_fee: Number, additional_applicants: int = 0) -> Decimal:
    """
    Total fee for one application.

    Pure and deterministic; e.g. visa 49, service 35 and two additional
    applicants gives (49 + 35) x 3 = 252.
    """
    if additional_applicants < 0:
        raise ValueError("additional_applicants cannot be negative")
    per_applicant = Decimal(str(visa_fee)) + Decimal(str(service_fee))
    return per_applicant * (1 + additional_applicants)
