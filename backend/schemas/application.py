# schemas/application.py
# ============================================================================
# VISA COLLECT — APPLICATION SCHEMAS
# ============================================================================
# Application entity, applicant records, document sets and the closed
# workflow status machine.
# ============================================================================

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


NAME_PATTERN = r"^[a-zA-Z\s'-]+$"
PASSPORT_NUMBER_PATTERN = r"^[A-Z0-9]+$"
EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

MIN_STEP = 1
MAX_STEP = 4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# WORKFLOW STATUS
# =============================================================================

class ApplicationStatus(str, Enum):
    DRAFT = "draft"
    STARTED = "started"
    APPLICANT_DETAILS_COMPLETED = "applicant_details_completed"
    DOCUMENTS_COMPLETED = "documents_completed"
    SUBMITTED = "submitted"
    PAID = "paid"
    PROCESSING = "processing"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_transition_to(self, target: "ApplicationStatus") -> bool:
        return target in APPLICATION_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not APPLICATION_TRANSITIONS[self]

    @property
    def is_before_submission(self) -> bool:
        return self.rank < ApplicationStatus.SUBMITTED.rank


_STATUS_ORDER = list(ApplicationStatus)

# Re-entry of STARTED-era states is expressed as self transitions.
APPLICATION_TRANSITIONS: Dict[ApplicationStatus, FrozenSet[ApplicationStatus]] = {
    ApplicationStatus.DRAFT: frozenset({ApplicationStatus.STARTED}),
    ApplicationStatus.STARTED: frozenset({ApplicationStatus.APPLICANT_DETAILS_COMPLETED}),
    ApplicationStatus.APPLICANT_DETAILS_COMPLETED: frozenset({
        ApplicationStatus.APPLICANT_DETAILS_COMPLETED,
        ApplicationStatus.DOCUMENTS_COMPLETED,
    }),
    ApplicationStatus.DOCUMENTS_COMPLETED: frozenset({
        ApplicationStatus.DOCUMENTS_COMPLETED,
        ApplicationStatus.SUBMITTED,
    }),
    ApplicationStatus.SUBMITTED: frozenset({ApplicationStatus.PAID}),
    ApplicationStatus.PAID: frozenset({ApplicationStatus.PROCESSING}),
    ApplicationStatus.PROCESSING: frozenset({
        ApplicationStatus.APPROVED,
        ApplicationStatus.REJECTED,
    }),
    ApplicationStatus.APPROVED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
}


def application_sources_for(target: ApplicationStatus) -> FrozenSet[ApplicationStatus]:
    """All statuses from which ``target`` is a legal next status."""
    return frozenset(s for s, targets in APPLICATION_TRANSITIONS.items() if target in targets)


NEXT_STEP: Dict[ApplicationStatus, Optional[str]] = {
    ApplicationStatus.DRAFT: "start",
    ApplicationStatus.STARTED: "applicant-details",
    ApplicationStatus.APPLICANT_DETAILS_COMPLETED: "documents",
    ApplicationStatus.DOCUMENTS_COMPLETED: "add-applicant",
    ApplicationStatus.SUBMITTED: "payment",
    ApplicationStatus.PAID: None,
    ApplicationStatus.PROCESSING: None,
    ApplicationStatus.APPROVED: None,
    ApplicationStatus.REJECTED: None,
}


# =============================================================================
# DOCUMENTS
# =============================================================================

class SupportingDocument(BaseModel):
    """A visa or residence permit held by the applicant."""
    document_type: Literal["Visa", "Residence Permit"]
    issuing_country: str = Field(min_length=1, max_length=100)
    document_number: str = Field(min_length=1, max_length=50)
    expiry_date: Optional[date] = None
    is_unlimited: bool = False

    @field_validator("document_type", mode="before")
    @classmethod
    def normalise_type(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "visa":
                return "Visa"
            if lowered in ("residence permit", "residence-permit"):
                return "Residence Permit"
        return value

    @model_validator(mode="after")
    def expiry_xor_unlimited(self) -> "SupportingDocument":
        if self.is_unlimited == (self.expiry_date is not None):
            raise ValueError("Either provide a valid expiry date or mark as unlimited")
        return self


class UploadedFile(BaseModel):
    """Reference to a file already stored by the media service."""
    name: str = Field(min_length=1, max_length=100)
    url: str = Field(pattern=r"^https?://\S+$")
    public_id: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    size: Optional[int] = Field(default=None, ge=0)
    format: Optional[str] = None


class DocumentSet(BaseModel):
    passport_url: Optional[str] = None
    passport_public_id: Optional[str] = None
    supporting_documents: List[SupportingDocument] = Field(default_factory=list, max_length=5)
    additional_documents: List[UploadedFile] = Field(default_factory=list, max_length=10)

    @model_validator(mode="after")
    def at_least_one_document(self) -> "DocumentSet":
        if not self.supporting_documents and not self.additional_documents:
            raise ValueError("At least one document (supporting or additional) is required")
        return self


# =============================================================================
# APPLICANTS
# =============================================================================

class ApplicantDetails(BaseModel):
    """Personal and passport fields of one applicant."""
    given_names: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    surname: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    date_of_birth: date
    place_of_birth: str = Field(min_length=1, max_length=100)
    mother_name: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    father_name: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    passport_number: str = Field(min_length=1, max_length=20, pattern=PASSPORT_NUMBER_PATTERN)
    passport_issue_date: date
    passport_expiry_date: date
    arrival_date: date

    @field_validator("passport_number", mode="before")
    @classmethod
    def upper_passport(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value


class Applicant(ApplicantDetails):
    documents: Optional[DocumentSet] = None


class AdditionalApplicant(ApplicantDetails):
    """Additional applicants carry their documents from the start."""
    documents: DocumentSet


# =============================================================================
# APPLICATION
# =============================================================================

class Application(BaseModel):
    application_id: str
    passport_country: str
    travel_document: Optional[str] = None
    visa_type: str = "Electronic Visa"
    destination: str = "Turkey"
    email: str

    main_applicant: Optional[Applicant] = None
    additional_applicants: List[AdditionalApplicant] = Field(default_factory=list)

    status: ApplicationStatus = ApplicationStatus.DRAFT
    current_step: int = Field(default=MIN_STEP, ge=MIN_STEP, le=MAX_STEP)

    visa_fee: Decimal = Decimal("0")
    service_fee: Decimal = Decimal("35")
    total_fee: Optional[Decimal] = None

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    submitted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def total_applicants(self) -> int:
        return 1 + len(self.additional_applicants)

    @property
    def has_documents(self) -> bool:
        return self.main_applicant is not None and self.main_applicant.documents is not None

    def advance(self, status: ApplicationStatus, step: Optional[int] = None) -> "Application":
        """Return a copy moved to ``status``; the step never moves backwards."""
        if not self.status.can_transition_to(status):
            raise ValueError(f"Illegal application transition {self.status.value} -> {status.value}")
        new_step = self.current_step if step is None else max(self.current_step, step)
        return self.model_copy(update={
            "status": status,
            "current_step": min(new_step, MAX_STEP),
            "updated_at": utcnow(),
        })

    def public_view(self) -> dict:
        """Application fields without internal request metadata."""
        return self.model_dump(exclude={"ip_address", "user_agent"})
