# services/application_workflow.py
# ============================================================================
# VISA COLLECT — APPLICATION WORKFLOW
# ============================================================================
# Drives one application through the ordered intake steps:
#
#   draft -> started -> applicant_details_completed -> documents_completed
#         -> submitted -> paid -> processing -> approved | rejected
#
# Step index: 1 start, 3 applicant details (step 2 is folded into it),
# 4 documents. The index never decreases.
# ============================================================================

import secrets
import string
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Tuple

import structlog

from schemas.application import (
    AdditionalApplicant,
    Applicant,
    ApplicantDetails,
    Application,
    ApplicationStatus,
    DocumentSet,
)
from services.errors import InvalidState, NotFound, ResourceExhausted, Unauthorized
from services.fees import calculate_total_fee, get_fee_schedule
from services.notifications import (
    APPLICATION_STARTED,
    APPLICATION_SUBMITTED,
    NotificationDispatcher,
)
from services.validation import validate_applicant, validate_application_basics
from storage.repositories import ApplicationRepository

logger = structlog.get_logger().bind(component="application_workflow")


APPLICATION_ID_PREFIX = "TUR-"
APPLICATION_ID_ALPHABET = string.ascii_uppercase + string.digits
APPLICATION_ID_LENGTH = 8
MAX_ID_ATTEMPTS = 10

STEP_START = 1
STEP_APPLICANT_DETAILS = 3
STEP_DOCUMENTS = 4

DOCUMENT_STATUSES = (
    ApplicationStatus.APPLICANT_DETAILS_COMPLETED,
    ApplicationStatus.DOCUMENTS_COMPLETED,
)


def generate_application_id() -> str:
    suffix = "".join(secrets.choice(APPLICATION_ID_ALPHABET) for _ in range(APPLICATION_ID_LENGTH))
    return f"{APPLICATION_ID_PREFIX}{suffix}"


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class ApplicationWorkflow:
    """Owns the application state machine and its persistence."""

    def __init__(
        self,
        repository: ApplicationRepository,
        notifications: Optional[NotificationDispatcher] = None,
        today: Callable[[], date] = utc_today,
        id_generator: Callable[[], str] = generate_application_id,
        max_id_attempts: int = MAX_ID_ATTEMPTS,
    ):
        self.repository = repository
        self.notifications = notifications or NotificationDispatcher()
        self._today = today
        self._id_generator = id_generator
        self._max_id_attempts = max_id_attempts

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    async def get(self, application_id: str) -> Application:
        application = await self.repository.get(application_id)
        if application is None:
            raise NotFound("Application not found")
        return application

    async def get_for_owner(self, application_id: str, email: Optional[str] = None) -> Application:
        """Fetch an application, checking the e-mail when one is supplied."""
        application = await self.get(application_id)
        if email and application.email != email.strip().lower():
            logger.warning("application_email_mismatch", application_id=application_id)
            raise Unauthorized("Unauthorized access to application")
        return application

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    async def _insert_with_new_id(self, **fields) -> Application:
        for _ in range(self._max_id_attempts):
            candidate = self._id_generator()
            if await self.repository.exists(candidate):
                continue
            application = Application(application_id=candidate, **fields)
            if await self.repository.insert(application):
                return application
        logger.error("application_id_exhausted", attempts=self._max_id_attempts)
        raise ResourceExhausted("Unable to generate unique application ID")

    async def start(
        self,
        passport_country: str,
        email: str,
        visa_type: Optional[str] = None,
        destination: Optional[str] = None,
        travel_document: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Application:
        email = validate_application_basics(passport_country, visa_type, destination, email)
        schedule = get_fee_schedule(passport_country)
        if schedule is None:
            raise NotFound(f"Visa fee information not available for {passport_country}")

        application = await self._insert_with_new_id(
            passport_country=passport_country,
            travel_document=travel_document,
            email=email,
            status=ApplicationStatus.STARTED,
            current_step=STEP_START,
            visa_fee=schedule.visa_fee,
            service_fee=schedule.service_fee,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        logger.info(
            "application_started",
            application_id=application.application_id,
            passport_country=passport_country,
        )
        self.notifications.dispatch(APPLICATION_STARTED, {
            "application_id": application.application_id,
            "email": email,
            "passport_country": passport_country,
            "visa_type": application.visa_type,
            "destination": application.destination,
        })
        return application

    async def update_application(
        self,
        application_id: str,
        passport_country: str,
        email: str,
        visa_type: Optional[str] = None,
        destination: Optional[str] = None,
        travel_document: Optional[str] = None,
    ) -> Application:
        application = await self.get(application_id)
        self._require_before_submission(application)
        email = validate_application_basics(passport_country, visa_type, destination, email)

        changes = {
            "passport_country": passport_country,
            "email": email,
            "travel_document": travel_document,
        }
        if passport_country != application.passport_country:
            schedule = get_fee_schedule(passport_country)
            if schedule is None:
                raise NotFound(f"Visa fee information not available for {passport_country}")
            changes.update(visa_fee=schedule.visa_fee, service_fee=schedule.service_fee)

        saved = await self.repository.save(application.model_copy(update=changes))
        logger.info("application_updated", application_id=application_id)
        return saved

    # -------------------------------------------------------------------------
    # Main applicant
    # -------------------------------------------------------------------------

    async def save_applicant_details(self, application_id: str, details: ApplicantDetails) -> Application:
        application = await self.get(application_id)
        if application.status not in (ApplicationStatus.STARTED, ApplicationStatus.APPLICANT_DETAILS_COMPLETED):
            raise InvalidState("Application is not in the correct state for this operation")
        validate_applicant(details, self._today())

        advanced = application.advance(ApplicationStatus.APPLICANT_DETAILS_COMPLETED, step=STEP_APPLICANT_DETAILS)
        advanced = advanced.model_copy(update={"main_applicant": Applicant(**details.model_dump())})
        saved = await self.repository.save(advanced)
        logger.info("applicant_details_saved", application_id=application_id, step=saved.current_step)
        return saved

    async def update_applicant_details(self, application_id: str, details: ApplicantDetails) -> Application:
        """Replace main applicant fields, keeping documents and status."""
        application = await self.get(application_id)
        if application.main_applicant is None:
            raise InvalidState("No applicant details found to update")
        self._require_before_submission(application)
        validate_applicant(details, self._today())

        applicant = Applicant(**details.model_dump(), documents=application.main_applicant.documents)
        saved = await self.repository.save(application.model_copy(update={"main_applicant": applicant}))
        logger.info("applicant_details_updated", application_id=application_id)
        return saved

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    async def register_documents(self, application_id: str, documents: DocumentSet) -> Application:
        application = await self.get(application_id)
        if application.main_applicant is None or application.status not in DOCUMENT_STATUSES:
            raise InvalidState("Please complete applicant details first")

        advanced = application.advance(ApplicationStatus.DOCUMENTS_COMPLETED, step=STEP_DOCUMENTS)
        main = application.main_applicant.model_copy(update={"documents": documents})
        saved = await self.repository.save(advanced.model_copy(update={"main_applicant": main}))
        logger.info(
            "documents_registered",
            application_id=application_id,
            supporting=len(documents.supporting_documents),
            additional=len(documents.additional_documents),
        )
        return saved

    async def update_documents(self, application_id: str, documents: DocumentSet) -> Application:
        """Idempotent replacement of the main applicant's documents."""
        application = await self.get(application_id)
        if not application.has_documents:
            raise InvalidState("No documents found to update")
        self._require_before_submission(application)

        main = application.main_applicant.model_copy(update={"documents": documents})
        saved = await self.repository.save(application.model_copy(update={"main_applicant": main}))
        logger.info("documents_updated", application_id=application_id)
        return saved

    # -------------------------------------------------------------------------
    # Additional applicants
    # -------------------------------------------------------------------------

    def _require_documents_completed(self, application: Application):
        if application.status != ApplicationStatus.DOCUMENTS_COMPLETED:
            raise InvalidState("Please complete main applicant documents first")

    @staticmethod
    def _require_before_submission(application: Application):
        if not application.status.is_before_submission:
            raise InvalidState("Application can no longer be modified")

    @staticmethod
    def _check_index(application: Application, index: int):
        if index < 0 or index >= len(application.additional_applicants):
            raise NotFound("Applicant not found at specified index")

    async def add_applicant(self, application_id: str, applicant: AdditionalApplicant) -> Application:
        application = await self.get(application_id)
        self._require_documents_completed(application)
        validate_applicant(applicant, self._today(), prefix="applicant.")

        applicants: List[AdditionalApplicant] = [*application.additional_applicants, applicant]
        saved = await self.repository.save(application.model_copy(update={"additional_applicants": applicants}))
        logger.info("applicant_added", application_id=application_id, total=saved.total_applicants)
        return saved

    async def update_applicant(self, application_id: str, index: int, applicant: AdditionalApplicant) -> Application:
        application = await self.get(application_id)
        self._require_documents_completed(application)
        self._check_index(application, index)
        validate_applicant(applicant, self._today(), prefix="applicant.")

        applicants = list(application.additional_applicants)
        applicants[index] = applicant
        saved = await self.repository.save(application.model_copy(update={"additional_applicants": applicants}))
        logger.info("applicant_updated", application_id=application_id, index=index)
        return saved

    async def remove_applicant(self, application_id: str, index: int) -> Tuple[Application, AdditionalApplicant]:
        application = await self.get(application_id)
        self._require_documents_completed(application)
        self._check_index(application, index)

        applicants = list(application.additional_applicants)
        removed = applicants.pop(index)
        saved = await self.repository.save(application.model_copy(update={"additional_applicants": applicants}))
        logger.info("applicant_removed", application_id=application_id, index=index)
        return saved, removed

    # -------------------------------------------------------------------------
    # Submission and payment
    # -------------------------------------------------------------------------

    async def submit(self, application_id: str) -> Application:
        application = await self.get(application_id)
        if application.status != ApplicationStatus.DOCUMENTS_COMPLETED:
            raise InvalidState("Application is not ready for submission")
        if not application.has_documents:
            raise InvalidState("Main applicant information is incomplete")

        total_fee = calculate_total_fee(
            application.visa_fee,
            application.service_fee,
            len(application.additional_applicants),
        )
        submitted = application.advance(ApplicationStatus.SUBMITTED).model_copy(update={
            "total_fee": total_fee,
            "submitted_at": datetime.now(timezone.utc),
        })
        saved = await self.repository.save(submitted)
        logger.info(
            "application_submitted",
            application_id=application_id,
            total_applicants=saved.total_applicants,
            total_fee=str(total_fee),
        )
        self.notifications.dispatch(APPLICATION_SUBMITTED, {
            "application_id": application_id,
            "email": saved.email,
            "total_applicants": saved.total_applicants,
            "total_fee": str(total_fee),
        })
        return saved

    async def mark_paid(self, application_id: str) -> Optional[Application]:
        """Advance submitted -> paid. None when the application is not submitted."""
        paid = await self.repository.transition_status(application_id, ApplicationStatus.PAID)
        if paid is None:
            logger.info("mark_paid_skipped", application_id=application_id)
            return None
        logger.info("application_paid", application_id=application_id)
        return paid
