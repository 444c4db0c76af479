# api/visa_routes.py
# ============================================================================
# VISA COLLECT — APPLICATION ENDPOINTS
# ============================================================================
# Mounted under {API_PREFIX}/turkey.
# ============================================================================

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from api.container import ServiceContainer, get_container
from api.responses import success
from schemas.application import (
    NEXT_STEP,
    AdditionalApplicant,
    ApplicantDetails,
    ApplicationStatus,
    DocumentSet,
)
from services.errors import NotFound
from services.fees import get_fee_schedule, get_supported_countries, list_fee_schedules

router = APIRouter(prefix="/turkey", tags=["applications"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class StartApplicationRequest(BaseModel):
    passport_country: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=1, max_length=255)
    visa_type: Optional[str] = None
    destination: Optional[str] = None
    travel_document: Optional[str] = Field(default=None, max_length=100)


class ApplicantDetailsRequest(BaseModel):
    application_id: str = Field(..., min_length=1)
    applicant_details: ApplicantDetails


class DocumentsRequest(BaseModel):
    application_id: str = Field(..., min_length=1)
    documents: DocumentSet


class AddApplicantRequest(BaseModel):
    application_id: str = Field(..., min_length=1)
    applicant: AdditionalApplicant


class SubmitRequest(BaseModel):
    application_id: str = Field(..., min_length=1)


class UpdateApplicantDetailsRequest(BaseModel):
    applicant_details: ApplicantDetails


class UpdateDocumentsRequest(BaseModel):
    documents: DocumentSet


class UpdateApplicantRequest(BaseModel):
    applicant: AdditionalApplicant


# =============================================================================
# REFERENCE DATA
# =============================================================================

@router.get("/visa-fee")
async def visa_fee(country: Optional[str] = Query(default=None)):
    if country:
        schedule = get_fee_schedule(country)
        if schedule is None:
            raise NotFound(f"Visa fee not found for country: {country}")
        return success(schedule.model_dump(), count=1)
    schedules = [s.model_dump() for s in list_fee_schedules()]
    return success(schedules, count=len(schedules))


@router.get("/countries")
async def countries():
    names = get_supported_countries()
    return success(names, count=len(names))


# =============================================================================
# WORKFLOW STEPS
# =============================================================================

@router.post("/start", status_code=201)
async def start_application(
    body: StartApplicationRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    application = await container.workflow.start(
        passport_country=body.passport_country,
        email=body.email,
        visa_type=body.visa_type,
        destination=body.destination,
        travel_document=body.travel_document,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return success(
        {
            "application_id": application.application_id,
            "email": application.email,
            "status": application.status.value,
            "current_step": application.current_step,
            "next_step": NEXT_STEP[application.status],
            "estimated_total_fee": application.visa_fee + application.service_fee,
        },
        message="Application started successfully",
        status_code=201,
    )


@router.post("/applicant-details")
async def save_applicant_details(body: ApplicantDetailsRequest, container: ServiceContainer = Depends(get_container)):
    application = await container.workflow.save_applicant_details(body.application_id, body.applicant_details)
    return success(
        {
            "application_id": application.application_id,
            "status": application.status.value,
            "current_step": application.current_step,
            "next_step": NEXT_STEP[application.status],
        },
        message="Applicant details saved successfully",
    )


@router.post("/documents")
async def register_documents(body: DocumentsRequest, container: ServiceContainer = Depends(get_container)):
    application = await container.workflow.register_documents(body.application_id, body.documents)
    return success(
        {
            "application_id": application.application_id,
            "status": application.status.value,
            "current_step": application.current_step,
            "next_step": NEXT_STEP[application.status],
        },
        message="Documents uploaded successfully",
    )


@router.post("/add-applicant")
async def add_applicant(body: AddApplicantRequest, container: ServiceContainer = Depends(get_container)):
    application = await container.workflow.add_applicant(body.application_id, body.applicant)
    return success(
        {
            "application_id": application.application_id,
            "total_applicants": application.total_applicants,
            "status": application.status.value,
            "current_step": application.current_step,
        },
        message="Additional applicant added successfully",
    )


@router.post("/submit")
async def submit_application(body: SubmitRequest, container: ServiceContainer = Depends(get_container)):
    application = await container.workflow.submit(body.application_id)
    return success(
        {
            "application_id": application.application_id,
            "status": ApplicationStatus.SUBMITTED.value,
            "total_applicants": application.total_applicants,
            "total_fee": application.total_fee,
            "submitted_at": application.submitted_at,
        },
        message="Application submitted successfully",
    )


@router.get("/application/{application_id}")
async def get_application(
    application_id: str,
    email: Optional[str] = Query(default=None),
    container: ServiceContainer = Depends(get_container),
):
    application = await container.workflow.get_for_owner(application_id, email)
    return success(application.public_view())


# =============================================================================
# UPDATES (before submission)
# =============================================================================

@router.put("/application/{application_id}")
async def update_application(
    application_id: str,
    body: StartApplicationRequest,
    container: ServiceContainer = Depends(get_container),
):
    application = await container.workflow.update_application(
        application_id,
        passport_country=body.passport_country,
        email=body.email,
        visa_type=body.visa_type,
        destination=body.destination,
        travel_document=body.travel_document,
    )
    return success(
        {
            "application_id": application.application_id,
            "passport_country": application.passport_country,
            "visa_type": application.visa_type,
            "destination": application.destination,
            "email": application.email,
            "status": application.status.value,
            "updated_at": application.updated_at,
        },
        message="Application updated successfully",
    )


@router.put("/applicant-details/{application_id}")
async def update_applicant_details(
    application_id: str,
    body: UpdateApplicantDetailsRequest,
    container: ServiceContainer = Depends(get_container),
):
    application = await container.workflow.update_applicant_details(application_id, body.applicant_details)
    return success(
        {
            "application_id": application.application_id,
            "status": application.status.value,
            "current_step": application.current_step,
            "main_applicant": application.main_applicant.model_dump(mode="json"),
            "updated_at": application.updated_at,
        },
        message="Applicant details updated successfully",
    )


@router.put("/documents/{application_id}")
async def update_documents(
    application_id: str,
    body: UpdateDocumentsRequest,
    container: ServiceContainer = Depends(get_container),
):
    application = await container.workflow.update_documents(application_id, body.documents)
    return success(
        {
            "application_id": application.application_id,
            "status": application.status.value,
            "current_step": application.current_step,
            "documents": application.main_applicant.documents.model_dump(mode="json"),
            "updated_at": application.updated_at,
        },
        message="Documents updated successfully",
    )


@router.put("/add-applicant/{application_id}/{index}")
async def update_applicant(
    application_id: str,
    index: int,
    body: UpdateApplicantRequest,
    container: ServiceContainer = Depends(get_container),
):
    application = await container.workflow.update_applicant(application_id, index, body.applicant)
    return success(
        {
            "application_id": application.application_id,
            "updated_applicant": application.additional_applicants[index].model_dump(mode="json"),
            "index": index,
        },
        message="Additional applicant updated successfully",
    )


@router.delete("/add-applicant/{application_id}/{index}")
async def delete_applicant(
    application_id: str,
    index: int,
    container: ServiceContainer = Depends(get_container),
):
    application, removed = await container.workflow.remove_applicant(application_id, index)
    return success(
        {
            "application_id": application.application_id,
            "deleted_applicant": removed.model_dump(mode="json"),
            "index": index,
            "total_applicants": application.total_applicants,
        },
        message="Additional applicant deleted successfully",
    )
