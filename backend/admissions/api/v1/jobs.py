"""
Document Processing API Router

  POST /jobs                                  intake by object-store reference
  POST /jobs/upload                           multipart upload + intake
  GET  /jobs/{job_id}                         job status
  GET  /applications/{application_id}/jobs    every job of one application
  POST /jobs/{job_id}/cancel                  user cancellation
  GET  /jobs/{job_id}/extracted-data          extractions produced by a job
  GET  /extracted-data/{id}                   one extraction
  POST /extracted-data/{id}/verify            verifier decision (verifier+)
  POST /admin/jobs/{job_id}/user-not-found    upstream signals (admin)
  POST /admin/jobs/{job_id}/document-not-found

Request lifecycle for intake:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification → RequestContext (user id, role,    │
  │    notification recipients; never from the body)        │
  │ 2. RBAC gate (applicant or above)                       │
  │ 3. Validation + object presence check                   │
  │ 4. DB insert (status=pending)                           │
  │ 5. {job_id} published to pipeline.extract → 202         │
  └─────────────────────────────────────────────────────────┘

Applicants only see their own jobs. Other callers' jobs answer 404 so
job ids cannot be probed.
"""

from __future__ import annotations

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse

from admissions.auth.dependencies import Gate, Intake, Store
from admissions.auth.rbac import can_read_application, require_role
from admissions.auth.token import RequestContext
from admissions.core.exceptions import ExtractedDataNotFoundError, JobNotFoundError
from admissions.models.jobs import DocumentProcessJob
from admissions.schemas.enums import JobStatus
from admissions.schemas.jobs import (
    CancelResponse,
    ErrorResponse,
    ExtractedDataResponse,
    JobAcceptedResponse,
    JobListResponse,
    JobResponse,
    JobSubmitRequest,
    PipelineErrors,
    VerifyRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Document Processing"])

Applicant = Annotated[RequestContext, Depends(require_role("applicant"))]
Verifier  = Annotated[RequestContext, Depends(require_role("verifier"))]
Admin     = Annotated[RequestContext, Depends(require_role("admin"))]


def _request_id(request: Request) -> str:
    return request.headers.get("X-Request-ID") or str(uuid.uuid4())


def _accepted(job: DocumentProcessJob, request_id: str) -> JSONResponse:
    body = JobAcceptedResponse(
        job_id=job.id,
        application_id=job.application_id,
        document_type=job.type,
        status=job.status,
        created_at=job.created_at,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={
            "X-Request-ID": request_id,
            "Location":     f"/api/v1/jobs/{job.id}",
        },
    )


async def _readable_job(store, ctx: RequestContext, job_id: str) -> DocumentProcessJob:
    job = await store.get_job(job_id)
    if not can_read_application(ctx, job.user_id):
        raise JobNotFoundError(PipelineErrors.job_not_found(job_id))
    return job


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

@router.post(
    "/jobs",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit an uploaded document for extraction",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid request or document not uploaded"},
        403: {"model": ErrorResponse, "description": "Insufficient role"},
    },
)
async def submit_job(
    request: Request,
    body:    JobSubmitRequest,
    ctx:     Applicant,
    intake:  Intake,
) -> JSONResponse:
    job = await intake.submit(
        ctx,
        application_id=body.application_id,
        document_type=body.document_type,
        file_ref=body.file_ref,
        file_name=body.file_name,
    )
    return _accepted(job, _request_id(request))


@router.post(
    "/jobs/upload",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document and submit it for extraction",
    description="Transcripts must be PDF; certificates and identity documents must be JPEG, PNG or WebP.",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid file type or request"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        502: {"model": ErrorResponse, "description": "Object store rejected the upload"},
    },
)
async def upload_job(
    request:        Request,
    ctx:            Applicant,
    intake:         Intake,
    application_id: str = Form(..., min_length=1, max_length=64),
    document_type:  str = Form(...),
    file:           UploadFile | None = File(None),
) -> JSONResponse:
    job = await intake.upload_and_submit(
        ctx,
        application_id=application_id,
        document_type=document_type,
        upload=file,
    )
    return _accepted(job, _request_id(request))


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

@router.get("/jobs/{job_id}", response_model=JobResponse, summary="Get job status")
async def get_job(job_id: str, ctx: Applicant, store: Store) -> JobResponse:
    return JobResponse.from_job(await _readable_job(store, ctx, job_id))


@router.get(
    "/applications/{application_id}/jobs",
    response_model=JobListResponse,
    summary="List the jobs of an application",
)
async def list_application_jobs(application_id: str, ctx: Applicant, store: Store) -> JobListResponse:
    jobs = [
        JobResponse.from_job(job)
        for job in await store.list_for_application(application_id)
        if can_read_application(ctx, job.user_id)
    ]
    return JobListResponse(application_id=application_id, jobs=jobs, total=len(jobs))


@router.post("/jobs/{job_id}/cancel", response_model=CancelResponse, summary="Cancel a job")
async def cancel_job(job_id: str, ctx: Applicant, store: Store) -> CancelResponse:
    await _readable_job(store, ctx, job_id)
    job = await store.request_cancellation(job_id, ctx.user_id)

    status_ = JobStatus(job.status)
    if status_ is JobStatus.USER_CANCELLED:
        message = "Job cancelled."
    elif status_ is JobStatus.PROCESSING:
        message = "Cancellation requested; the job stops at its next step."
    else:
        message = f"Job already {status_.value}; nothing to cancel."
    return CancelResponse(
        job_id=job.id,
        status=status_,
        cancel_requested=bool(job.cancel_requested),
        message=message,
    )


# ---------------------------------------------------------------------------
# Extracted data + verification
# ---------------------------------------------------------------------------

@router.get(
    "/jobs/{job_id}/extracted-data",
    response_model=list[ExtractedDataResponse],
    summary="Extractions produced by a job",
)
async def list_job_extractions(job_id: str, ctx: Applicant, store: Store, gate: Gate) -> list[ExtractedDataResponse]:
    await _readable_job(store, ctx, job_id)
    return [ExtractedDataResponse.model_validate(r) for r in await gate.list_for_job(job_id)]


@router.get(
    "/extracted-data/{extracted_data_id}",
    response_model=ExtractedDataResponse,
    summary="Get one extraction",
)
async def get_extraction(extracted_data_id: str, ctx: Applicant, store: Store, gate: Gate) -> ExtractedDataResponse:
    record = await gate.get(extracted_data_id)
    job = await store.load_job(record.job_id)
    if job is None or not can_read_application(ctx, job.user_id):
        raise ExtractedDataNotFoundError(PipelineErrors.extracted_data_not_found(extracted_data_id))
    return ExtractedDataResponse.model_validate(record)


@router.post(
    "/extracted-data/{extracted_data_id}/verify",
    response_model=ExtractedDataResponse,
    summary="Record a verifier's decision",
    responses={
        404: {"model": ErrorResponse, "description": "Extraction not found"},
        409: {"model": ErrorResponse, "description": "Already decided or superseded"},
    },
)
async def verify_extraction(
    extracted_data_id: str,
    body: VerifyRequest,
    ctx:  Verifier,
    gate: Gate,
) -> ExtractedDataResponse:
    record = await gate.verify(extracted_data_id, body.verdict, ctx.user_id, body.notes)
    return ExtractedDataResponse.model_validate(record)


# ---------------------------------------------------------------------------
# Upstream signals
# ---------------------------------------------------------------------------

@router.post(
    "/admin/jobs/{job_id}/user-not-found",
    response_model=JobResponse,
    summary="Mark a job as user_not_found",
    responses={409: {"model": ErrorResponse, "description": "Job already terminal"}},
)
async def mark_user_not_found(job_id: str, ctx: Admin, store: Store) -> JobResponse:
    return JobResponse.from_job(await store.mark_user_not_found(job_id, ctx.user_id))


@router.post(
    "/admin/jobs/{job_id}/document-not-found",
    response_model=JobResponse,
    summary="Mark a job as document_not_found",
    responses={409: {"model": ErrorResponse, "description": "Job already terminal"}},
)
async def mark_document_not_found(job_id: str, ctx: Admin, store: Store) -> JobResponse:
    return JobResponse.from_job(await store.mark_document_not_found(job_id, ctx.user_id))
