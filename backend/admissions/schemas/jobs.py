"""
Document Processing — Pydantic Request/Response Schemas

Covers:
  - Intake request (by file reference) and the 202 Accepted response
  - Job status / listing responses
  - Verification request and ExtractedData responses
  - Internal queue contracts (JobOutcomeEvent, NotificationTask)
  - All structured error bodies (400, 401, 403, 404, 409, 422, 500, 502)

Design decisions:
  - job_id is always server-generated; never client-supplied.
  - user_id comes from the verified request context, never the body.
  - error codes in job responses are ApplicationFailedReason values; the
    localized text is attached from notifications.messages, never composed here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from admissions.notifications.messages import message_for
from admissions.schemas.enums import (
    ApplicationFailedReason,
    DocumentType,
    JobStatus,
    NotificationChannel,
    Verdict,
    VerificationStatus,
)


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

class JobSubmitRequest(BaseModel):
    """Body of POST /jobs — the file must already be in object storage."""
    application_id: str          = Field(..., min_length=1, max_length=64, description="Admission application id")
    document_type:  DocumentType = Field(..., description="transcript | certificate | identity")
    file_ref:       str          = Field(..., min_length=1, max_length=512, description="Object store key of the uploaded file")
    file_name:      str | None   = Field(None, max_length=255, description="Display name; defaults to the key basename")

    @field_validator("application_id", "file_ref")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class JobAcceptedResponse(BaseModel):
    """
    Returned immediately after intake.
    HTTP 202 — the job is persisted and queued; processing is async.
    """
    job_id:         str
    application_id: str
    document_type:  DocumentType
    status:         JobStatus = Field(
        JobStatus.PENDING,
        description="Pipeline state — poll GET /jobs/{job_id} for updates",
    )
    created_at:     datetime


# ---------------------------------------------------------------------------
# Job status
# ---------------------------------------------------------------------------

class JobResponse(BaseModel):
    """Polled by clients to track a job through the pipeline."""
    model_config = ConfigDict(from_attributes=True)

    id:               str
    application_id:   str
    user_id:          str
    file_id:          str
    file_name:        str
    file_url:         str | None = None
    type:             DocumentType
    status:           JobStatus
    result:           dict[str, Any] | None = None
    error:            ApplicationFailedReason | None = None
    error_message:    str | None = Field(None, description="Localized text for `error`")
    cancel_requested: bool = False
    created_at:       datetime
    updated_at:       datetime

    @classmethod
    def from_job(cls, job: Any) -> "JobResponse":
        resp = cls.model_validate(job)
        if resp.error is not None:
            resp.error_message = message_for(resp.error)
        return resp


class JobListResponse(BaseModel):
    application_id: str
    jobs:           list[JobResponse]
    total:          int


class CancelResponse(BaseModel):
    job_id:           str
    status:           JobStatus
    cancel_requested: bool
    message:          str = Field(..., description="pending jobs cancel immediately; processing jobs cancel cooperatively")


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class VerifyRequest(BaseModel):
    verdict: Verdict
    notes:   str | None = Field(None, max_length=2000)


class ExtractedDataResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                  str
    job_id:              str
    application_id:      str
    document_type:       DocumentType
    result:              dict[str, Any]
    verification_status: VerificationStatus
    notes:               str | None = None
    verified_by:         str | None = None
    verified_at:         datetime | None = None
    superseded_by:       str | None = None
    created_at:          datetime


# ---------------------------------------------------------------------------
# Internal queue contracts
# ---------------------------------------------------------------------------

class JobOutcomeEvent(BaseModel):
    """
    Published once per job, at the moment the job enters a terminal state.
    Consumed by the notification dispatcher.
    """
    job_id:         str
    application_id: str
    user_id:        str
    document_type:  DocumentType
    status:         JobStatus
    error:          ApplicationFailedReason | None = None
    notify_email:   str | None = None
    notify_chat_id: str | None = None
    occurred_at:    datetime


class NotificationTask(BaseModel):
    """One delivery on one channel. Bodies are pre-rendered."""
    channel:        NotificationChannel
    job_id:         str
    application_id: str
    recipient:      str
    subject:        str
    text:           str
    html:           str | None = None
    status:         JobStatus
    reason:         ApplicationFailedReason | None = None


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

def _reason_error(reason: ApplicationFailedReason, field: str | None, detail: str) -> ErrorResponse:
    code = reason.name
    return ErrorResponse(
        error_code=code,
        message=message_for(reason),
        details=[ErrorDetail(field=field, message=detail, code=code)],
    )


class PipelineErrors:
    """Factories for every documented error case."""

    @staticmethod
    def invalid_application_id(value: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_APPLICATION_ID",
            message="application_id must be a non-empty identifier.",
            details=[ErrorDetail(field="application_id", message=f"Got {value!r}.", code="INVALID_APPLICATION_ID")],
        )

    @staticmethod
    def unsupported_document_type(value: str) -> ErrorResponse:
        allowed = ", ".join(t.value for t in DocumentType)
        return ErrorResponse(
            error_code="UNSUPPORTED_DOCUMENT_TYPE",
            message=f"Document type '{value}' is not supported.",
            details=[
                ErrorDetail(field="document_type", message=f"Allowed: {allowed}.", code="UNSUPPORTED_DOCUMENT_TYPE")
            ],
        )

    @staticmethod
    def invalid_file_ref(value: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_FILE_REF",
            message="file_ref must be a relative object key without traversal segments.",
            details=[ErrorDetail(field="file_ref", message=f"Got {value!r}.", code="INVALID_FILE_REF")],
        )

    @staticmethod
    def document_not_uploaded(file_ref: str) -> ErrorResponse:
        return _reason_error(
            ApplicationFailedReason.DOCUMENT_NOT_UPLOADED,
            "file_ref",
            f"No object found at '{file_ref}'. Upload the file before submitting.",
        )

    @staticmethod
    def document_upload_failed(detail: str | None = None) -> ErrorResponse:
        return _reason_error(
            ApplicationFailedReason.DOCUMENT_UPLOAD_FAILED,
            "file",
            detail or "The object store rejected the upload.",
        )

    @staticmethod
    def invalid_file_type(document_type: DocumentType, detected: str) -> ErrorResponse:
        expected = "application/pdf" if document_type is DocumentType.TRANSCRIPT else "image/*"
        return _reason_error(
            ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED_INVALID_FILE_TYPE,
            "file",
            f"{document_type.value} requires {expected}; detected '{detected}'.",
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[ErrorDetail(field="file", message="The 'file' multipart field is required.", code="MISSING_FILE")],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def job_not_found(job_id: str) -> ErrorResponse:
        return ErrorResponse(error_code="JOB_NOT_FOUND", message=f"Job '{job_id}' was not found.")

    @staticmethod
    def extracted_data_not_found(extracted_data_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="EXTRACTED_DATA_NOT_FOUND",
            message=f"Extracted data '{extracted_data_id}' was not found.",
        )

    @staticmethod
    def verification_conflict(extracted_data_id: str, current: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="VERIFICATION_CONFLICT",
            message="This extraction has already been decided.",
            details=[
                ErrorDetail(
                    field=None,
                    message=f"Extracted data '{extracted_data_id}' is {current}; only PENDING records can be verified.",
                    code="VERIFICATION_CONFLICT",
                )
            ],
        )

    @staticmethod
    def job_state_conflict(job_id: str, current: str, target: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="JOB_STATE_CONFLICT",
            message=f"Job '{job_id}' cannot move from {current} to {target}.",
        )

    @staticmethod
    def forbidden(required_role: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="FORBIDDEN",
            message=f"Insufficient permissions. Role '{required_role}' or above is required.",
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            request_id=request_id,
        )


# ---------------------------------------------------------------------------
# HTTP status code → error code mapping (for OpenAPI documentation)
# ---------------------------------------------------------------------------

HTTP_ERROR_MAP: dict[int, str] = {
    400: "DOCUMENT_NOT_UPLOADED",    # also INVALID_* and file-type errors
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "JOB_NOT_FOUND",            # or EXTRACTED_DATA_NOT_FOUND
    409: "VERIFICATION_CONFLICT",    # or JOB_STATE_CONFLICT
    413: "FILE_TOO_LARGE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "DOCUMENT_UPLOAD_FAILED",
}
