"""
Job Intake

Two entry points, one pipeline:

  submit(ctx, application_id, document_type, file_ref)
    1. Validate application_id, document_type and file_ref
    2. Confirm the object exists (HEAD) — missing → DOCUMENT_NOT_UPLOADED,
       raised before any job row exists
    3. Persist the job (status=pending) with the caller's notification
       recipients
    4. Publish {job_id} to the extraction queue
    5. Return the job; the caller never waits for processing

  upload_and_submit(ctx, application_id, document_type, upload)
    1. Validate application_id and document_type
    2. Read the upload with a size ceiling
    3. Detect the type from magic bytes: transcripts must be PDF,
       certificates and identity documents must be JPEG/PNG/WEBP
    4. Store under applications/<application_id>/ — failure →
       DOCUMENT_UPLOAD_FAILED
    5. submit() with the new key

Step 4 of submit is non-fatal: if the broker is down the job stays
pending, the failure is audited, and the reconciliation sweep re-queues it.

user_id and recipients are always taken from the verified RequestContext,
never from the request body.
"""

from __future__ import annotations

import logging

from fastapi import UploadFile

from admissions.auth.token import RequestContext
from admissions.core.exceptions import (
    DocumentNotUploadedError,
    DocumentUploadFailedError,
    FileTooLargeError,
    IntakeValidationError,
)
from admissions.models.jobs import DocumentProcessJob
from admissions.schemas.enums import DocumentType
from admissions.schemas.jobs import PipelineErrors
from admissions.services.filetypes import is_accepted, sniff_content_type
from admissions.services.job_store import JobStore
from admissions.storage.s3 import build_key, sanitize_filename

logger = logging.getLogger(__name__)


def _validate_application_id(value: str | None) -> str:
    cleaned = (value or "").strip()
    if not cleaned or len(cleaned) > 64:
        raise IntakeValidationError(PipelineErrors.invalid_application_id(value or ""))
    return cleaned


def _validate_document_type(value: DocumentType | str | None) -> DocumentType:
    try:
        return DocumentType(value)
    except ValueError:
        raise IntakeValidationError(PipelineErrors.unsupported_document_type(str(value)))


def _validate_file_ref(value: str | None) -> str:
    cleaned = (value or "").strip()
    segments = cleaned.replace("\\", "/").split("/")
    if not cleaned or cleaned.startswith("/") or ".." in segments or len(cleaned) > 512:
        raise IntakeValidationError(PipelineErrors.invalid_file_ref(value or ""))
    return cleaned


class IntakeService:
    """
    Stateless service object — one instance per request.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        store:     JobStore,
        storage,
        publisher,
        *,
        max_upload_bytes: int = 10 * 1024 * 1024,
    ) -> None:
        self._store     = store
        self._storage   = storage
        self._publisher = publisher
        self._max_bytes = max_upload_bytes

    # ------------------------------------------------------------------
    # Submit by reference
    # ------------------------------------------------------------------

    async def submit(
        self,
        ctx: RequestContext,
        *,
        application_id: str,
        document_type:  DocumentType | str,
        file_ref:       str,
        file_name:      str | None = None,
        file_url:       str | None = None,
    ) -> DocumentProcessJob:
        application_id = _validate_application_id(application_id)
        document_type  = _validate_document_type(document_type)
        file_ref       = _validate_file_ref(file_ref)

        try:
            await self._storage.head_object(file_ref)
        except FileNotFoundError:
            logger.info(
                "Intake rejected, object missing | app=%s key=%s user=%s",
                application_id, file_ref, ctx.user_id,
            )
            raise DocumentNotUploadedError(PipelineErrors.document_not_uploaded(file_ref))

        job = await self._store.create_job(
            application_id=application_id,
            user_id=ctx.user_id,
            document_type=document_type,
            file_id=file_ref,
            file_name=sanitize_filename(file_name or file_ref),
            file_url=file_url,
            notify_email=ctx.email or None,
            notify_chat_id=ctx.telegram_chat_id,
        )

        try:
            await self._publisher.publish_process_job(job.id)
        except Exception as exc:
            # Job is persisted; the reconciliation sweep re-queues stale pending jobs.
            logger.error("Failed to publish extraction task | job=%s error=%s", job.id, exc)
            await self._store.record_event(
                job.id,
                "job.queue_failed",
                actor=ctx.user_id,
                details={"error": str(exc)},
                success=False,
            )

        return job

    # ------------------------------------------------------------------
    # Upload + submit
    # ------------------------------------------------------------------

    async def upload_and_submit(
        self,
        ctx: RequestContext,
        *,
        application_id: str,
        document_type:  DocumentType | str,
        upload:         UploadFile | None,
    ) -> DocumentProcessJob:
        application_id = _validate_application_id(application_id)
        document_type  = _validate_document_type(document_type)

        data = await self._read_upload(upload)
        detected = sniff_content_type(data)
        if not is_accepted(document_type, detected):
            raise IntakeValidationError(PipelineErrors.invalid_file_type(document_type, detected))

        file_name = sanitize_filename(upload.filename or "upload")
        key = build_key(application_id, file_name)
        try:
            await self._storage.put_object(
                key,
                data,
                content_type=detected,
                metadata={
                    "application_id": application_id,
                    "document_type":  document_type.value,
                    "uploaded_by":    ctx.user_id,
                },
            )
        except Exception as exc:
            logger.exception("Upload failed | app=%s key=%s", application_id, key)
            raise DocumentUploadFailedError(PipelineErrors.document_upload_failed(str(exc)))

        return await self.submit(
            ctx,
            application_id=application_id,
            document_type=document_type,
            file_ref=key,
            file_name=file_name,
        )

    async def _read_upload(self, upload: UploadFile | None) -> bytes:
        if upload is None or upload.filename is None:
            raise IntakeValidationError(PipelineErrors.missing_file())

        data = await upload.read()
        if not data:
            raise IntakeValidationError(PipelineErrors.missing_file())
        if len(data) > self._max_bytes:
            raise FileTooLargeError(PipelineErrors.file_too_large(len(data), self._max_bytes))
        return data
