"""
Unit Tests — IntakeService
═══════════════════════════
Coverage:
  ✅ submit by reference → pending job, task published, recipients from ctx
  ✅ missing object → DOCUMENT_NOT_UPLOADED, no job row
  ✅ invalid application id / document type / file ref → 400, nothing stored
  ✅ broker down → job kept pending, failure audited
  ✅ upload: transcript must be PDF, certificate must be an image
  ✅ upload: empty / oversized / storage failure
"""

from __future__ import annotations

import io
from unittest.mock import AsyncMock

import pytest
from fastapi import UploadFile
from sqlalchemy import func, select

from admissions.core.exceptions import (
    DocumentNotUploadedError,
    DocumentUploadFailedError,
    FileTooLargeError,
    IntakeValidationError,
)
from admissions.models.jobs import AuditLog, DocumentProcessJob
from admissions.schemas.enums import DocumentType, JobStatus
from admissions.services.intake import IntakeService


def _make_upload_file(filename: str, content: bytes) -> UploadFile:
    """Build a FastAPI UploadFile backed by an in-memory BytesIO buffer."""
    return UploadFile(filename=filename, file=io.BytesIO(content))


async def _job_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(DocumentProcessJob))).scalar_one()


@pytest.fixture
def intake(store, mock_storage, mock_publisher):
    return IntakeService(store, mock_storage, mock_publisher, max_upload_bytes=1024)


@pytest.mark.unit
class TestSubmit:

    async def test_submit_creates_pending_job_and_publishes(
        self, intake, applicant_ctx, mock_storage, mock_publisher,
    ):
        job = await intake.submit(
            applicant_ctx,
            application_id="  APP-2024-001 ",
            document_type="transcript",
            file_ref="applications/APP-2024-001/hocba.pdf",
        )

        assert job.status == JobStatus.PENDING.value
        assert job.application_id == "APP-2024-001"
        assert job.user_id == applicant_ctx.user_id
        assert job.type == DocumentType.TRANSCRIPT.value
        assert job.file_id == "applications/APP-2024-001/hocba.pdf"
        assert job.file_name == "hocba.pdf"
        assert job.notify_email == "parent@example.com"
        assert job.notify_chat_id == "987654321"

        mock_storage.head_object.assert_awaited_once_with("applications/APP-2024-001/hocba.pdf")
        mock_publisher.publish_process_job.assert_awaited_once_with(job.id)

    async def test_missing_object_creates_no_job(
        self, intake, applicant_ctx, mock_storage, mock_publisher, session_factory,
    ):
        mock_storage.head_object.side_effect = FileNotFoundError("Object not found")

        with pytest.raises(DocumentNotUploadedError) as exc_info:
            await intake.submit(
                applicant_ctx,
                application_id="APP-1",
                document_type=DocumentType.CERTIFICATE,
                file_ref="applications/APP-1/missing.png",
            )

        assert exc_info.value.status_code == 400
        assert exc_info.value.error.error_code == "DOCUMENT_NOT_UPLOADED"
        assert exc_info.value.error.message == "Tài liệu không được tải lên"
        assert await _job_count(session_factory) == 0
        mock_publisher.publish_process_job.assert_not_awaited()

    @pytest.mark.parametrize("kwargs, code", [
        ({"application_id": "   "},                   "INVALID_APPLICATION_ID"),
        ({"document_type": "report_card"},            "UNSUPPORTED_DOCUMENT_TYPE"),
        ({"file_ref": "/etc/passwd"},                 "INVALID_FILE_REF"),
        ({"file_ref": "applications/../secrets.pdf"}, "INVALID_FILE_REF"),
    ])
    async def test_invalid_input_is_rejected(self, intake, applicant_ctx, mock_storage, kwargs, code):
        args = {
            "application_id": "APP-1",
            "document_type":  "transcript",
            "file_ref":       "applications/APP-1/a.pdf",
            **kwargs,
        }
        with pytest.raises(IntakeValidationError) as exc_info:
            await intake.submit(applicant_ctx, **args)

        assert exc_info.value.error.error_code == code
        mock_storage.head_object.assert_not_awaited()

    async def test_broker_failure_keeps_job_pending(
        self, intake, applicant_ctx, mock_publisher, session_factory,
    ):
        mock_publisher.publish_process_job.side_effect = ConnectionError("broker down")

        job = await intake.submit(
            applicant_ctx,
            application_id="APP-1",
            document_type="transcript",
            file_ref="applications/APP-1/a.pdf",
        )

        assert job.status == JobStatus.PENDING.value
        async with session_factory() as session:
            actions = (await session.execute(
                select(AuditLog.action).where(AuditLog.resource == f"job:{job.id}").order_by(AuditLog.id)
            )).scalars().all()
        assert actions == ["job.created", "job.queue_failed"]


@pytest.mark.unit
class TestUploadAndSubmit:

    async def test_transcript_pdf_is_stored_and_submitted(
        self, intake, applicant_ctx, mock_storage, mock_publisher, sample_pdf_bytes,
    ):
        job = await intake.upload_and_submit(
            applicant_ctx,
            application_id="APP-1",
            document_type="transcript",
            upload=_make_upload_file("../../hoc ba.pdf", sample_pdf_bytes),
        )

        key = mock_storage.put_object.await_args.args[0]
        assert key.startswith("applications/APP-1/")
        assert key.endswith("-hoc_ba.pdf")
        assert mock_storage.put_object.await_args.kwargs["content_type"] == "application/pdf"
        assert job.file_id == key
        assert job.file_name == "hoc_ba.pdf"
        mock_publisher.publish_process_job.assert_awaited_once_with(job.id)

    async def test_certificate_image_is_accepted(self, intake, applicant_ctx, sample_png_bytes):
        job = await intake.upload_and_submit(
            applicant_ctx,
            application_id="APP-1",
            document_type=DocumentType.CERTIFICATE,
            upload=_make_upload_file("giaykhen.png", sample_png_bytes),
        )
        assert job.type == DocumentType.CERTIFICATE.value

    async def test_transcript_must_be_pdf(self, intake, applicant_ctx, mock_storage, sample_png_bytes):
        with pytest.raises(IntakeValidationError) as exc_info:
            await intake.upload_and_submit(
                applicant_ctx,
                application_id="APP-1",
                document_type="transcript",
                upload=_make_upload_file("hocba.pdf", sample_png_bytes),
            )
        assert exc_info.value.error.error_code == "DOCUMENT_PROCESSING_FAILED_INVALID_FILE_TYPE"
        mock_storage.put_object.assert_not_awaited()

    async def test_certificate_must_be_image(self, intake, applicant_ctx, sample_pdf_bytes):
        with pytest.raises(IntakeValidationError):
            await intake.upload_and_submit(
                applicant_ctx,
                application_id="APP-1",
                document_type="certificate",
                upload=_make_upload_file("giaykhen.png", sample_pdf_bytes),
            )

    async def test_empty_upload_is_missing_file(self, intake, applicant_ctx):
        with pytest.raises(IntakeValidationError) as exc_info:
            await intake.upload_and_submit(
                applicant_ctx,
                application_id="APP-1",
                document_type="transcript",
                upload=_make_upload_file("hocba.pdf", b""),
            )
        assert exc_info.value.error.error_code == "MISSING_FILE"

    async def test_oversized_upload(self, intake, applicant_ctx):
        with pytest.raises(FileTooLargeError) as exc_info:
            await intake.upload_and_submit(
                applicant_ctx,
                application_id="APP-1",
                document_type="transcript",
                upload=_make_upload_file("hocba.pdf", b"%PDF" + b"x" * 2048),
            )
        assert exc_info.value.status_code == 413

    async def test_storage_failure_is_upload_failed(
        self, intake, applicant_ctx, mock_storage, session_factory, sample_pdf_bytes,
    ):
        mock_storage.put_object.side_effect = ConnectionError("s3 unreachable")

        with pytest.raises(DocumentUploadFailedError) as exc_info:
            await intake.upload_and_submit(
                applicant_ctx,
                application_id="APP-1",
                document_type="transcript",
                upload=_make_upload_file("hocba.pdf", sample_pdf_bytes),
            )

        assert exc_info.value.status_code == 502
        assert exc_info.value.error.error_code == "DOCUMENT_UPLOAD_FAILED"
        assert await _job_count(session_factory) == 0
