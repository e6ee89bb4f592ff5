"""
Domain exceptions raised by the pipeline services.

Each carries a ready-made ErrorResponse so the API layer can render it
unchanged (see main.pipeline_error_handler). Workers catch the same classes
but never render them.
"""

from __future__ import annotations

from admissions.schemas.jobs import ErrorResponse


class PipelineError(Exception):
    """Base class. `status_code` is the HTTP status used when rendered."""
    status_code: int = 500

    def __init__(self, error: ErrorResponse) -> None:
        super().__init__(error.message)
        self.error = error


class IntakeValidationError(PipelineError):
    status_code = 400


class DocumentNotUploadedError(IntakeValidationError):
    """The referenced object is not in storage; no job was created."""


class FileTooLargeError(IntakeValidationError):
    status_code = 413


class DocumentUploadFailedError(PipelineError):
    status_code = 502


class JobNotFoundError(PipelineError):
    status_code = 404


class ExtractedDataNotFoundError(PipelineError):
    status_code = 404


class VerificationConflictError(PipelineError):
    status_code = 409


class JobStateConflictError(PipelineError):
    status_code = 409
