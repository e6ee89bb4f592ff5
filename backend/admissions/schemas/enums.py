"""
Closed enumerations shared by the API, the job store and every worker role.

All values are stored verbatim in the database and carried verbatim in
queue payloads, so renaming a value is a data migration.
"""

from __future__ import annotations

from enum import Enum


class DocumentType(str, Enum):
    """Document kinds accepted at intake."""
    TRANSCRIPT  = "transcript"    # học bạ, PDF only
    CERTIFICATE = "certificate"   # giấy khen / chứng chỉ, image only
    IDENTITY    = "identity"      # giấy khai sinh / CCCD, image only


class JobStatus(str, Enum):
    """
    Maps to document_process_jobs.status.
    Transitions: pending → processing → completed | failed | user_cancelled
                                        | user_not_found | document_not_found
    """
    PENDING            = "pending"
    PROCESSING         = "processing"
    COMPLETED          = "completed"
    FAILED             = "failed"
    USER_CANCELLED     = "user_cancelled"
    USER_NOT_FOUND     = "user_not_found"
    DOCUMENT_NOT_FOUND = "document_not_found"


class ApplicationFailedReason(str, Enum):
    """
    User-facing failure causes. Every member must have an entry in
    admissions.notifications.messages.REASON_MESSAGES.
    """
    DOCUMENT_NOT_FOUND                         = "document_not_found"
    DOCUMENT_NOT_UPLOADED                      = "document_not_uploaded"
    DOCUMENT_UPLOAD_FAILED                     = "document_upload_failed"
    DOCUMENT_PROCESSING_FAILED                 = "document_processing_failed"
    DOCUMENT_PROCESSING_FAILED_INVALID_DATA    = "document_processing_failed_invalid_data"
    DOCUMENT_PROCESSING_FAILED_INVALID_FORMAT  = "document_processing_failed_invalid_format"
    DOCUMENT_PROCESSING_FAILED_INVALID_FILE_TYPE = "document_processing_failed_invalid_file_type"
    DOCUMENT_QUALITY_CHECK_FAILED              = "document_quality_check_failed"
    DOCUMENT_INFORMATION_MISSING               = "document_information_missing"
    USER_CANCELLED                             = "user_cancelled"
    USER_NOT_FOUND                             = "user_not_found"


class VerificationStatus(str, Enum):
    PENDING  = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class Verdict(str, Enum):
    """Decisions a verifier may apply to a PENDING record."""
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class NotificationChannel(str, Enum):
    EMAIL    = "email"
    TELEGRAM = "telegram"
