"""
SQLAlchemy ORM Models — Document Processing Jobs, Extracted Data & Audit Logs

Column types are kept portable (string ids, JSON with a JSONB variant,
timezone-aware timestamps) so the same models run on PostgreSQL via asyncpg
in production and on SQLite via aiosqlite in the test-suite.

Row-level invariants that the database enforces itself:
  - status / verification_status are members of their enums
  - result is non-NULL iff status = 'completed'
  - error is non-NULL iff status is a non-completed terminal state
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from admissions.schemas.enums import JobStatus, VerificationStatus


def _uuid_str() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _in_clause(column: str, values) -> str:
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


_JSON = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

_TRANSIENT = (JobStatus.PENDING, JobStatus.PROCESSING)
_ERROR_TERMINAL = (
    JobStatus.FAILED,
    JobStatus.USER_CANCELLED,
    JobStatus.USER_NOT_FOUND,
    JobStatus.DOCUMENT_NOT_FOUND,
)


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# DocumentProcessJob: document_process_jobs
# ---------------------------------------------------------------------------

class DocumentProcessJob(Base):
    """
    One document's progression through extraction.

    State machine (status column):
        pending            — persisted and queued, no worker has claimed it
        processing         — claimed by exactly one extraction attempt
        completed          — fields extracted; see ExtractedData
        failed             — error holds an ApplicationFailedReason
        user_cancelled     — cancelled by the applicant before completion
        user_not_found     — applicant account vanished (explicit upstream call)
        document_not_found — file record vanished (explicit upstream call)

    Mutated only through admissions.services.job_store.JobStore.
    """

    __tablename__ = "document_process_jobs"
    __table_args__ = (
        CheckConstraint(
            _in_clause("status", JobStatus),
            name="document_process_jobs_status_check",
        ),
        CheckConstraint(
            f"({_in_clause('status', _TRANSIENT)} AND result IS NULL AND error IS NULL)"
            f" OR (status = 'completed' AND result IS NOT NULL AND error IS NULL)"
            f" OR ({_in_clause('status', _ERROR_TERMINAL)} AND error IS NOT NULL AND result IS NULL)",
            name="document_process_jobs_outcome_check",
        ),
        Index("idx_jobs_application_id", "application_id"),
        Index("idx_jobs_status_updated", "status", "updated_at"),
        Index("idx_jobs_outcome_published", "outcome_published_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid_str)

    application_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id:        Mapped[str] = mapped_column(String(64), nullable=False)

    # File reference
    file_id: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object store key of the uploaded file",
    )
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_url:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    type: Mapped[str] = mapped_column(String(32), nullable=False)

    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=JobStatus.PENDING.value,
        server_default=JobStatus.PENDING.value,
    )
    result: Mapped[Optional[dict]] = mapped_column(
        _JSON,
        nullable=True,
        comment="Extracted fields; set only on completed",
    )
    error: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="ApplicationFailedReason value; set only on non-completed terminal states",
    )

    # Cooperative cancellation flag, polled by the worker
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="0",
    )

    # Notification recipients captured at intake
    notify_email:   Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    notify_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # NULL on a terminal job until the broker accepted its JobOutcomeEvent
    outcome_published_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentProcessJob id={self.id} app={self.application_id} "
            f"type={self.type} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# ExtractedData: extracted_data
# ---------------------------------------------------------------------------

class ExtractedData(Base):
    """
    Fields produced by a completed job, awaiting or carrying a human decision.

    Never deleted. A newer extraction for the same application and document
    type marks older PENDING rows with superseded_by; superseded rows can no
    longer be verified.
    """

    __tablename__ = "extracted_data"
    __table_args__ = (
        CheckConstraint(
            _in_clause("verification_status", VerificationStatus),
            name="extracted_data_verification_status_check",
        ),
        Index("idx_extracted_data_job_id", "job_id"),
        Index("idx_extracted_data_application", "application_id", "document_type"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid_str)
    job_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("document_process_jobs.id", ondelete="RESTRICT"),
        nullable=False,
    )
    application_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_type:  Mapped[str] = mapped_column(String(32), nullable=False)
    result:         Mapped[dict] = mapped_column(_JSON, nullable=False)

    verification_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=VerificationStatus.PENDING.value,
        server_default=VerificationStatus.PENDING.value,
    )
    notes:       Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verified_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    superseded_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<ExtractedData id={self.id} job={self.job_id} "
            f"status={self.verification_status}>"
        )


# ---------------------------------------------------------------------------
# NotificationDelivery: notification_deliveries
# ---------------------------------------------------------------------------

class NotificationDelivery(Base):
    """One row per (job, channel) that has been delivered. Inserted after the send succeeds."""

    __tablename__ = "notification_deliveries"
    __table_args__ = (
        UniqueConstraint("job_id", "channel", name="uq_notification_deliveries_job_channel"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    job_id:  Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<NotificationDelivery job={self.job_id} channel={self.channel}>"


# ---------------------------------------------------------------------------
# AuditLog: audit_logs
# ---------------------------------------------------------------------------

class AuditLog(Base):
    """
    Append-only audit trail.

    Written in the same transaction as the change it records: terminal job
    transitions, cancellation requests, verification decisions and intake
    queueing failures.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_resource",   "resource"),
        Index("idx_audit_logs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)   # None = system

    action: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="e.g. job.completed, job.cancel_requested, extracted_data.verified",
    )
    resource: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="e.g. job:<id>",
    )
    details: Mapped[dict] = mapped_column(
        "metadata",
        _JSON,
        nullable=False,
        default=dict,
    )
    success:    Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} action={self.action!r} success={self.success}>"
