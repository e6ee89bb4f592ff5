"""
Job Store — the single source of truth for DocumentProcessJob state.

Every mutation is a compare-and-set scoped to one job id:

    1. read the row
    2. decide the target from the status graph (services.state_machine)
    3. UPDATE ... WHERE id = :id AND status = :observed
       AND cancel_requested = :observed_flag
    4. rowcount == 1  → this call moved the job; anything else → somebody
       else did, re-read and decide again

so two workers holding the same redelivered message can never both claim
or both finish a job, and a state that has been left is never re-entered.

The call that moves a job into a terminal state publishes its
JobOutcomeEvent after that transaction has committed, then stamps
outcome_published_at. Callers that merely observe a terminal job publish
nothing. A publish that fails leaves the stamp NULL; the reconciliation
sweep finds such jobs with find_unpublished_outcomes() and publishes again
through republish_outcome(), so delivery downstream is at-least-once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from admissions.core.exceptions import JobNotFoundError, JobStateConflictError
from admissions.db.session import transaction
from admissions.models.jobs import AuditLog, DocumentProcessJob, ExtractedData, utcnow
from admissions.schemas.enums import (
    ApplicationFailedReason,
    DocumentType,
    JobStatus,
    VerificationStatus,
)
from admissions.schemas.jobs import JobOutcomeEvent, PipelineErrors
from admissions.services.state_machine import (
    STATUS_REASONS,
    TERMINAL_STATUSES,
    can_transition,
    is_terminal,
)

logger = logging.getLogger(__name__)

# Compare-and-set attempts before giving up on a contended row
_CAS_ATTEMPTS = 3


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything here is UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _next_timestamp(previous: datetime | None) -> datetime:
    now = utcnow()
    if previous is None:
        return now
    floor = as_utc(previous) + timedelta(microseconds=1)
    return now if now > floor else floor


@dataclass(frozen=True)
class Transition:
    """A transition this call performed."""
    job:       DocumentProcessJob
    source:    JobStatus
    extracted: ExtractedData | None = None


class JobStore:
    """
    Persistence for jobs and the ExtractedData they produce.

    `events` receives a JobOutcomeEvent after every committed terminal
    transition; pass None where no notifications should be produced.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        events: Any | None = None,
    ) -> None:
        self._factory = session_factory
        self._events  = events

    # ------------------------------------------------------------------
    # Creation + reads
    # ------------------------------------------------------------------

    async def create_job(
        self,
        *,
        application_id: str,
        user_id:        str,
        document_type:  DocumentType,
        file_id:        str,
        file_name:      str,
        file_url:       str | None = None,
        notify_email:   str | None = None,
        notify_chat_id: str | None = None,
    ) -> DocumentProcessJob:
        now = utcnow()
        job = DocumentProcessJob(
            application_id=application_id,
            user_id=user_id,
            type=DocumentType(document_type).value,
            file_id=file_id,
            file_name=file_name,
            file_url=file_url,
            status=JobStatus.PENDING.value,
            cancel_requested=False,
            notify_email=notify_email,
            notify_chat_id=notify_chat_id,
            created_at=now,
            updated_at=now,
        )
        async with transaction(self._factory) as session:
            session.add(job)
            await session.flush()
            session.add(AuditLog(
                user_id=user_id,
                action="job.created",
                resource=f"job:{job.id}",
                details={
                    "application_id": application_id,
                    "type":           job.type,
                    "file_id":        file_id,
                },
                success=True,
            ))
        logger.info(
            "Job created | job=%s app=%s type=%s user=%s",
            job.id, application_id, job.type, user_id,
        )
        return job

    async def load_job(self, job_id: str) -> DocumentProcessJob | None:
        async with self._factory() as session:
            return await session.get(DocumentProcessJob, job_id)

    async def get_job(self, job_id: str) -> DocumentProcessJob:
        job = await self.load_job(job_id)
        if job is None:
            raise JobNotFoundError(PipelineErrors.job_not_found(job_id))
        return job

    async def list_for_application(self, application_id: str) -> list[DocumentProcessJob]:
        async with self._factory() as session:
            result = await session.execute(
                select(DocumentProcessJob)
                .where(DocumentProcessJob.application_id == application_id)
                .order_by(DocumentProcessJob.created_at, DocumentProcessJob.id)
            )
            return list(result.scalars().all())

    async def record_event(
        self,
        job_id: str,
        action: str,
        *,
        actor:   str | None = None,
        details: dict | None = None,
        success: bool = True,
    ) -> None:
        """Audit an event about a job that is not itself a transition."""
        async with transaction(self._factory) as session:
            session.add(AuditLog(
                user_id=actor,
                action=action,
                resource=f"job:{job_id}",
                details=details or {},
                success=success,
            ))

    async def is_cancel_requested(self, job_id: str) -> bool:
        async with self._factory() as session:
            result = await session.execute(
                select(DocumentProcessJob.cancel_requested)
                .where(DocumentProcessJob.id == job_id)
            )
            return bool(result.scalar_one_or_none())

    async def find_stale(
        self,
        status: JobStatus,
        older_than: datetime,
        limit: int,
    ) -> list[DocumentProcessJob]:
        """Jobs sitting in `status` whose last transition precedes `older_than`."""
        async with self._factory() as session:
            result = await session.execute(
                select(DocumentProcessJob)
                .where(
                    DocumentProcessJob.status == JobStatus(status).value,
                    DocumentProcessJob.updated_at < older_than,
                )
                .order_by(DocumentProcessJob.updated_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def touch(self, job_id: str, status: JobStatus) -> bool:
        """Bump updated_at if the job is still in `status`; no state change."""
        async with transaction(self._factory) as session:
            job = await session.get(DocumentProcessJob, job_id)
            if job is None or job.status != JobStatus(status).value:
                return False
            result = await session.execute(
                update(DocumentProcessJob)
                .where(
                    DocumentProcessJob.id == job_id,
                    DocumentProcessJob.status == JobStatus(status).value,
                )
                .values(updated_at=_next_timestamp(job.updated_at))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # Worker transitions
    # ------------------------------------------------------------------

    async def claim(self, job_id: str) -> DocumentProcessJob | None:
        """
        pending → processing. Returns the job only if this call claimed it;
        None when the job is missing, already claimed, terminal or has a
        pending cancellation.
        """
        async with transaction(self._factory) as session:
            job = await session.get(DocumentProcessJob, job_id)
            if job is None or job.status != JobStatus.PENDING.value or job.cancel_requested:
                return None

            result = await session.execute(
                update(DocumentProcessJob)
                .where(
                    DocumentProcessJob.id == job_id,
                    DocumentProcessJob.status == JobStatus.PENDING.value,
                    DocumentProcessJob.cancel_requested.is_(False),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    updated_at=_next_timestamp(job.updated_at),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.info("Claim lost | job=%s", job_id)
                return None
            await session.refresh(job)

        logger.info("Job claimed | job=%s type=%s", job_id, job.type)
        return job

    async def complete(self, job_id: str, fields: dict[str, Any]) -> Transition | None:
        """
        processing → completed with `fields` as result, creating a PENDING
        ExtractedData in the same transaction. A pending cancellation turns
        this into processing → user_cancelled instead.
        """
        return await self._transition(
            job_id,
            JobStatus.COMPLETED,
            result=fields,
            expected=JobStatus.PROCESSING,
            honour_cancel=True,
        )

    async def finish(
        self,
        job_id: str,
        status: JobStatus,
        reason: ApplicationFailedReason | None = None,
        *,
        actor: str | None = None,
        honour_cancel: bool = True,
        expected: JobStatus | None = None,
        details: dict | None = None,
    ) -> Transition | None:
        """
        Move a job into a non-completed terminal state. For `failed` the
        reason defaults to DOCUMENT_PROCESSING_FAILED; the other terminal
        statuses carry their fixed reason code.
        """
        status = JobStatus(status)
        if status is JobStatus.COMPLETED or not is_terminal(status):
            raise ValueError(f"finish() cannot target {status.value}")
        return await self._transition(
            job_id,
            status,
            reason=reason,
            actor=actor,
            expected=expected,
            honour_cancel=honour_cancel,
            details=details,
        )

    # ------------------------------------------------------------------
    # External signals
    # ------------------------------------------------------------------

    async def request_cancellation(self, job_id: str, user_id: str) -> DocumentProcessJob:
        """
        Record a user's cancellation request.

        pending    → user_cancelled immediately
        processing → flag set; the worker turns its next transition into
                     user_cancelled
        terminal   → unchanged
        """
        async with transaction(self._factory) as session:
            job = await session.get(DocumentProcessJob, job_id)
            if job is None:
                raise JobNotFoundError(PipelineErrors.job_not_found(job_id))
            if is_terminal(job.status):
                logger.info("Cancel ignored, job already %s | job=%s", job.status, job_id)
                return job
            if not job.cancel_requested:
                await session.execute(
                    update(DocumentProcessJob)
                    .where(
                        DocumentProcessJob.id == job_id,
                        DocumentProcessJob.status.in_(
                            [JobStatus.PENDING.value, JobStatus.PROCESSING.value]
                        ),
                    )
                    .values(cancel_requested=True)
                    .execution_options(synchronize_session=False)
                )
                session.add(AuditLog(
                    user_id=user_id,
                    action="job.cancel_requested",
                    resource=f"job:{job_id}",
                    details={"status": job.status},
                    success=True,
                ))
        logger.info("Cancellation requested | job=%s user=%s", job_id, user_id)

        await self._transition(
            job_id,
            JobStatus.USER_CANCELLED,
            actor=user_id,
            expected=JobStatus.PENDING,
        )
        return await self.get_job(job_id)

    async def mark_user_not_found(self, job_id: str, actor: str) -> DocumentProcessJob:
        """Upstream reported the applicant account no longer exists."""
        return await self._mark(job_id, JobStatus.USER_NOT_FOUND, actor)

    async def mark_document_not_found(self, job_id: str, actor: str) -> DocumentProcessJob:
        """Upstream reported the document record no longer exists."""
        return await self._mark(job_id, JobStatus.DOCUMENT_NOT_FOUND, actor)

    async def _mark(self, job_id: str, status: JobStatus, actor: str) -> DocumentProcessJob:
        done = await self._transition(job_id, status, actor=actor)
        if done is not None:
            return done.job
        job = await self.get_job(job_id)
        raise JobStateConflictError(
            PipelineErrors.job_state_conflict(job_id, job.status, status.value)
        )

    # ------------------------------------------------------------------
    # Compare-and-set core
    # ------------------------------------------------------------------

    async def _transition(
        self,
        job_id: str,
        target: JobStatus,
        *,
        reason:        ApplicationFailedReason | None = None,
        result:        dict[str, Any] | None = None,
        actor:         str | None = None,
        expected:      JobStatus | None = None,
        honour_cancel: bool = False,
        details:       dict | None = None,
    ) -> Transition | None:
        for _ in range(_CAS_ATTEMPTS):
            async with transaction(self._factory) as session:
                job = await session.get(DocumentProcessJob, job_id, populate_existing=True)
                if job is None:
                    logger.warning("Transition on missing job | job=%s target=%s", job_id, target.value)
                    return None

                source = JobStatus(job.status)
                if expected is not None and source is not expected:
                    return None

                effective = target
                if honour_cancel and job.cancel_requested and target is not JobStatus.USER_CANCELLED:
                    effective = JobStatus.USER_CANCELLED

                if not can_transition(source, effective):
                    logger.info(
                        "Transition refused | job=%s %s -> %s",
                        job_id, source.value, effective.value,
                    )
                    return None

                values = self._outcome_values(effective, reason, result)
                values["updated_at"] = _next_timestamp(job.updated_at)

                cas = await session.execute(
                    update(DocumentProcessJob)
                    .where(
                        DocumentProcessJob.id == job_id,
                        DocumentProcessJob.status == source.value,
                        DocumentProcessJob.cancel_requested.is_(bool(job.cancel_requested)),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if cas.rowcount != 1:
                    continue

                extracted = None
                if effective is JobStatus.COMPLETED:
                    extracted = await self._record_extraction(session, job, values["result"])

                session.add(AuditLog(
                    user_id=actor,
                    action=f"job.{effective.value}",
                    resource=f"job:{job_id}",
                    details={
                        "from":  source.value,
                        "error": values.get("error"),
                        **(details or {}),
                    },
                    success=effective is JobStatus.COMPLETED,
                ))
                await session.refresh(job)

            logger.info(
                "Job transition | job=%s %s -> %s error=%s",
                job_id, source.value, effective.value, job.error,
            )
            if is_terminal(effective):
                await self._emit(job)
            return Transition(job=job, source=source, extracted=extracted)

        logger.warning("Transition abandoned after contention | job=%s target=%s", job_id, target.value)
        return None

    @staticmethod
    def _outcome_values(
        status: JobStatus,
        reason: ApplicationFailedReason | None,
        result: dict[str, Any] | None,
    ) -> dict[str, Any]:
        if status is JobStatus.COMPLETED:
            if result is None:
                raise ValueError("completed requires a result")
            return {"status": status.value, "result": result, "error": None}
        if status is JobStatus.FAILED:
            code = ApplicationFailedReason(reason or ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED)
            return {"status": status.value, "result": None, "error": code.value}
        if status in STATUS_REASONS:
            return {"status": status.value, "result": None, "error": STATUS_REASONS[status].value}
        return {"status": status.value}

    @staticmethod
    async def _record_extraction(
        session: AsyncSession,
        job: DocumentProcessJob,
        fields: dict[str, Any],
    ) -> ExtractedData:
        record = ExtractedData(
            job_id=job.id,
            application_id=job.application_id,
            document_type=job.type,
            result=fields,
            verification_status=VerificationStatus.PENDING.value,
            created_at=utcnow(),
        )
        session.add(record)
        await session.flush()

        # Older undecided extractions for the same document slot are superseded
        await session.execute(
            update(ExtractedData)
            .where(
                ExtractedData.application_id == job.application_id,
                ExtractedData.document_type == job.type,
                ExtractedData.verification_status == VerificationStatus.PENDING.value,
                ExtractedData.superseded_by.is_(None),
                ExtractedData.id != record.id,
            )
            .values(superseded_by=record.id)
            .execution_options(synchronize_session=False)
        )
        return record

    # ------------------------------------------------------------------
    # Outcome events
    # ------------------------------------------------------------------

    async def find_unpublished_outcomes(
        self,
        older_than: datetime,
        limit: int,
    ) -> list[DocumentProcessJob]:
        """Terminal jobs whose outcome event the broker never accepted."""
        terminal = [s.value for s in TERMINAL_STATUSES]
        async with self._factory() as session:
            result = await session.execute(
                select(DocumentProcessJob)
                .where(
                    DocumentProcessJob.status.in_(terminal),
                    DocumentProcessJob.outcome_published_at.is_(None),
                    DocumentProcessJob.updated_at < older_than,
                )
                .order_by(DocumentProcessJob.updated_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def republish_outcome(self, job_id: str) -> bool:
        """Publish the outcome event of a terminal job that has not been stamped yet."""
        job = await self.load_job(job_id)
        if job is None or not is_terminal(job.status) or job.outcome_published_at is not None:
            return False
        return await self._emit(job)

    async def _emit(self, job: DocumentProcessJob) -> bool:
        if self._events is None:
            return False
        event = JobOutcomeEvent(
            job_id=job.id,
            application_id=job.application_id,
            user_id=job.user_id,
            document_type=DocumentType(job.type),
            status=JobStatus(job.status),
            error=ApplicationFailedReason(job.error) if job.error else None,
            notify_email=job.notify_email,
            notify_chat_id=job.notify_chat_id,
            occurred_at=as_utc(job.updated_at),
        )
        try:
            await self._events.publish_job_outcome(event)
        except Exception as exc:
            # Left unstamped; the reconciliation sweep publishes it again.
            logger.error("Outcome event not published | job=%s error=%s", job.id, exc)
            return False

        # updated_at stays put: it is the time of the transition, not of the publish
        try:
            async with transaction(self._factory) as session:
                await session.execute(
                    update(DocumentProcessJob)
                    .where(
                        DocumentProcessJob.id == job.id,
                        DocumentProcessJob.outcome_published_at.is_(None),
                    )
                    .values(outcome_published_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as exc:
            # Published but unstamped; a republish is absorbed by the delivery ledger.
            logger.error("Outcome publish not recorded | job=%s error=%s", job.id, exc)
        return True
