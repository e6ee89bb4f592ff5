"""
Unit Tests — JobStore
══════════════════════
Runs against a real (SQLite) database so the compare-and-set UPDATEs, the
check constraints and the supersede step are exercised for real.

Coverage:
  ✅ create → pending, audited
  ✅ claim is exclusive; a second claim gets None
  ✅ complete creates a PENDING ExtractedData and emits exactly one event
  ✅ terminal jobs never move again (no second event)
  ✅ cancellation: pending cancels now, processing cancels at completion
  ✅ admin signals and their conflicts
  ✅ newer extractions supersede undecided older ones
  ✅ updated_at strictly increases on every transition
  ✅ published outcomes are stamped; unpublished ones are found and republished once
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from admissions.core.exceptions import JobNotFoundError, JobStateConflictError
from admissions.models.jobs import AuditLog, ExtractedData, utcnow
from admissions.schemas.enums import ApplicationFailedReason, DocumentType, JobStatus, VerificationStatus
from admissions.services.job_store import as_utc


async def _audit_actions(session_factory, job_id: str) -> list[str]:
    async with session_factory() as session:
        result = await session.execute(
            select(AuditLog.action)
            .where(AuditLog.resource == f"job:{job_id}")
            .order_by(AuditLog.id)
        )
        return list(result.scalars().all())


def _emitted(mock_events):
    return [c.args[0] for c in mock_events.publish_job_outcome.await_args_list]


@pytest.mark.unit
class TestCreateAndRead:

    async def test_create_job_is_pending_and_audited(self, store, make_job, session_factory):
        job = await make_job()

        assert job.status == JobStatus.PENDING.value
        assert job.result is None and job.error is None
        assert job.cancel_requested is False
        assert await _audit_actions(session_factory, job.id) == ["job.created"]

    async def test_get_job_missing_raises(self, store):
        with pytest.raises(JobNotFoundError) as exc_info:
            await store.get_job("nope")
        assert exc_info.value.error.error_code == "JOB_NOT_FOUND"

    async def test_list_for_application_in_creation_order(self, store, make_job):
        first  = await make_job(application_id="APP-9")
        second = await make_job(application_id="APP-9", document_type=DocumentType.CERTIFICATE)
        await make_job(application_id="APP-other")

        jobs = await store.list_for_application("APP-9")
        assert [j.id for j in jobs] == [first.id, second.id]


@pytest.mark.unit
class TestClaimAndComplete:

    async def test_claim_is_exclusive(self, store, make_job):
        job = await make_job()

        claimed = await store.claim(job.id)
        again   = await store.claim(job.id)

        assert claimed is not None
        assert claimed.status == JobStatus.PROCESSING.value
        assert again is None

    async def test_claim_missing_job_returns_none(self, store):
        assert await store.claim("missing") is None

    async def test_complete_creates_pending_extraction(self, store, make_job, mock_events):
        job = await make_job()
        await store.claim(job.id)

        done = await store.complete(job.id, {"student_name": "Nguyễn Văn A", "gpa": 8.5})

        assert done.source is JobStatus.PROCESSING
        assert done.job.status == JobStatus.COMPLETED.value
        assert done.job.result == {"student_name": "Nguyễn Văn A", "gpa": 8.5}
        assert done.job.error is None
        assert done.extracted is not None
        assert done.extracted.verification_status == VerificationStatus.PENDING.value
        assert done.extracted.job_id == job.id

        events = _emitted(mock_events)
        assert len(events) == 1
        assert events[0].status is JobStatus.COMPLETED
        assert events[0].error is None
        assert events[0].notify_email == "parent@example.com"

    async def test_complete_requires_processing(self, store, make_job, mock_events):
        job = await make_job()
        assert await store.complete(job.id, {"x": 1}) is None
        assert (await store.get_job(job.id)).status == JobStatus.PENDING.value
        mock_events.publish_job_outcome.assert_not_awaited()

    async def test_terminal_job_never_moves_again(self, store, make_job, mock_events):
        job = await make_job()
        await store.claim(job.id)
        await store.finish(job.id, JobStatus.FAILED, ApplicationFailedReason.DOCUMENT_NOT_FOUND)

        assert await store.complete(job.id, {"x": 1}) is None
        assert await store.finish(job.id, JobStatus.FAILED) is None
        assert await store.claim(job.id) is None

        reloaded = await store.get_job(job.id)
        assert reloaded.status == JobStatus.FAILED.value
        assert reloaded.error == ApplicationFailedReason.DOCUMENT_NOT_FOUND.value
        assert len(_emitted(mock_events)) == 1

    async def test_failed_defaults_to_generic_reason(self, store, make_job):
        job = await make_job()
        await store.claim(job.id)
        done = await store.finish(job.id, JobStatus.FAILED)
        assert done.job.error == ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED.value
        assert done.job.result is None

    @pytest.mark.parametrize("target", [JobStatus.COMPLETED, JobStatus.PROCESSING, JobStatus.PENDING])
    async def test_finish_rejects_non_error_targets(self, store, make_job, target):
        job = await make_job()
        with pytest.raises(ValueError):
            await store.finish(job.id, target)

    async def test_updated_at_strictly_increases(self, store, make_job):
        job = await make_job()
        claimed = await store.claim(job.id)
        done = await store.complete(job.id, {"ok": True})

        assert as_utc(job.updated_at) < as_utc(claimed.updated_at) < as_utc(done.job.updated_at)

    async def test_transitions_are_audited(self, store, make_job, session_factory):
        job = await make_job()
        await store.claim(job.id)
        await store.complete(job.id, {"ok": True})

        assert await _audit_actions(session_factory, job.id) == ["job.created", "job.completed"]

    async def test_event_publish_failure_does_not_undo_transition(self, store, make_job, mock_events):
        mock_events.publish_job_outcome.side_effect = ConnectionError("broker down")
        job = await make_job()
        await store.claim(job.id)

        done = await store.complete(job.id, {"ok": True})

        assert done is not None
        assert (await store.get_job(job.id)).status == JobStatus.COMPLETED.value


@pytest.mark.unit
class TestCancellation:

    async def test_pending_job_cancels_immediately(self, store, make_job, mock_events, session_factory):
        job = await make_job()

        cancelled = await store.request_cancellation(job.id, "parent-0001")

        assert cancelled.status == JobStatus.USER_CANCELLED.value
        assert cancelled.error == ApplicationFailedReason.USER_CANCELLED.value
        assert cancelled.cancel_requested is True
        assert [e.status for e in _emitted(mock_events)] == [JobStatus.USER_CANCELLED]
        assert await _audit_actions(session_factory, job.id) == [
            "job.created", "job.cancel_requested", "job.user_cancelled",
        ]

    async def test_processing_job_cancels_at_completion(self, store, make_job, mock_events):
        job = await make_job()
        await store.claim(job.id)

        flagged = await store.request_cancellation(job.id, "parent-0001")
        assert flagged.status == JobStatus.PROCESSING.value
        assert flagged.cancel_requested is True
        assert await store.is_cancel_requested(job.id)

        done = await store.complete(job.id, {"ok": True})

        assert done.job.status == JobStatus.USER_CANCELLED.value
        assert done.job.result is None
        assert done.extracted is None
        assert [e.status for e in _emitted(mock_events)] == [JobStatus.USER_CANCELLED]

    async def test_processing_job_cancel_overrides_failure(self, store, make_job):
        job = await make_job()
        await store.claim(job.id)
        await store.request_cancellation(job.id, "parent-0001")

        done = await store.finish(job.id, JobStatus.FAILED, ApplicationFailedReason.DOCUMENT_NOT_FOUND)

        assert done.job.status == JobStatus.USER_CANCELLED.value

    async def test_terminal_job_is_unchanged(self, store, make_job, mock_events):
        job = await make_job()
        await store.claim(job.id)
        await store.complete(job.id, {"ok": True})

        after = await store.request_cancellation(job.id, "parent-0001")

        assert after.status == JobStatus.COMPLETED.value
        assert after.cancel_requested is False
        assert len(_emitted(mock_events)) == 1

    async def test_missing_job_raises(self, store):
        with pytest.raises(JobNotFoundError):
            await store.request_cancellation("missing", "parent-0001")


@pytest.mark.unit
class TestAdminSignals:

    async def test_user_not_found_from_pending(self, store, make_job, mock_events):
        job = await make_job()
        marked = await store.mark_user_not_found(job.id, "admin-01")

        assert marked.status == JobStatus.USER_NOT_FOUND.value
        assert marked.error == ApplicationFailedReason.USER_NOT_FOUND.value
        assert _emitted(mock_events)[0].error is ApplicationFailedReason.USER_NOT_FOUND

    async def test_document_not_found_from_processing(self, store, make_job):
        job = await make_job()
        await store.claim(job.id)
        marked = await store.mark_document_not_found(job.id, "admin-01")

        assert marked.status == JobStatus.DOCUMENT_NOT_FOUND.value
        assert marked.error == ApplicationFailedReason.DOCUMENT_NOT_FOUND.value

    async def test_signal_on_terminal_job_conflicts(self, store, make_job):
        job = await make_job()
        await store.request_cancellation(job.id, "parent-0001")

        with pytest.raises(JobStateConflictError) as exc_info:
            await store.mark_user_not_found(job.id, "admin-01")
        assert exc_info.value.status_code == 409

    async def test_signal_on_missing_job_is_not_found(self, store):
        with pytest.raises(JobNotFoundError):
            await store.mark_document_not_found("missing", "admin-01")


@pytest.mark.unit
class TestSupersede:

    async def test_newer_extraction_supersedes_pending_one(self, store, make_job, session_factory):
        first = await make_job()
        await store.claim(first.id)
        old = (await store.complete(first.id, {"v": 1})).extracted

        second = await make_job()
        await store.claim(second.id)
        new = (await store.complete(second.id, {"v": 2})).extracted

        async with session_factory() as session:
            old_row = await session.get(ExtractedData, old.id)
            new_row = await session.get(ExtractedData, new.id)
        assert old_row.superseded_by == new.id
        assert new_row.superseded_by is None

    async def test_other_document_types_are_untouched(self, store, make_job, session_factory):
        transcript = await make_job()
        await store.claim(transcript.id)
        kept = (await store.complete(transcript.id, {"v": 1})).extracted

        cert = await make_job(document_type=DocumentType.CERTIFICATE, file_id="applications/APP-2024-001/gk.png")
        await store.claim(cert.id)
        await store.complete(cert.id, {"v": 2})

        async with session_factory() as session:
            row = await session.get(ExtractedData, kept.id)
        assert row.superseded_by is None


@pytest.mark.unit
class TestStaleLookup:

    async def test_find_stale_and_touch(self, store, make_job):
        job = await make_job()

        assert await store.find_stale(JobStatus.PENDING, utcnow() - timedelta(minutes=5), 10) == []
        stale = await store.find_stale(JobStatus.PENDING, utcnow() + timedelta(seconds=1), 10)
        assert [j.id for j in stale] == [job.id]

        assert await store.touch(job.id, JobStatus.PENDING) is True
        assert await store.touch(job.id, JobStatus.PROCESSING) is False


@pytest.mark.unit
class TestOutcomePublication:

    async def test_published_outcome_is_stamped(self, store, make_job, mock_events):
        job = await make_job()
        await store.claim(job.id)
        done = await store.complete(job.id, {"ok": True})

        stored = await store.get_job(job.id)
        assert stored.outcome_published_at is not None
        # the stamp does not count as a transition
        assert as_utc(stored.updated_at) == as_utc(done.job.updated_at)
        assert await store.find_unpublished_outcomes(utcnow() + timedelta(days=1), 10) == []

    async def test_failed_publish_leaves_job_unpublished(self, store, make_job, mock_events):
        mock_events.publish_job_outcome.side_effect = ConnectionError("broker down")
        job = await make_job()
        await store.claim(job.id)
        await store.complete(job.id, {"ok": True})

        assert (await store.get_job(job.id)).outcome_published_at is None
        unpublished = await store.find_unpublished_outcomes(utcnow() + timedelta(seconds=1), 10)
        assert [j.id for j in unpublished] == [job.id]

    async def test_open_jobs_are_never_listed(self, store, make_job):
        pending = await make_job()
        processing = await make_job(file_id="applications/APP-2024-001/giaykhaisinh.pdf")
        await store.claim(processing.id)

        assert await store.find_unpublished_outcomes(utcnow() + timedelta(days=1), 10) == []
        assert await store.republish_outcome(pending.id) is False
        assert await store.republish_outcome(processing.id) is False

    async def test_republish_sends_the_same_outcome_once(self, store, make_job, mock_events):
        mock_events.publish_job_outcome.side_effect = [ConnectionError("broker down"), None]
        job = await make_job()
        await store.finish(
            job.id, JobStatus.FAILED, ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED_INVALID_FILE_TYPE,
        )

        assert await store.republish_outcome(job.id) is True
        assert await store.republish_outcome(job.id) is False

        first, second = _emitted(mock_events)
        assert first == second
        assert second.error is ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED_INVALID_FILE_TYPE

    async def test_republish_missing_job_is_false(self, store):
        assert await store.republish_outcome("nope") is False
