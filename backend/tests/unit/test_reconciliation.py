"""
Unit Tests — Reconciler (stale job sweep)
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from admissions.models.jobs import utcnow
from admissions.schemas.enums import ApplicationFailedReason, JobStatus
from admissions.services.reconciliation import Reconciler


@pytest.fixture
def reconciler(store, mock_publisher):
    return Reconciler(
        store,
        mock_publisher,
        stale_pending_seconds=300,
        stale_processing_seconds=1800,
        stale_outcome_seconds=120,
        batch_size=10,
    )


@pytest.mark.unit
class TestSweep:

    async def test_fresh_jobs_are_left_alone(self, reconciler, make_job, mock_publisher):
        await make_job()
        assert await reconciler.sweep() == {"requeued": 0, "failed": 0, "republished": 0}
        mock_publisher.publish_process_job.assert_not_awaited()

    async def test_stale_pending_job_is_requeued_once(self, reconciler, make_job, store, mock_publisher):
        job = await make_job()
        later = utcnow() + timedelta(minutes=10)

        first = await reconciler.sweep(now=later)

        assert first == {"requeued": 1, "failed": 0, "republished": 0}
        mock_publisher.publish_process_job.assert_awaited_once_with(job.id)
        assert (await store.get_job(job.id)).status == JobStatus.PENDING.value

        # touched: not stale again until another interval passes
        assert await reconciler.sweep(now=utcnow()) == {"requeued": 0, "failed": 0, "republished": 0}

    async def test_stuck_processing_job_is_failed(self, reconciler, make_job, store, mock_events):
        job = await make_job()
        await store.claim(job.id)

        result = await reconciler.sweep(now=utcnow() + timedelta(hours=1))

        assert result == {"requeued": 0, "failed": 1, "republished": 0}
        failed = await store.get_job(job.id)
        assert failed.status == JobStatus.FAILED.value
        assert failed.error == ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED.value
        assert mock_events.publish_job_outcome.await_args.args[0].status is JobStatus.FAILED

    async def test_processing_job_within_window_is_kept(self, reconciler, make_job, store):
        job = await make_job()
        await store.claim(job.id)

        result = await reconciler.sweep(now=utcnow() + timedelta(minutes=10))

        assert result["failed"] == 0
        assert (await store.get_job(job.id)).status == JobStatus.PROCESSING.value

    async def test_publish_failure_is_not_counted(self, reconciler, make_job, mock_publisher):
        mock_publisher.publish_process_job.side_effect = ConnectionError("broker down")
        await make_job()

        result = await reconciler.sweep(now=utcnow() + timedelta(minutes=10))

        assert result["requeued"] == 0


@pytest.mark.unit
class TestOutcomeRepublish:

    async def test_outcome_lost_to_broker_is_published_by_next_sweep(
        self, reconciler, make_job, store, mock_events,
    ):
        mock_events.publish_job_outcome.side_effect = [ConnectionError("broker down"), None]
        job = await make_job()
        await store.claim(job.id)
        await store.complete(job.id, {"ho_ten": "Nguyen Van An"})
        assert mock_events.publish_job_outcome.await_count == 1

        result = await reconciler.sweep(now=utcnow() + timedelta(days=1))

        assert result == {"requeued": 0, "failed": 0, "republished": 1}
        assert mock_events.publish_job_outcome.await_count == 2
        event = mock_events.publish_job_outcome.await_args.args[0]
        assert (event.job_id, event.status) == (job.id, JobStatus.COMPLETED)
        assert (await store.get_job(job.id)).outcome_published_at is not None

        # stamped now; later sweeps leave it alone
        again = await reconciler.sweep(now=utcnow() + timedelta(days=2))
        assert again["republished"] == 0
        assert mock_events.publish_job_outcome.await_count == 2

    async def test_recent_unpublished_outcome_waits_for_its_window(
        self, reconciler, make_job, store, mock_events,
    ):
        mock_events.publish_job_outcome.side_effect = ConnectionError("broker down")
        job = await make_job()
        await store.request_cancellation(job.id, job.user_id)

        result = await reconciler.sweep(now=utcnow() + timedelta(seconds=30))

        assert result["republished"] == 0
        assert mock_events.publish_job_outcome.await_count == 1

    async def test_broker_still_down_keeps_job_for_later(
        self, reconciler, make_job, store, mock_events,
    ):
        mock_events.publish_job_outcome.side_effect = ConnectionError("broker down")
        job = await make_job()
        await store.finish(job.id, JobStatus.FAILED)

        first = await reconciler.sweep(now=utcnow() + timedelta(hours=1))
        assert first["republished"] == 0
        assert (await store.get_job(job.id)).outcome_published_at is None

        mock_events.publish_job_outcome.side_effect = None
        second = await reconciler.sweep(now=utcnow() + timedelta(hours=2))
        assert second["republished"] == 1
        assert mock_events.publish_job_outcome.await_count == 3
