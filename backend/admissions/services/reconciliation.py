"""
Reconciliation sweep for jobs the queue lost track of.

    pending    older than stale_pending_seconds     → re-published to the
                                                      extraction queue
    processing older than stale_processing_seconds  → failed with
                                                      DOCUMENT_PROCESSING_FAILED
    terminal   older than stale_outcome_seconds     → outcome event published
               and never stamped as published         again

The first two go through the JobStore compare-and-set, so a sweep racing a
live worker changes nothing the worker already decided.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from admissions.models.jobs import utcnow
from admissions.schemas.enums import ApplicationFailedReason, JobStatus
from admissions.services.job_store import JobStore

logger = logging.getLogger(__name__)


class Reconciler:

    def __init__(
        self,
        store: JobStore,
        publisher,
        *,
        stale_pending_seconds:    int,
        stale_processing_seconds: int,
        stale_outcome_seconds:    int = 120,
        batch_size:               int = 50,
    ) -> None:
        self._store      = store
        self._publisher  = publisher
        self._pending    = timedelta(seconds=stale_pending_seconds)
        self._processing = timedelta(seconds=stale_processing_seconds)
        self._outcome    = timedelta(seconds=stale_outcome_seconds)
        self._batch_size = batch_size

    async def sweep(self, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        requeued    = await self._requeue_pending(now - self._pending)
        failed      = await self._fail_processing(now - self._processing)
        republished = await self._republish_outcomes(now - self._outcome)
        if requeued or failed or republished:
            logger.warning(
                "Reconcile sweep | requeued=%d failed=%d republished=%d",
                requeued, failed, republished,
            )
        return {"requeued": requeued, "failed": failed, "republished": republished}

    async def _requeue_pending(self, cutoff: datetime) -> int:
        count = 0
        for job in await self._store.find_stale(JobStatus.PENDING, cutoff, self._batch_size):
            if not await self._store.touch(job.id, JobStatus.PENDING):
                continue
            try:
                await self._publisher.publish_process_job(job.id)
            except Exception as exc:
                logger.error("Requeue failed | job=%s error=%s", job.id, exc)
                continue
            await self._store.record_event(job.id, "job.requeued", details={"reason": "stale_pending"})
            count += 1
        return count

    async def _fail_processing(self, cutoff: datetime) -> int:
        count = 0
        for job in await self._store.find_stale(JobStatus.PROCESSING, cutoff, self._batch_size):
            done = await self._store.finish(
                job.id,
                JobStatus.FAILED,
                ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED,
                expected=JobStatus.PROCESSING,
                details={"reason": "stale_processing"},
            )
            if done is not None:
                count += 1
        return count

    async def _republish_outcomes(self, cutoff: datetime) -> int:
        count = 0
        for job in await self._store.find_unpublished_outcomes(cutoff, self._batch_size):
            if await self._store.republish_outcome(job.id):
                logger.info("Outcome event republished | job=%s status=%s", job.id, job.status)
                count += 1
        return count
