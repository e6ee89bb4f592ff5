"""
Queue publishers — thin abstractions over Celery apply_async().

Injected into the services so they can be mocked in tests. Celery imports
are deferred so the broker connection is not required at module load time,
and every apply_async runs in a thread executor to avoid blocking the event
loop.
"""

from __future__ import annotations

import asyncio
import logging

from admissions.schemas.jobs import JobOutcomeEvent, NotificationTask

logger = logging.getLogger(__name__)


async def _in_executor(fn) -> None:
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, fn)


class TaskPublisher:
    """Puts `{job_id}` references on the extraction queue."""

    async def publish_process_job(self, job_id: str, *, countdown: int = 0) -> None:
        from admissions.workers.tasks import process_job

        await _in_executor(
            lambda: process_job.apply_async(
                kwargs={"job_id": job_id},
                countdown=countdown,
            )
        )
        logger.info("Extraction task published | job=%s", job_id)


class EventPublisher:
    """Publishes the "job reached a terminal state" event."""

    async def publish_job_outcome(self, event: JobOutcomeEvent) -> None:
        from admissions.workers.tasks import dispatch_job_outcome

        payload = event.model_dump(mode="json")
        await _in_executor(lambda: dispatch_job_outcome.apply_async(kwargs={"event": payload}))
        logger.info("Outcome event published | job=%s status=%s", event.job_id, event.status.value)


class NotificationPublisher:
    """Routes a NotificationTask to its channel queue."""

    async def publish(self, task: NotificationTask) -> None:
        from admissions.workers.tasks import CHANNEL_TASKS

        channel_task = CHANNEL_TASKS[task.channel.value]
        payload = task.model_dump(mode="json")
        await _in_executor(lambda: channel_task.apply_async(kwargs={"task": payload}))
        logger.info(
            "Notification queued | job=%s channel=%s", task.job_id, task.channel.value,
        )
