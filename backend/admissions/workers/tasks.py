"""
Celery Tasks — Document Pipeline and Notification Channels

Task: process_job
  Runs the ExtractionWorker for one {job_id} reference. The job row is the
  source of truth; a redelivered message for a job that already moved on
  is a no-op.

Task: dispatch_job_outcome
  Fans a terminal JobOutcomeEvent out to one task per notification channel.

Tasks: send_email / send_telegram
  Deliver one rendered notification. Transient errors retry with
  exponential backoff up to notification_max_retries; permanent errors and
  exhausted retries are logged and dropped. A (job, channel) pair already
  in the DeliveryLedger is not sent again, so a redelivered fan-out or a
  republished outcome does not notify twice. Nothing here touches job state.

Task: reconcile_stale_jobs
  Beat task — re-queues stale pending jobs, fails jobs stuck in
  processing and republishes outcome events the broker never accepted.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from celery import Task
from sqlalchemy.exc import SQLAlchemyError

from admissions.core.config import settings
from admissions.notifications.delivery import PermanentDeliveryError, TransientDeliveryError
from admissions.schemas.jobs import JobOutcomeEvent, NotificationTask
from admissions.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


@asynccontextmanager
async def _session_factory():
    """A private engine per task run; pooled connections are bound to one event loop."""
    from admissions.db.session import build_engine, build_session_factory

    engine = build_engine(settings.database_url, echo=settings.db_echo_sql)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

@celery_app.task(
    name="admissions.workers.tasks.process_job",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def process_job(self: Task, *, job_id: str) -> dict[str, Any]:
    """Extraction worker entry point; retried only when the database is unreachable."""
    try:
        return run_async(_process_job_async(job_id))
    except (SQLAlchemyError, OSError) as exc:
        logger.exception("Job store unavailable | job=%s", job_id)
        raise self.retry(exc=exc)


async def _process_job_async(job_id: str) -> dict[str, Any]:
    from admissions.extraction.client import ExtractionClient
    from admissions.services.extraction_worker import ExtractionWorker
    from admissions.services.job_store import JobStore
    from admissions.services.publishers import EventPublisher
    from admissions.storage.s3 import S3StorageService

    async with _session_factory() as factory:
        worker = ExtractionWorker(
            JobStore(factory, EventPublisher()),
            S3StorageService(),
            ExtractionClient.from_settings(settings),
            max_attempts=settings.extraction_max_attempts,
            backoff_base=settings.extraction_backoff_base,
            backoff_max=settings.extraction_backoff_max,
        )
        return await worker.process(job_id)


# ---------------------------------------------------------------------------
# Outcome fan-out
# ---------------------------------------------------------------------------

@celery_app.task(
    name="admissions.workers.tasks.dispatch_job_outcome",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def dispatch_job_outcome(*, event: dict[str, Any]) -> dict[str, Any]:
    return run_async(_dispatch_job_outcome_async(JobOutcomeEvent.model_validate(event)))


async def _dispatch_job_outcome_async(event: JobOutcomeEvent) -> dict[str, Any]:
    from admissions.notifications.dispatcher import NotificationDispatcher
    from admissions.services.publishers import NotificationPublisher

    dispatcher = NotificationDispatcher(
        settings.notification_channels,
        NotificationPublisher(),
        school_name=settings.school_name,
    )
    published = await dispatcher.dispatch(event)
    return {"job_id": event.job_id, "channels": [t.channel.value for t in published]}


# ---------------------------------------------------------------------------
# Channel workers
# ---------------------------------------------------------------------------

def _deliver(task: Task, notification: NotificationTask, send) -> dict[str, Any]:
    channel = notification.channel.value
    try:
        send()
    except PermanentDeliveryError as exc:
        logger.error(
            "Notification dropped, permanent error | job=%s channel=%s error=%s",
            notification.job_id, channel, exc,
        )
        return {"status": "dropped", "job_id": notification.job_id, "channel": channel}
    except TransientDeliveryError as exc:
        if task.request.retries >= task.max_retries:
            logger.error(
                "Notification dropped, retries exhausted | job=%s channel=%s attempts=%d error=%s",
                notification.job_id, channel, task.request.retries + 1, exc,
            )
            return {"status": "dropped", "job_id": notification.job_id, "channel": channel}
        logger.warning(
            "Notification delivery failed, retrying | job=%s channel=%s attempt=%d error=%s",
            notification.job_id, channel, task.request.retries + 1, exc,
        )
        raise
    return {"status": "sent", "job_id": notification.job_id, "channel": channel}


@asynccontextmanager
async def _ledger():
    from admissions.notifications.delivery import DeliveryLedger

    async with _session_factory() as factory:
        yield DeliveryLedger(factory)


async def _already_sent(notification: NotificationTask) -> bool:
    async with _ledger() as ledger:
        return await ledger.was_sent(notification.job_id, notification.channel.value)


async def _record_sent(notification: NotificationTask) -> None:
    async with _ledger() as ledger:
        await ledger.mark_sent(notification.job_id, notification.channel.value)


def _deliver_once(task: Task, notification: NotificationTask, send) -> dict[str, Any]:
    """_deliver, skipped when the ledger already holds this (job, channel)."""
    channel = notification.channel.value
    try:
        if run_async(_already_sent(notification)):
            logger.info(
                "Notification already sent, skipping | job=%s channel=%s",
                notification.job_id, channel,
            )
            return {"status": "duplicate", "job_id": notification.job_id, "channel": channel}
    except (SQLAlchemyError, OSError) as exc:
        logger.warning(
            "Delivery ledger unavailable, sending anyway | job=%s channel=%s error=%s",
            notification.job_id, channel, exc,
        )

    outcome = _deliver(task, notification, send)
    if outcome["status"] == "sent":
        try:
            run_async(_record_sent(notification))
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                "Delivery not recorded | job=%s channel=%s error=%s",
                notification.job_id, channel, exc,
            )
    return outcome


@celery_app.task(
    name="admissions.workers.tasks.send_email",
    bind=True,
    acks_late=True,
    autoretry_for=(TransientDeliveryError,),
    retry_backoff=True,
    retry_backoff_max=settings.notification_retry_backoff_max,
    retry_jitter=True,
    max_retries=settings.notification_max_retries,
)
def send_email(self: Task, *, task: dict[str, Any]) -> dict[str, Any]:
    from admissions.notifications.email import SmtpEmailSender

    notification = NotificationTask.model_validate(task)
    sender = SmtpEmailSender.from_settings(settings)
    return _deliver_once(
        self,
        notification,
        lambda: sender.send(
            to=notification.recipient,
            subject=notification.subject,
            text=notification.text,
            html=notification.html,
        ),
    )


@celery_app.task(
    name="admissions.workers.tasks.send_telegram",
    bind=True,
    acks_late=True,
    autoretry_for=(TransientDeliveryError,),
    retry_backoff=True,
    retry_backoff_max=settings.notification_retry_backoff_max,
    retry_jitter=True,
    max_retries=settings.notification_max_retries,
)
def send_telegram(self: Task, *, task: dict[str, Any]) -> dict[str, Any]:
    from admissions.notifications.telegram import TelegramSender

    notification = NotificationTask.model_validate(task)
    sender = TelegramSender.from_settings(settings)
    return _deliver_once(
        self,
        notification,
        lambda: sender.send(chat_id=notification.recipient, text=notification.text),
    )


CHANNEL_TASKS = {
    "email":    send_email,
    "telegram": send_telegram,
}


# ---------------------------------------------------------------------------
# Reconciliation sweep: runs every reconcile_interval_seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="admissions.workers.tasks.reconcile_stale_jobs",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def reconcile_stale_jobs() -> dict[str, int]:
    return run_async(_reconcile_stale_jobs_async())


async def _reconcile_stale_jobs_async() -> dict[str, int]:
    from admissions.services.job_store import JobStore
    from admissions.services.publishers import EventPublisher, TaskPublisher
    from admissions.services.reconciliation import Reconciler

    async with _session_factory() as factory:
        reconciler = Reconciler(
            JobStore(factory, EventPublisher()),
            TaskPublisher(),
            stale_pending_seconds=settings.stale_pending_seconds,
            stale_processing_seconds=settings.stale_processing_seconds,
            stale_outcome_seconds=settings.stale_outcome_seconds,
            batch_size=settings.reconcile_batch_size,
        )
        return await reconciler.sweep()


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="admissions.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
