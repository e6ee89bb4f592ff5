"""
Extraction Worker

Drives one job reference through the pipeline:

  1. Load the job. Missing → drop the message (redelivery after a crash
     is a harmless no-op). Terminal or already processing → no-op.
  2. Claim it (pending → processing) before doing any work, so a crash
     mid-extraction leaves the job visibly "processing" for the
     reconciliation sweep.
  3. Fetch bytes from object storage.
       missing object          → failed / DOCUMENT_NOT_FOUND, no extraction
       transient storage error → retried, then DOCUMENT_PROCESSING_FAILED
  4. Check for cancellation.
  5. Call the extraction adapter.
       transient error         → retried with exponential backoff,
                                 then DOCUMENT_PROCESSING_FAILED
       conclusive failure      → failed with the mapped reason, no retry
  6. Check for cancellation again.
  7. processing → completed, ExtractedData(PENDING) created in the same
     transaction.

Cancellation is cooperative: the store refuses completed/failed once the
flag is set and records user_cancelled instead, so a request that lands
while the extraction call is in flight still wins.

Any unexpected exception after the claim is logged and mapped to the
generic DOCUMENT_PROCESSING_FAILED; raw errors never reach the job record.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from botocore.exceptions import ClientError

from admissions.extraction.client import (
    ExtractionFailure,
    TransientExtractionError,
    reason_for,
)
from admissions.schemas.enums import ApplicationFailedReason, DocumentType, JobStatus
from admissions.services.filetypes import sniff_content_type
from admissions.services.job_store import JobStore
from admissions.services.state_machine import is_terminal

logger = logging.getLogger(__name__)

# botocore / aiohttp exception class names that indicate a transient fault
_RETRYABLE_EXCEPTION_TYPES = (
    "EndpointConnectionError",
    "ConnectTimeoutError",
    "ReadTimeoutError",
    "ConnectionClosedError",
    "ClientConnectorError",
    "ServerDisconnectedError",
)

_RETRYABLE_S3_CODES = frozenset({
    "SlowDown",
    "InternalError",
    "ServiceUnavailable",
    "RequestTimeout",
    "Throttling",
    "ThrottlingException",
    "500",
    "503",
})


def _is_transient(exc: Exception) -> bool:
    """True if retrying the same call could succeed."""
    if isinstance(exc, (TransientExtractionError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code") in _RETRYABLE_S3_CODES
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


class RetriesExhausted(Exception):
    """A transient error persisted through every attempt."""

    def __init__(self, stage: str, last_error: Exception | None) -> None:
        super().__init__(f"{stage}: {last_error}")
        self.stage      = stage
        self.last_error = last_error


class ExtractionWorker:
    """
    Stateless; one instance per worker process. All collaborators are
    injected so the whole flow runs against fakes in tests.
    """

    def __init__(
        self,
        store:     JobStore,
        storage,
        extractor,
        *,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        backoff_max:  float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store        = store
        self._storage      = storage
        self._extractor    = extractor
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._backoff_max  = backoff_max
        self._sleep        = sleep

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def process(self, job_id: str) -> dict[str, Any]:
        job = await self._store.load_job(job_id)
        if job is None:
            logger.warning("Job not found, dropping message | job=%s", job_id)
            return {"status": "dropped", "job_id": job_id}

        if is_terminal(job.status):
            logger.info("Job already %s, nothing to do | job=%s", job.status, job_id)
            return {"status": "noop", "job_id": job_id, "current_status": job.status}

        if job.status == JobStatus.PENDING.value and job.cancel_requested:
            return await self._finish(job_id, JobStatus.USER_CANCELLED)

        claimed = await self._store.claim(job_id)
        if claimed is None:
            logger.info("Job owned by another attempt, skipping | job=%s", job_id)
            return {"status": "skipped", "job_id": job_id, "current_status": job.status}

        try:
            return await self._run(claimed)
        except Exception:
            logger.exception("Unexpected extraction error | job=%s", job_id)
            return await self._finish(
                job_id, JobStatus.FAILED, ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED,
            )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, job) -> dict[str, Any]:
        job_id = job.id

        # ---- Fetch ---------------------------------------------------
        try:
            data = await self._with_retry(
                job_id, "fetch", lambda: self._storage.get_object(job.file_id),
            )
        except FileNotFoundError:
            logger.warning("Object missing | job=%s key=%s", job_id, job.file_id)
            return await self._finish(
                job_id, JobStatus.FAILED, ApplicationFailedReason.DOCUMENT_NOT_FOUND,
            )
        except RetriesExhausted as exc:
            logger.error("Fetch gave up | job=%s error=%s", job_id, exc.last_error)
            return await self._finish(
                job_id, JobStatus.FAILED, ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED,
            )

        if await self._store.is_cancel_requested(job_id):
            return await self._finish(job_id, JobStatus.USER_CANCELLED)

        # ---- Extract -------------------------------------------------
        document_type = DocumentType(job.type)
        content_type = sniff_content_type(data, job.file_name)
        try:
            fields = await self._with_retry(
                job_id,
                "extract",
                lambda: self._extractor.extract(
                    data,
                    document_type,
                    file_name=job.file_name,
                    content_type=content_type,
                ),
            )
        except ExtractionFailure as exc:
            reason = reason_for(exc.kind)
            logger.info(
                "Extraction rejected document | job=%s kind=%s reason=%s",
                job_id, exc.kind.value, reason.value,
            )
            return await self._finish(job_id, JobStatus.FAILED, reason)
        except RetriesExhausted as exc:
            logger.error("Extraction gave up | job=%s error=%s", job_id, exc.last_error)
            return await self._finish(
                job_id, JobStatus.FAILED, ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED,
            )

        if await self._store.is_cancel_requested(job_id):
            return await self._finish(job_id, JobStatus.USER_CANCELLED)

        # ---- Complete ------------------------------------------------
        done = await self._store.complete(job_id, fields)
        if done is None:
            logger.warning("Completion refused | job=%s", job_id)
            return {"status": "skipped", "job_id": job_id}

        logger.info(
            "Processing complete | job=%s status=%s extracted=%s",
            job_id, done.job.status, done.extracted.id if done.extracted else None,
        )
        return {
            "status":            done.job.status,
            "job_id":            job_id,
            "extracted_data_id": done.extracted.id if done.extracted else None,
            "error":             done.job.error,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _with_retry(self, job_id: str, stage: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run `call`, retrying transient errors with exponential back-off."""
        last_error: Exception | None = None

        for attempt in range(self._max_attempts):
            if attempt > 0:
                delay = min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)
                logger.warning(
                    "Retry | job=%s stage=%s attempt=%d delay=%.1fs error=%s",
                    job_id, stage, attempt, delay, last_error,
                )
                await self._sleep(delay)
            try:
                return await call()
            except Exception as exc:
                if not _is_transient(exc):
                    raise
                last_error = exc

        raise RetriesExhausted(stage, last_error)

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        reason: ApplicationFailedReason | None = None,
    ) -> dict[str, Any]:
        done = await self._store.finish(job_id, status, reason)
        if done is None:
            return {"status": "skipped", "job_id": job_id}
        return {"status": done.job.status, "job_id": job_id, "error": done.job.error}
