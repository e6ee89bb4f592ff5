"""
Composed FastAPI Dependencies

Combines the session factory, object storage and queue publishers into
the service objects route handlers use. Route handlers
import from here — never from db/session or storage directly.

This is the single wiring point for the request path; tests replace the
leaf providers through app.dependency_overrides.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from admissions.core.config import settings
from admissions.db.session import get_session_factory
from admissions.services.intake import IntakeService
from admissions.services.job_store import JobStore
from admissions.services.publishers import EventPublisher, TaskPublisher
from admissions.services.verification import VerificationGate
from admissions.storage.s3 import S3StorageService


# ---------------------------------------------------------------------------
# Leaf providers
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_storage() -> S3StorageService:
    return S3StorageService()


def get_task_publisher() -> TaskPublisher:
    return TaskPublisher()


def get_event_publisher() -> EventPublisher:
    return EventPublisher()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

def get_job_store(
    factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    events:  Annotated[EventPublisher, Depends(get_event_publisher)],
) -> JobStore:
    return JobStore(factory, events)


def get_intake_service(
    store:     Annotated[JobStore, Depends(get_job_store)],
    storage:   Annotated[S3StorageService, Depends(get_storage)],
    publisher: Annotated[TaskPublisher, Depends(get_task_publisher)],
) -> IntakeService:
    return IntakeService(
        store,
        storage,
        publisher,
        max_upload_bytes=settings.max_upload_bytes,
    )


def get_verification_gate(
    factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> VerificationGate:
    return VerificationGate(factory)


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Store   = Annotated[JobStore,         Depends(get_job_store)]
Intake  = Annotated[IntakeService,    Depends(get_intake_service)]
Gate    = Annotated[VerificationGate, Depends(get_verification_gate)]
