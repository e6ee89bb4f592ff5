"""
Verification Gate

Applies a verifier's one-shot decision to an ExtractedData record:

    PENDING ──verify(VERIFIED)──► VERIFIED
       └─────verify(REJECTED)──► REJECTED

The decision is a compare-and-set on verification_status = 'PENDING' and
superseded_by IS NULL. A second decision, or a decision on a record that a
newer extraction has superseded, is a conflict and changes nothing.

The gate owns ExtractedData.verification_status and never touches
DocumentProcessJob.
"""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from admissions.core.exceptions import ExtractedDataNotFoundError, VerificationConflictError
from admissions.db.session import transaction
from admissions.models.jobs import AuditLog, ExtractedData, utcnow
from admissions.schemas.enums import Verdict, VerificationStatus
from admissions.schemas.jobs import PipelineErrors

logger = logging.getLogger(__name__)


class VerificationGate:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def get(self, extracted_data_id: str) -> ExtractedData:
        async with self._factory() as session:
            record = await session.get(ExtractedData, extracted_data_id)
        if record is None:
            raise ExtractedDataNotFoundError(PipelineErrors.extracted_data_not_found(extracted_data_id))
        return record

    async def list_for_job(self, job_id: str) -> list[ExtractedData]:
        async with self._factory() as session:
            result = await session.execute(
                select(ExtractedData)
                .where(ExtractedData.job_id == job_id)
                .order_by(ExtractedData.created_at)
            )
            return list(result.scalars().all())

    async def verify(
        self,
        extracted_data_id: str,
        verdict:     Verdict,
        verifier_id: str,
        notes:       str | None = None,
    ) -> ExtractedData:
        verdict = Verdict(verdict)

        async with transaction(self._factory) as session:
            record = await session.get(ExtractedData, extracted_data_id)
            if record is None:
                raise ExtractedDataNotFoundError(
                    PipelineErrors.extracted_data_not_found(extracted_data_id)
                )

            result = await session.execute(
                update(ExtractedData)
                .where(
                    ExtractedData.id == extracted_data_id,
                    ExtractedData.verification_status == VerificationStatus.PENDING.value,
                    ExtractedData.superseded_by.is_(None),
                )
                .values(
                    verification_status=verdict.value,
                    verified_by=verifier_id,
                    verified_at=utcnow(),
                    notes=notes,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.refresh(record)
                current = (
                    f"superseded by {record.superseded_by}"
                    if record.superseded_by and record.verification_status == VerificationStatus.PENDING.value
                    else record.verification_status
                )
                logger.info(
                    "Verification conflict | extracted=%s current=%s verifier=%s",
                    extracted_data_id, current, verifier_id,
                )
                raise VerificationConflictError(
                    PipelineErrors.verification_conflict(extracted_data_id, current)
                )

            session.add(AuditLog(
                user_id=verifier_id,
                action=f"extracted_data.{verdict.value.lower()}",
                resource=f"extracted_data:{extracted_data_id}",
                details={"job_id": record.job_id, "notes": notes},
                success=True,
            ))
            await session.refresh(record)

        logger.info(
            "Extraction %s | extracted=%s job=%s verifier=%s",
            verdict.value, extracted_data_id, record.job_id, verifier_id,
        )
        return record
