"""
Delivery error classification shared by every channel sender, and the
ledger of (job, channel) pairs that have already been delivered.

An outcome can reach a channel task more than once: the fan-out task is
acked late, and the reconciliation sweep republishes outcomes the broker
never accepted. The channel tasks consult the ledger before sending and
record a row after a successful send.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from admissions.db.session import transaction
from admissions.models.jobs import NotificationDelivery

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Base class for channel delivery failures."""


class TransientDeliveryError(DeliveryError):
    """Retriable: network fault, timeout, provider overload."""


class PermanentDeliveryError(DeliveryError):
    """Non-retriable: bad recipient, rejected credentials, blocked bot."""


class DeliveryLedger:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def was_sent(self, job_id: str, channel: str) -> bool:
        async with self._factory() as session:
            result = await session.execute(
                select(NotificationDelivery.id)
                .where(
                    NotificationDelivery.job_id == job_id,
                    NotificationDelivery.channel == channel,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def mark_sent(self, job_id: str, channel: str) -> bool:
        """Record a delivery; False when another attempt recorded it first."""
        try:
            async with transaction(self._factory) as session:
                session.add(NotificationDelivery(job_id=job_id, channel=channel))
        except IntegrityError:
            logger.info("Delivery already recorded | job=%s channel=%s", job_id, channel)
            return False
        return True
