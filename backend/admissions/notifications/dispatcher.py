"""
Notification Dispatcher

Consumes JobOutcomeEvent (one per terminal transition) and fans out one
NotificationTask per configured channel that has a recipient for the job:

    email     → event.notify_email
    telegram  → event.notify_chat_id

Bodies are rendered here, once, from notifications.messages. Publishing is
per channel: a broker failure for one channel is logged and does not stop
the others, and nothing here can touch the job itself.
"""

from __future__ import annotations

import logging
from typing import Iterable

from admissions.notifications.messages import render_outcome
from admissions.schemas.enums import NotificationChannel
from admissions.schemas.jobs import JobOutcomeEvent, NotificationTask
from admissions.services.state_machine import is_terminal

logger = logging.getLogger(__name__)


class NotificationDispatcher:

    def __init__(
        self,
        channels:    Iterable[str],
        publisher,
        *,
        school_name: str,
    ) -> None:
        self._channels    = [NotificationChannel(c) for c in channels]
        self._publisher   = publisher
        self._school_name = school_name

    def build_tasks(self, event: JobOutcomeEvent) -> list[NotificationTask]:
        if not is_terminal(event.status):
            logger.warning(
                "Ignoring non-terminal outcome event | job=%s status=%s",
                event.job_id, event.status.value,
            )
            return []

        rendered = render_outcome(
            job_id=event.job_id,
            application_id=event.application_id,
            document_type=event.document_type,
            status=event.status,
            reason=event.error,
            school_name=self._school_name,
        )

        tasks: list[NotificationTask] = []
        for channel in self._channels:
            recipient = self._recipient(event, channel)
            if not recipient:
                logger.info(
                    "No recipient, skipping channel | job=%s channel=%s",
                    event.job_id, channel.value,
                )
                continue
            is_email = channel is NotificationChannel.EMAIL
            tasks.append(NotificationTask(
                channel=channel,
                job_id=event.job_id,
                application_id=event.application_id,
                recipient=recipient,
                subject=rendered.subject,
                text=rendered.text if is_email else rendered.chat,
                html=rendered.html if is_email else None,
                status=event.status,
                reason=event.error,
            ))
        return tasks

    async def dispatch(self, event: JobOutcomeEvent) -> list[NotificationTask]:
        """Publish every task; returns the ones the broker accepted."""
        published: list[NotificationTask] = []
        for task in self.build_tasks(event):
            try:
                await self._publisher.publish(task)
            except Exception as exc:
                logger.error(
                    "Notification not queued | job=%s channel=%s error=%s",
                    task.job_id, task.channel.value, exc,
                )
                continue
            published.append(task)

        logger.info(
            "Outcome dispatched | job=%s status=%s channels=%s",
            event.job_id, event.status.value, [t.channel.value for t in published],
        )
        return published

    @staticmethod
    def _recipient(event: JobOutcomeEvent, channel: NotificationChannel) -> str | None:
        if channel is NotificationChannel.EMAIL:
            return event.notify_email
        if channel is NotificationChannel.TELEGRAM:
            return event.notify_chat_id
        return None
