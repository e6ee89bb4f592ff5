"""
Job status graph.

    pending ──► processing ──► completed
       │            │
       │            ├────────► failed
       │            ├────────► user_cancelled
       │            ├────────► user_not_found
       │            └────────► document_not_found
       │
       ├──► user_cancelled      (cancelled before any worker claimed it)
       ├──► user_not_found      (explicit upstream check)
       ├──► document_not_found  (explicit upstream check)
       └──► failed              (reconciliation gave up on it)

Terminal states have no outgoing edges. Nothing ever returns to pending.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from admissions.schemas.enums import ApplicationFailedReason, JobStatus

TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.USER_CANCELLED,
    JobStatus.USER_NOT_FOUND,
    JobStatus.DOCUMENT_NOT_FOUND,
})

TRANSITIONS: Mapping[JobStatus, frozenset[JobStatus]] = MappingProxyType({
    JobStatus.PENDING: frozenset({
        JobStatus.PROCESSING,
        JobStatus.FAILED,
        JobStatus.USER_CANCELLED,
        JobStatus.USER_NOT_FOUND,
        JobStatus.DOCUMENT_NOT_FOUND,
    }),
    JobStatus.PROCESSING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.USER_CANCELLED,
        JobStatus.USER_NOT_FOUND,
        JobStatus.DOCUMENT_NOT_FOUND,
    }),
    **{status: frozenset() for status in TERMINAL_STATUSES},
})

# Reason code stored in `error` for the dedicated terminal statuses.
STATUS_REASONS: Mapping[JobStatus, ApplicationFailedReason] = MappingProxyType({
    JobStatus.USER_CANCELLED:     ApplicationFailedReason.USER_CANCELLED,
    JobStatus.USER_NOT_FOUND:     ApplicationFailedReason.USER_NOT_FOUND,
    JobStatus.DOCUMENT_NOT_FOUND: ApplicationFailedReason.DOCUMENT_NOT_FOUND,
})


def is_terminal(status: JobStatus | str) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


def can_transition(source: JobStatus | str, target: JobStatus | str) -> bool:
    return JobStatus(target) in TRANSITIONS[JobStatus(source)]


def sources_for(target: JobStatus | str) -> frozenset[JobStatus]:
    """All statuses from which `target` is reachable in one step."""
    target = JobStatus(target)
    return frozenset(src for src, dsts in TRANSITIONS.items() if target in dsts)
