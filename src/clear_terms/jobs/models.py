from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.DONE, JobStatus.ERROR}

    def can_move_to(self, target: JobStatus) -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.DONE, JobStatus.ERROR},
    JobStatus.DONE: set(),
    JobStatus.ERROR: set(),
}


class FailureKind(str, enum.Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"
    PROVIDER_FAILURE = "provider_failure"
    STORE_UNAVAILABLE = "store_unavailable"
    LOCK_TIMEOUT = "lock_timeout"
    INTERNAL = "internal"


@dataclass
class Job:
    id: str
    subject_reference: str
    content: str
    language: str
    owner: str
    status: JobStatus = JobStatus.QUEUED
    result: dict[str, Any] | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None
    credit_debited: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
