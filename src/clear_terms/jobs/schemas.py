from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from clear_terms.jobs.models import FailureKind, Job, JobStatus


class JobView(BaseModel):
    status: JobStatus
    subject_reference: str
    result: dict[str, Any] | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None
    remaining_credits: int | None = None

    @classmethod
    def from_job(cls, job: Job, *, remaining_credits: int | None = None) -> JobView:
        return cls(
            status=job.status,
            subject_reference=job.subject_reference,
            result=job.result if job.status == JobStatus.DONE else None,
            error=job.error if job.status == JobStatus.ERROR else None,
            failure_kind=job.failure_kind if job.status == JobStatus.ERROR else None,
            remaining_credits=remaining_credits,
        )
