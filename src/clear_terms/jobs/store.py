from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass, fields, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from clear_terms.core.logging import get_logger, log_event
from clear_terms.jobs.models import Job, JobStatus

logger = get_logger(__name__)

_JOB_FIELDS = {f.name for f in fields(Job)}


@dataclass(frozen=True)
class JobStorePolicy:
    max_jobs: int = 1000
    max_age: timedelta = timedelta(hours=1)
    force_evict_fraction: float = 0.1

    @property
    def force_evict_count(self) -> int:
        return max(1, math.floor(self.max_jobs * self.force_evict_fraction))


class JobStore:
    """
    Bounded in-memory table of jobs.

    Two independent guards keep memory flat: an age sweep (periodic, and on demand
    when full) and, failing that, force-eviction of the oldest jobs regardless of
    their status. Eviction may drop jobs a client is still polling; callers see
    them as unknown.
    """

    def __init__(
        self,
        policy: JobStorePolicy | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.policy = policy or JobStorePolicy()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    def create(self, job_id: str, **initial: Any) -> Job:
        with self._lock:
            if len(self._jobs) >= self.policy.max_jobs:
                log_event(
                    logger,
                    "job_store.limit_reached",
                    level=logging.WARNING,
                    jobs=len(self._jobs),
                    max_jobs=self.policy.max_jobs,
                )
                self._sweep_locked()
                if len(self._jobs) >= self.policy.max_jobs:
                    self._remove_oldest_locked(self.policy.force_evict_count)

            job = Job(id=job_id, created_at=self._clock(), **initial)
            self._jobs[job_id] = job
            total = len(self._jobs)

        log_event(
            logger,
            "job_store.created",
            level=logging.DEBUG,
            job_id=job_id,
            jobs=total,
            max_jobs=self.policy.max_jobs,
        )
        return job

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def snapshot(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    def update(self, job_id: str, **changes: Any) -> Job | None:
        unknown = set(changes) - _JOB_FIELDS
        if unknown:
            raise AttributeError(f"Unknown job fields: {sorted(unknown)}")

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            target = changes.get("status")
            if job.status.is_terminal or (
                target is not None and target != job.status and not job.status.can_move_to(target)
            ):
                log_event(
                    logger,
                    "job_store.transition.rejected",
                    level=logging.WARNING,
                    job_id=job_id,
                    from_status=job.status.value,
                    to_status=JobStatus(target).value if target is not None else None,
                )
                return job
            for key, value in changes.items():
                setattr(job, key, value)
            return job

    def sweep(self) -> int:
        with self._lock:
            removed = self._sweep_locked()
            remaining = len(self._jobs)
        if removed:
            log_event(logger, "job_store.swept", removed=removed, jobs=remaining)
        return removed

    def _sweep_locked(self) -> int:
        cutoff = self._clock() - self.policy.max_age
        expired = [job_id for job_id, job in self._jobs.items() if job.created_at < cutoff]
        for job_id in expired:
            del self._jobs[job_id]
        return len(expired)

    def _remove_oldest_locked(self, count: int) -> None:
        oldest = sorted(self._jobs.values(), key=lambda job: job.created_at)[:count]
        for job in oldest:
            del self._jobs[job.id]
        log_event(
            logger,
            "job_store.evicted",
            level=logging.WARNING,
            removed=len(oldest),
            jobs=len(self._jobs),
            evicted_statuses=sorted({job.status.value for job in oldest}),
        )

    def stats(self) -> dict[str, Any]:
        statuses = {status.value: 0 for status in JobStatus}
        with self._lock:
            for job in self._jobs.values():
                statuses[job.status.value] += 1
            total = len(self._jobs)
        utilization = total / self.policy.max_jobs if self.policy.max_jobs else 0.0
        return {
            "total": total,
            "max": self.policy.max_jobs,
            "utilization": utilization,
            "usage": f"{utilization * 100:.1f}%",
            "statuses": statuses,
        }
