from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from clear_terms.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_job_context,
    set_job_context,
)

logger = get_logger(__name__)


class JobRunner:
    """
    Runs pipeline jobs as independent tasks on a thread pool.

    With ``eager=True`` tasks run inline on the submitting thread, which keeps
    tests and local tooling deterministic.
    """

    def __init__(self, *, max_workers: int = 4, eager: bool = False) -> None:
        self.eager = eager
        self._executor: ThreadPoolExecutor | None = None
        if not eager:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="clear-terms-job"
            )

    def submit(
        self, task: Callable[[str], None], job_id: str, *, owner: str | None = None
    ) -> Future:
        if self._executor is None:
            future: Future = Future()
            try:
                _run_task(task, job_id, owner)
            except Exception as e:  # noqa: BLE001
                future.set_exception(e)
            else:
                future.set_result(None)
            return future
        return self._executor.submit(_run_task, task, job_id, owner)

    def shutdown(self, *, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def _run_task(task: Callable[[str], None], job_id: str, owner: str | None) -> None:
    tokens = set_job_context(job_id, owner=owner)
    start = time.monotonic()
    log_event(logger, "job.task.start", task_name=getattr(task, "__name__", "task"))
    try:
        task(job_id)
        log_event(
            logger,
            "job.task.finish",
            task_name=getattr(task, "__name__", "task"),
            duration_ms=monotonic_ms(start),
        )
    except Exception:
        log_exception(
            logger,
            "job.task.error",
            task_name=getattr(task, "__name__", "task"),
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_job_context(tokens)
