from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from clear_terms.analysis.cache import AnalysisCache
from clear_terms.core.logging import get_logger, log_event
from clear_terms.jobs.store import JobStore

logger = get_logger(__name__)


def make_sweep_scheduler(
    *,
    job_store: JobStore,
    cache: AnalysisCache,
    job_sweep_seconds: int,
    cache_sweep_seconds: int,
) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        func=job_store.sweep,
        trigger="interval",
        seconds=job_sweep_seconds,
        id="sweep-jobs",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        func=cache.sweep,
        trigger="interval",
        seconds=cache_sweep_seconds,
        id="sweep-cache",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    log_event(
        logger,
        "scheduler.configured",
        job_sweep_seconds=job_sweep_seconds,
        cache_sweep_seconds=cache_sweep_seconds,
    )
    return scheduler
