from __future__ import annotations

from datetime import timedelta

from clear_terms.analysis.cache import AnalysisCache, CachePolicy
from clear_terms.analysis.prompts import load_prompt_template
from clear_terms.analysis.provider import AnalysisProvider, GeminiProvider
from clear_terms.core.config import Settings
from clear_terms.core.config import settings as default_settings
from clear_terms.core.logging import get_logger, log_event
from clear_terms.jobs.store import JobStore, JobStorePolicy
from clear_terms.ledger.locking import get_ledger_lock
from clear_terms.ledger.service import LedgerService
from clear_terms.ledger.store import get_ledger_store
from clear_terms.pipeline import JobPipeline
from clear_terms.service import ScanService
from clear_terms.worker.runner import JobRunner
from clear_terms.worker.scheduler import make_sweep_scheduler

logger = get_logger(__name__)


def build_service(
    settings: Settings | None = None,
    *,
    provider: AnalysisProvider | None = None,
    ledger: LedgerService | None = None,
) -> ScanService:
    settings = settings or default_settings

    job_store = JobStore(
        JobStorePolicy(
            max_jobs=settings.max_jobs,
            max_age=timedelta(seconds=settings.job_max_age_seconds),
        )
    )
    cache = AnalysisCache(
        CachePolicy(
            max_entries=settings.max_cache_entries,
            ttl=timedelta(seconds=settings.cache_ttl_seconds),
        )
    )
    if ledger is None:
        ledger = LedgerService(
            get_ledger_store(),
            get_ledger_lock(),
            initial_credits=settings.initial_credits,
        )

    pipeline = JobPipeline(
        job_store=job_store,
        cache=cache,
        ledger=ledger,
        provider=provider or GeminiProvider(),
        models=settings.provider_models,
        api_key=settings.gemini_api_key,
        prompt_template=load_prompt_template(settings.prompt_template_path),
    )
    eager = settings.run_jobs_eagerly or settings.environment == "test"
    runner = JobRunner(max_workers=settings.worker_concurrency, eager=eager)
    scheduler = make_sweep_scheduler(
        job_store=job_store,
        cache=cache,
        job_sweep_seconds=settings.job_sweep_interval_seconds,
        cache_sweep_seconds=settings.cache_sweep_interval_seconds,
    )

    log_event(
        logger,
        "service.built",
        environment=settings.environment,
        ledger_backend=settings.ledger_backend,
        models=settings.provider_models,
        eager=eager,
    )
    return ScanService(
        settings=settings,
        job_store=job_store,
        cache=cache,
        ledger=ledger,
        pipeline=pipeline,
        runner=runner,
        scheduler=scheduler,
    )
