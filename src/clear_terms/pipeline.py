from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from clear_terms.analysis.cache import AnalysisCache
from clear_terms.analysis.prompts import build_prompt
from clear_terms.analysis.provider import AnalysisProvider, ProviderFailure
from clear_terms.analysis.reports import parse_report
from clear_terms.core.logging import get_logger, log_event, log_exception, monotonic_ms
from clear_terms.core.subjects import clean_text, content_hash, subject_hash
from clear_terms.jobs.models import FailureKind, Job, JobStatus
from clear_terms.jobs.store import JobStore
from clear_terms.ledger.locking import LockTimeout
from clear_terms.ledger.schemas import LedgerOutcome, LedgerStatus
from clear_terms.ledger.service import LedgerService
from clear_terms.ledger.store import StoreUnavailable

logger = get_logger(__name__)

_REFUSAL_KINDS = {
    LedgerStatus.QUOTA_EXCEEDED: FailureKind.QUOTA_EXCEEDED,
    LedgerStatus.NOT_FOUND: FailureKind.NOT_FOUND,
}


def failure_kind_for(error: Exception) -> FailureKind:
    if isinstance(error, ProviderFailure):
        return FailureKind.PROVIDER_FAILURE
    if isinstance(error, StoreUnavailable):
        return FailureKind.STORE_UNAVAILABLE
    if isinstance(error, LockTimeout):
        return FailureKind.LOCK_TIMEOUT
    return FailureKind.INTERNAL


class JobPipeline:
    """
    Runs one queued job to a terminal state.

    Every successful run costs the owner one credit, cache hits included. A miss
    is billed before the provider is called; if the run then fails, that credit
    is refunded exactly once.
    """

    def __init__(
        self,
        *,
        job_store: JobStore,
        cache: AnalysisCache,
        ledger: LedgerService,
        provider: AnalysisProvider,
        models: Sequence[str],
        api_key: str | None,
        prompt_template: str,
    ) -> None:
        self._jobs = job_store
        self._cache = cache
        self._ledger = ledger
        self._provider = provider
        self._models = list(models)
        self._api_key = api_key
        self._prompt_template = prompt_template

    def run(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            log_event(logger, "pipeline.job.missing", level=logging.WARNING, job_id=job_id)
            return
        if job.status != JobStatus.QUEUED:
            log_event(
                logger,
                "pipeline.job.skipped",
                level=logging.WARNING,
                job_id=job_id,
                status=job.status.value,
            )
            return

        start = time.monotonic()
        self._jobs.update(job_id, status=JobStatus.RUNNING)
        log_event(logger, "pipeline.job.start", job_id=job_id, language=job.language)
        try:
            self._process(job)
        except Exception as e:  # noqa: BLE001
            log_exception(
                logger,
                "pipeline.job.exception",
                job_id=job_id,
                error_type=type(e).__name__,
                duration_ms=monotonic_ms(start),
            )
            if job.credit_debited:
                self._refund(job)
            self._fail(job, str(e) or type(e).__name__, failure_kind_for(e))
            return
        log_event(
            logger,
            "pipeline.job.finish",
            job_id=job_id,
            status=job.status.value,
            duration_ms=monotonic_ms(start),
        )

    def _process(self, job: Job) -> None:
        url_hash = subject_hash(job.subject_reference)
        doc_hash = content_hash(job.content)
        log_event(
            logger,
            "pipeline.job.hashed",
            job_id=job.id,
            subject_reference=job.subject_reference,
            subject_hash=url_hash[:16],
            content_hash=doc_hash[:16],
        )

        cached = self._cache.lookup(url_hash, job.language)
        if cached is not None:
            log_event(logger, "pipeline.cache.hit", job_id=job.id, subject_hash=url_hash[:16])
            metadata = cached.get("metadata")
            if isinstance(metadata, dict):
                metadata["source"] = "cache"
                metadata["content_hash"] = doc_hash
            outcome = self._ledger.debit(job.owner)
            if not outcome.ok:
                self._refuse(job, outcome)
                return
            self._complete(job, cached, balance=outcome.balance)
            return

        log_event(logger, "pipeline.cache.miss", job_id=job.id, subject_hash=url_hash[:16])
        outcome = self._ledger.debit(job.owner)
        if not outcome.ok:
            self._refuse(job, outcome)
            return
        if self._jobs.update(job.id, credit_debited=True) is None:
            # evicted mid-run; the refund path still reads the flag from this reference
            job.credit_debited = True
        log_event(logger, "pipeline.ledger.debited", job_id=job.id, balance=outcome.balance)

        prompt = build_prompt(self._prompt_template, clean_text(job.content), job.language)
        reply = self._provider.analyze(prompt, self._models, self._api_key)
        report = parse_report(reply.text)
        report["metadata"] = {
            "url_hash": url_hash,
            "content_hash": doc_hash,
            "analyzed_at": datetime.now(UTC).isoformat(),
            "analyzed_url": job.subject_reference or "unknown",
            "model_used": reply.model,
            "output_language": job.language,
            "source": "ai",
        }
        self._cache.store(url_hash, job.language, report, job.subject_reference)
        self._complete(job, report, balance=outcome.balance)

    def _complete(self, job: Job, report: dict[str, Any], *, balance: int | None) -> None:
        self._jobs.update(job.id, status=JobStatus.DONE, result=report)
        log_event(
            logger,
            "pipeline.job.done",
            job_id=job.id,
            source=(report.get("metadata") or {}).get("source"),
            balance=balance,
        )

    def _refuse(self, job: Job, outcome: LedgerOutcome) -> None:
        self._fail(job, outcome.describe(), _REFUSAL_KINDS[outcome.status])

    def _fail(self, job: Job, reason: str, kind: FailureKind) -> None:
        self._jobs.update(job.id, status=JobStatus.ERROR, error=reason, failure_kind=kind)
        log_event(
            logger,
            "pipeline.job.error",
            level=logging.WARNING,
            job_id=job.id,
            failure_kind=kind.value,
            error=reason,
        )

    def _refund(self, job: Job) -> None:
        try:
            outcome = self._ledger.credit(job.owner, 1)
        except Exception:  # noqa: BLE001
            log_exception(logger, "pipeline.refund.failure", job_id=job.id)
            return
        log_event(
            logger,
            "pipeline.ledger.refunded",
            job_id=job.id,
            status=outcome.status.value,
            balance=outcome.balance,
        )
