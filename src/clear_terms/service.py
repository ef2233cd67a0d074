from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from apscheduler.schedulers.base import BaseScheduler

from clear_terms.analysis.cache import AnalysisCache
from clear_terms.core.config import Settings
from clear_terms.core.logging import get_logger, log_event, log_exception
from clear_terms.core.subjects import (
    InvalidSubjectReference,
    is_subject_hash,
    sanitize_subject_reference,
)
from clear_terms.jobs.schemas import JobView
from clear_terms.jobs.store import JobStore
from clear_terms.ledger.locking import LockTimeout
from clear_terms.ledger.service import LedgerService
from clear_terms.ledger.store import StoreUnavailable, diagnose_ledger_store
from clear_terms.pipeline import JobPipeline
from clear_terms.worker.runner import JobRunner

logger = get_logger(__name__)


class InvalidSubmission(ValueError):
    pass


class ReportNotFound(LookupError):
    def __init__(self, message: str, *, available_languages: list[str] | None = None) -> None:
        super().__init__(message)
        self.available_languages = available_languages or []


class ScanService:
    def __init__(
        self,
        *,
        settings: Settings,
        job_store: JobStore,
        cache: AnalysisCache,
        ledger: LedgerService,
        pipeline: JobPipeline,
        runner: JobRunner,
        scheduler: BaseScheduler | None = None,
    ) -> None:
        self.settings = settings
        self.jobs = job_store
        self.cache = cache
        self.ledger = ledger
        self.pipeline = pipeline
        self.runner = runner
        self._scheduler = scheduler

    def start(self) -> None:
        if self._scheduler is not None and not self._scheduler.running:
            self._scheduler.start()
        log_event(logger, "service.started", environment=self.settings.environment)

    def shutdown(self, *, wait: bool = True) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self.runner.shutdown(wait=wait)
        log_event(logger, "service.stopped")

    def _validate(self, subject_reference: str | None, content: Any, language: str | None):
        if not isinstance(content, str) or not content:
            raise InvalidSubmission("content is required and must be a string")
        if len(content) < self.settings.min_content_length:
            raise InvalidSubmission(
                "content is too short to analyze "
                f"(minimum {self.settings.min_content_length} characters)"
            )
        if len(content) > self.settings.max_content_length:
            raise InvalidSubmission(
                f"content is too long (maximum {self.settings.max_content_length} characters)"
            )
        try:
            reference = sanitize_subject_reference(
                subject_reference,
                block_internal=self.settings.environment == "production",
            )
        except InvalidSubjectReference as e:
            raise InvalidSubmission(f"Invalid URL: {e}") from e
        if language not in self.settings.supported_languages:
            language = self.settings.default_language
        return reference, content, language

    def submit_job(
        self,
        subject_reference: str | None,
        content: str,
        language: str | None,
        owner: str,
    ) -> str:
        """
        Accept a document for analysis and return the job id to poll.

        The owner's ledger record is created on first contact. Credits are not
        checked here; billing happens when the job runs.
        """
        if not owner:
            raise InvalidSubmission("owner is required")
        reference, content, language = self._validate(subject_reference, content, language)
        self.ledger.get_or_create(owner)

        job_id = str(uuid.uuid4())
        self.jobs.create(
            job_id,
            subject_reference=reference,
            content=content,
            language=language,
            owner=owner,
        )
        log_event(
            logger,
            "service.job.submitted",
            job_id=job_id,
            owner=owner,
            subject_reference=reference,
            language=language,
            content_chars=len(content),
        )
        self.runner.submit(self.pipeline.run, job_id, owner=owner)
        return job_id

    def get_job(self, job_id: str) -> JobView | None:
        job = self.jobs.snapshot(job_id)
        if job is None:
            return None
        remaining = None
        if job.status.is_terminal:
            try:
                account = self.ledger.get_account(job.owner)
            except (StoreUnavailable, LockTimeout):
                log_exception(logger, "service.job.balance_unavailable", job_id=job_id)
                account = None
            if account is not None:
                remaining = account.balance
        return JobView.from_job(job, remaining_credits=remaining)

    def lookup_cached_report(self, subject_hash: str, language: str) -> dict[str, Any]:
        if not is_subject_hash(subject_hash):
            raise ValueError("Invalid subject hash format")
        report = self.cache.peek(subject_hash, language)
        if report is not None:
            return report
        available = self.cache.languages(subject_hash)
        if available:
            raise ReportNotFound(
                f"Report not available in {language}", available_languages=available
            )
        raise ReportNotFound("Report not found in cache")

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "status": "ok",
            "jobs": self.jobs.stats(),
            "cache": self.cache.stats(),
            "cache_size": len(self.cache),
            "timestamp": datetime.now(UTC).isoformat(),
        }
        try:
            stats["ledger"] = self.ledger.stats()
        except (StoreUnavailable, LockTimeout):
            log_exception(logger, "service.stats.ledger_unavailable")
            stats["status"] = "degraded"
            stats["ledger"] = None
        log_event(logger, "service.stats", level=logging.DEBUG, jobs=stats["jobs"]["total"])
        return stats

    def check_health(self) -> dict[str, Any]:
        """Connectivity report for the configured ledger backend, without credentials."""
        ledger_store = diagnose_ledger_store()
        return {
            "status": "ok" if ledger_store.get("ok") else "degraded",
            "ledger_store": ledger_store,
            "timestamp": datetime.now(UTC).isoformat(),
        }
