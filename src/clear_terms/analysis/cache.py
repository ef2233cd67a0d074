from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from clear_terms.core.logging import get_logger, log_event
from clear_terms.core.subjects import subject_domain

logger = get_logger(__name__)


@dataclass(frozen=True)
class CachePolicy:
    max_entries: int = 1000
    ttl: timedelta = timedelta(hours=24)


@dataclass
class CacheEntry:
    subject_reference: str
    domain: str
    created_at: datetime
    last_accessed_at: datetime | None = None
    reports: dict[str, dict[str, Any]] = field(default_factory=dict)


class AnalysisCache:
    """
    Reports memoized per subject hash, one report per language.

    Freshness is bounded by ``policy.ttl`` counted from the entry's first insert,
    size by ``policy.max_entries`` with least-recently-accessed eviction.
    """

    def __init__(
        self,
        policy: CachePolicy | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.policy = policy or CachePolicy()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, subject_hash: object) -> bool:
        return subject_hash in self._entries

    def _is_expired(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.created_at > self.policy.ttl

    def _live_entry_locked(self, subject_hash: str, now: datetime) -> CacheEntry | None:
        entry = self._entries.get(subject_hash)
        if entry is None:
            return None
        if self._is_expired(entry, now):
            del self._entries[subject_hash]
            log_event(
                logger,
                "cache.expired",
                subject_hash=subject_hash[:16],
                subject_reference=entry.subject_reference,
                age_h=round((now - entry.created_at).total_seconds() / 3600, 1),
            )
            return None
        return entry

    def lookup(self, subject_hash: str, language: str) -> dict[str, Any] | None:
        now = self._clock()
        with self._lock:
            entry = self._live_entry_locked(subject_hash, now)
            if entry is None:
                return None
            report = entry.reports.get(language)
            if report is None:
                return None
            entry.last_accessed_at = now
            return copy.deepcopy(report)

    def peek(self, subject_hash: str, language: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._live_entry_locked(subject_hash, self._clock())
            if entry is None:
                return None
            report = entry.reports.get(language)
            return copy.deepcopy(report) if report is not None else None

    def languages(self, subject_hash: str) -> list[str]:
        with self._lock:
            entry = self._live_entry_locked(subject_hash, self._clock())
            return sorted(entry.reports) if entry is not None else []

    def store(
        self,
        subject_hash: str,
        language: str,
        report: dict[str, Any],
        subject_reference: str,
    ) -> None:
        now = self._clock()
        stored = copy.deepcopy(report)
        with self._lock:
            entry = self._live_entry_locked(subject_hash, now)
            if entry is not None:
                entry.reports[language] = stored
                entry.last_accessed_at = now
                event = "cache.language_added"
            else:
                self._enforce_capacity_locked()
                self._entries[subject_hash] = CacheEntry(
                    subject_reference=subject_reference,
                    domain=subject_domain(subject_reference),
                    created_at=now,
                    last_accessed_at=now,
                    reports={language: stored},
                )
                event = "cache.entry_created"
            size = len(self._entries)
        log_event(
            logger,
            event,
            subject_hash=subject_hash[:16],
            subject_reference=subject_reference,
            language=language,
            entries=size,
        )

    def _enforce_capacity_locked(self) -> None:
        size = len(self._entries)
        if size < self.policy.max_entries:
            return
        to_evict = size - self.policy.max_entries + 1
        # sorted() is stable, so ties keep insertion order
        candidates = sorted(
            self._entries.items(),
            key=lambda item: item[1].last_accessed_at or item[1].created_at,
        )[:to_evict]
        for subject_hash, entry in candidates:
            del self._entries[subject_hash]
            log_event(
                logger,
                "cache.evicted",
                level=logging.DEBUG,
                subject_hash=subject_hash[:16],
                subject_reference=entry.subject_reference,
            )
        log_event(
            logger,
            "cache.limit_enforced",
            level=logging.WARNING,
            removed=len(candidates),
            entries=len(self._entries),
            max_entries=self.policy.max_entries,
        )

    def invalidate(self, subject_hash: str) -> bool:
        with self._lock:
            removed = self._entries.pop(subject_hash, None) is not None
        if removed:
            log_event(logger, "cache.invalidated", subject_hash=subject_hash[:16])
        return removed

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [h for h, entry in self._entries.items() if self._is_expired(entry, now)]
            for subject_hash in expired:
                del self._entries[subject_hash]
            remaining = len(self._entries)
        if expired:
            log_event(logger, "cache.swept", removed=len(expired), entries=remaining)
        return len(expired)

    def stats(self) -> dict[str, int]:
        return {"size": len(self._entries), "max": self.policy.max_entries}
