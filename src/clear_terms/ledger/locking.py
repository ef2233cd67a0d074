from __future__ import annotations

import os
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from clear_terms.core.config import settings
from clear_terms.core.logging import get_logger, log_event, monotonic_ms

logger = get_logger(__name__)


class LockTimeout(RuntimeError):
    pass


class LeaseLock:
    """
    Advisory mutual exclusion with a lease.

    A holder that keeps the lock longer than ``stale_after`` seconds is presumed
    dead and may be pre-empted, so a crashed process cannot wedge the ledger.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 10,
        retry_delay: float = 0.1,
        stale_after: float = 5.0,
        max_delay: float = 1.0,
    ) -> None:
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.stale_after = stale_after
        self.max_delay = max_delay

    def acquire(self) -> str:  # pragma: no cover
        raise NotImplementedError

    def release(self, token: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def _retry_delay_s(self, attempt: int) -> float:
        # attempt=1 => retry_delay, doubling up to max_delay
        return min(self.max_delay, self.retry_delay * (2 ** (attempt - 1)))

    @contextmanager
    def hold(self) -> Iterator[str]:
        token = self.acquire()
        try:
            yield token
        finally:
            self.release(token)


class FileLeaseLock(LeaseLock):
    def __init__(self, path: Path, **kwargs) -> None:
        super().__init__(**kwargs)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def acquire(self) -> str:
        start = time.monotonic()
        token = uuid.uuid4().hex
        self._path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, self.max_attempts + 1):
            try:
                fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._break_if_stale():
                    continue
                time.sleep(self._retry_delay_s(attempt))
                continue
            with os.fdopen(fd, "w") as fh:
                fh.write(token)
            return token

        log_event(
            logger,
            "ledger.lock.timeout",
            lock="file",
            lock_path=str(self._path),
            attempts=self.max_attempts,
            duration_ms=monotonic_ms(start),
        )
        raise LockTimeout(f"Unable to acquire lock on {self._path}")

    def _break_if_stale(self) -> bool:
        try:
            age = time.time() - self._path.stat().st_mtime
        except FileNotFoundError:
            # released between our create attempt and the stat
            return True
        if age <= self.stale_after:
            return False
        # move the file aside first: a fresh lock may have replaced it since the stat
        aside = self._aside_path("stale")
        try:
            os.rename(self._path, aside)
        except FileNotFoundError:
            return True
        try:
            age = time.time() - aside.stat().st_mtime
            if age <= self.stale_after:
                self._restore(aside)
                return False
        finally:
            aside.unlink(missing_ok=True)
        log_event(
            logger,
            "ledger.lock.stale_broken",
            lock="file",
            lock_path=str(self._path),
            age_s=round(age, 3),
        )
        return True

    def _aside_path(self, reason: str) -> Path:
        return self._path.with_name(f"{self._path.name}.{uuid.uuid4().hex}.{reason}")

    def _restore(self, aside: Path) -> None:
        # link never overwrites; if a new holder already exists, theirs wins
        try:
            os.link(aside, self._path)
        except FileExistsError:
            log_event(logger, "ledger.lock.restore_skipped", lock="file", lock_path=str(self._path))

    def release(self, token: str) -> None:
        aside = self._aside_path("release")
        try:
            os.rename(self._path, aside)
        except FileNotFoundError:
            return
        try:
            current = aside.read_text()
            if current != token:
                # our lease was broken and someone else holds the lock now
                self._restore(aside)
                log_event(logger, "ledger.lock.lost", lock="file", lock_path=str(self._path))
        finally:
            aside.unlink(missing_ok=True)


class InProcessLeaseLock(LeaseLock):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._cond = threading.Condition()
        self._holder: str | None = None
        self._acquired_at = 0.0

    def acquire(self) -> str:
        start = time.monotonic()
        token = uuid.uuid4().hex
        with self._cond:
            for attempt in range(1, self.max_attempts + 1):
                if self._holder is not None:
                    held_for = time.monotonic() - self._acquired_at
                    if held_for > self.stale_after:
                        log_event(
                            logger,
                            "ledger.lock.stale_broken",
                            lock="process",
                            age_s=round(held_for, 3),
                        )
                        self._holder = None
                if self._holder is None:
                    self._holder = token
                    self._acquired_at = time.monotonic()
                    return token
                self._cond.wait(timeout=self._retry_delay_s(attempt))

        log_event(
            logger,
            "ledger.lock.timeout",
            lock="process",
            attempts=self.max_attempts,
            duration_ms=monotonic_ms(start),
        )
        raise LockTimeout("Unable to acquire ledger lock")

    def release(self, token: str) -> None:
        with self._cond:
            if self._holder != token:
                log_event(logger, "ledger.lock.lost", lock="process")
                return
            self._holder = None
            self._cond.notify()


def get_ledger_lock() -> LeaseLock:
    kwargs = {
        "max_attempts": settings.ledger_lock_max_attempts,
        "retry_delay": settings.ledger_lock_retry_delay_seconds,
        "stale_after": settings.ledger_lock_stale_seconds,
    }
    if settings.ledger_backend == "local":
        ledger_path = settings.ledger_path
        if not ledger_path.is_absolute():
            ledger_path = Path(os.getcwd()) / ledger_path
        return FileLeaseLock(ledger_path.with_suffix(".lock"), **kwargs)
    return InProcessLeaseLock(**kwargs)
