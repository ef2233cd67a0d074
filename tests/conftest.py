from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

# Set env before any clear_terms imports (settings are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LEDGER_BACKEND", "local")
os.environ.setdefault("LEDGER_PATH", ".tmp_ledger_test/users.json")
os.environ.setdefault("GEMINI_API_KEY", "test-key")


@pytest.fixture(autouse=True)
def _reset_ledger_storage() -> None:
    import clear_terms.ledger.store as store_mod

    store_mod._store = None

    ledger_dir = Path(os.environ["LEDGER_PATH"]).parent
    if ledger_dir.exists():
        shutil.rmtree(ledger_dir)

    yield

    store_mod._store = None
    if ledger_dir.exists():
        shutil.rmtree(ledger_dir)


@pytest.fixture()
def ledger(tmp_path):
    from clear_terms.ledger.locking import FileLeaseLock
    from clear_terms.ledger.service import LedgerService
    from clear_terms.ledger.store import LocalLedgerStore

    store = LocalLedgerStore(tmp_path / "users.json")
    lock = FileLeaseLock(tmp_path / "users.lock", retry_delay=0.01, max_attempts=200)
    return LedgerService(store, lock, initial_credits=20)


class Clock:
    def __init__(self, start=None):
        from datetime import UTC, datetime

        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        from datetime import timedelta

        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def clock():
    return Clock()
