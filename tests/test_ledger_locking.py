from __future__ import annotations

import os
import threading
import time

import pytest

from clear_terms.ledger.locking import FileLeaseLock, InProcessLeaseLock, LockTimeout


def test_file_lock_is_released_after_hold(tmp_path):
    lock = FileLeaseLock(tmp_path / "users.lock")
    with lock.hold():
        assert lock.path.exists()
    assert not lock.path.exists()


def test_file_lock_is_released_when_body_raises(tmp_path):
    lock = FileLeaseLock(tmp_path / "users.lock")
    with pytest.raises(RuntimeError):
        with lock.hold():
            raise RuntimeError("boom")
    assert not lock.path.exists()


def test_file_lock_times_out_while_fresh_lock_is_held(tmp_path):
    path = tmp_path / "users.lock"
    path.write_text("someone-else")
    lock = FileLeaseLock(path, max_attempts=3, retry_delay=0.01, stale_after=60)

    with pytest.raises(LockTimeout):
        lock.acquire()
    assert path.read_text() == "someone-else"


def test_file_lock_breaks_stale_lock(tmp_path):
    path = tmp_path / "users.lock"
    path.write_text("crashed-holder")
    old = time.time() - 30
    os.utime(path, (old, old))
    lock = FileLeaseLock(path, max_attempts=3, retry_delay=0.01, stale_after=5)

    with lock.hold() as token:
        assert path.read_text() == token
    assert not path.exists()


def test_file_lock_release_keeps_foreign_lock(tmp_path):
    path = tmp_path / "users.lock"
    lock = FileLeaseLock(path)
    token = lock.acquire()
    path.write_text("new-holder")

    lock.release(token)

    assert path.read_text() == "new-holder"


def test_in_process_lock_serializes_holders():
    lock = InProcessLeaseLock(max_attempts=500, retry_delay=0.005)
    counter = {"value": 0}

    def worker():
        for _ in range(50):
            with lock.hold():
                current = counter["value"]
                time.sleep(0)
                counter["value"] = current + 1

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert counter["value"] == 200


def test_in_process_lock_times_out_then_preempts_stale_holder():
    lock = InProcessLeaseLock(max_attempts=2, retry_delay=0.01, stale_after=0.2)
    lock.acquire()

    with pytest.raises(LockTimeout):
        lock.acquire()

    time.sleep(0.25)
    token = lock.acquire()
    lock.release(token)


def test_stale_break_keeps_lock_recreated_after_stat(tmp_path, monkeypatch):
    path = tmp_path / "users.lock"
    path.write_text("crashed-holder")
    old = time.time() - 30
    os.utime(path, (old, old))
    lock = FileLeaseLock(path, max_attempts=2, retry_delay=0.01, stale_after=5)
    real_rename = os.rename

    def rename_after_new_holder(src, dst):
        # another waiter broke the stale lock and took a fresh one in between
        if src == path and path.read_text() == "crashed-holder":
            path.unlink()
            path.write_text("fresh-holder")
        real_rename(src, dst)

    monkeypatch.setattr("clear_terms.ledger.locking.os.rename", rename_after_new_holder)

    with pytest.raises(LockTimeout):
        lock.acquire()

    assert path.read_text() == "fresh-holder"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["users.lock"]


def test_release_leaves_no_side_files(tmp_path):
    lock = FileLeaseLock(tmp_path / "users.lock")
    token = lock.acquire()
    lock.release(token)
    lock.release(token)
    assert list(tmp_path.iterdir()) == []
