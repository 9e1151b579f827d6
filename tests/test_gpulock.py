import io
import json
import re
import time
from datetime import datetime, timedelta, timezone

import pytest

from aistack.eventlog import Level, Logger
from aistack.gpulock import (
    DEFAULT_LEASE_TIMEOUT,
    LOCK_FILE_NAME,
    GPULockError,
    Holder,
    LockInfo,
    LockManager,
    is_valid_holder,
)


@pytest.fixture
def manager(tmp_path):
    return LockManager(tmp_path, Logger(Level.ERROR, io.StringIO()))


def test_new_manager_defaults(tmp_path):
    mgr = LockManager(tmp_path)
    assert mgr.state_dir == tmp_path
    assert mgr.lease_timeout == DEFAULT_LEASE_TIMEOUT
    assert mgr.lease_timeout == timedelta(minutes=5)


def test_acquire_success(manager, tmp_path):
    manager.acquire(Holder.OPENWEBUI)
    lock_file = tmp_path / LOCK_FILE_NAME
    assert lock_file.exists()
    assert json.loads(lock_file.read_text())["holder"] == "openwebui"
    assert manager.get_status().holder == Holder.OPENWEBUI


def test_acquire_creates_state_dir(tmp_path):
    mgr = LockManager(tmp_path / "nested" / "state")
    mgr.acquire("localai")
    assert (tmp_path / "nested" / "state" / LOCK_FILE_NAME).exists()
    assert mgr.get_status().holder == Holder.LOCALAI


def test_acquire_already_held(manager):
    manager.acquire(Holder.LOCALAI)
    manager.acquire(Holder.LOCALAI)
    assert manager.get_status().holder == Holder.LOCALAI


def test_acquire_conflicting_holder(manager):
    manager.acquire(Holder.OPENWEBUI)
    with pytest.raises(GPULockError, match=r"GPU lock is held by openwebui \(acquired \d+s ago\)"):
        manager.acquire(Holder.LOCALAI)
    assert manager.get_status().holder == Holder.OPENWEBUI


def test_acquire_stale_lock(tmp_path):
    stream = io.StringIO()
    mgr = LockManager(tmp_path, Logger(Level.WARN, stream), lease_timeout=0.1)
    mgr.acquire(Holder.OPENWEBUI)
    time.sleep(0.15)
    mgr.acquire(Holder.LOCALAI)
    assert mgr.get_status().holder == Holder.LOCALAI
    assert "gpu.lock.stale_detected" in stream.getvalue()


def test_acquire_rejects_invalid_holder(manager):
    with pytest.raises(GPULockError, match="invalid holder: ollama"):
        manager.acquire("ollama")


def test_acquire_rejects_none_holder(manager):
    with pytest.raises(GPULockError, match="HolderNone"):
        manager.acquire(Holder.NONE)


def test_acquire_with_corrupt_lock_file(manager, tmp_path):
    (tmp_path / LOCK_FILE_NAME).write_text("{not json")
    with pytest.raises(GPULockError, match="failed to read existing lock"):
        manager.acquire(Holder.LOCALAI)


def test_release_success(manager, tmp_path):
    manager.acquire(Holder.OPENWEBUI)
    manager.release(Holder.OPENWEBUI)
    assert not (tmp_path / LOCK_FILE_NAME).exists()
    assert manager.get_status().holder == Holder.NONE


def test_release_wrong_holder(manager):
    manager.acquire(Holder.OPENWEBUI)
    with pytest.raises(GPULockError, match="held by openwebui, not localai"):
        manager.release(Holder.LOCALAI)
    assert manager.get_status().holder == Holder.OPENWEBUI


def test_release_no_lock(manager, tmp_path):
    manager.release(Holder.OPENWEBUI)
    assert not (tmp_path / LOCK_FILE_NAME).exists()
    assert manager.get_status().holder == Holder.NONE


def test_release_invalid_holder(manager):
    with pytest.raises(GPULockError, match="invalid holder"):
        manager.release("invalid")


def test_force_unlock(tmp_path):
    stream = io.StringIO()
    mgr = LockManager(tmp_path, Logger(Level.WARN, stream))
    mgr.acquire(Holder.OPENWEBUI)
    mgr.force_unlock()
    assert mgr.get_status().holder == Holder.NONE
    assert "gpu.lock.stolen" in stream.getvalue()


def test_force_unlock_without_lock(manager, tmp_path):
    manager.force_unlock()
    assert not (tmp_path / LOCK_FILE_NAME).exists()
    assert manager.is_locked() is False


def test_is_locked(manager):
    assert manager.is_locked() is False
    manager.acquire(Holder.LOCALAI)
    assert manager.is_locked() is True
    manager.release(Holder.LOCALAI)
    assert manager.is_locked() is False


def test_is_locked_stale_lock(tmp_path):
    mgr = LockManager(tmp_path, lease_timeout=timedelta(milliseconds=100))
    mgr.acquire(Holder.OPENWEBUI)
    time.sleep(0.15)
    assert mgr.is_locked() is False


def test_get_status_without_lock_has_zero_time(manager):
    status = manager.get_status()
    assert status.holder == Holder.NONE
    assert status.since_ts == datetime(1, 1, 1, tzinfo=timezone.utc)


def test_get_status_corrupt_file(manager, tmp_path):
    (tmp_path / LOCK_FILE_NAME).write_text('{"holder": "localai", "since_ts": "yesterday"}')
    with pytest.raises(GPULockError, match="failed to read lock"):
        manager.get_status()


@pytest.mark.parametrize(
    "value, valid",
    [
        (Holder.NONE, True),
        (Holder.OPENWEBUI, True),
        (Holder.LOCALAI, True),
        ("invalid", False),
        ("ollama", False),
    ],
)
def test_holder_is_valid(value, valid):
    assert is_valid_holder(value) is valid


def test_lock_info_round_trip():
    info = LockInfo(
        holder=Holder.LOCALAI,
        since_ts=datetime(2024, 5, 1, 10, 20, 30, 123400, tzinfo=timezone.utc),
    )
    data = info.to_dict()
    assert data == {"holder": "localai", "since_ts": "2024-05-01T10:20:30.1234Z"}
    assert LockInfo.from_dict(data) == info


def test_lock_info_parses_nanosecond_timestamp():
    info = LockInfo.from_dict(
        {"holder": "openwebui", "since_ts": "2024-05-01T10:20:30.123456789Z"}
    )
    assert info.holder == Holder.OPENWEBUI
    assert info.since_ts == datetime(2024, 5, 1, 10, 20, 30, 123456, tzinfo=timezone.utc)


def test_lock_info_zero_time_serialization():
    assert LockInfo().to_dict() == {"holder": "none", "since_ts": "0001-01-01T00:00:00Z"}


def test_lock_info_keeps_unknown_holder_text():
    info = LockInfo.from_dict({"holder": "other", "since_ts": "2024-01-01T00:00:00+02:00"})
    assert info.holder == "other"
    assert info.since_ts == datetime(2024, 1, 1, tzinfo=timezone(timedelta(hours=2)))


def test_conflict_message_reports_age(manager, tmp_path):
    since = datetime.now(timezone.utc) - timedelta(seconds=90)
    (tmp_path / LOCK_FILE_NAME).write_text(
        json.dumps(LockInfo(Holder.OPENWEBUI, since).to_dict())
    )
    with pytest.raises(GPULockError) as excinfo:
        manager.acquire(Holder.LOCALAI)
    assert re.search(r"acquired 1m3[01]s ago", str(excinfo.value))