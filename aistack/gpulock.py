"""A file-based GPU mutex with a lease timeout."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from aistack.eventlog import Level, Logger

LOCK_FILE_NAME = "gpu_lock.json"
DEFAULT_LEASE_TIMEOUT = timedelta(minutes=5)

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


class GPULockError(Exception):
    """Raised when the GPU lock cannot be acquired, released or read."""


class Holder(str, Enum):
    """A service that may hold the GPU lock."""

    NONE = "none"
    OPENWEBUI = "openwebui"
    LOCALAI = "localai"

    def __str__(self) -> str:
        return self.value


_HOLDER_VALUES = frozenset(holder.value for holder in Holder)


def is_valid_holder(value: Holder | str) -> bool:
    """Tell whether ``value`` names a known holder."""
    return isinstance(value, str) and str.__str__(value) in _HOLDER_VALUES


def _holder_text(holder: Holder | str) -> str:
    return holder.value if isinstance(holder, Holder) else str(holder)


def _format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    base = (
        f"{ts.year:04d}-{ts.month:02d}-{ts.day:02d}"
        f"T{ts.hour:02d}:{ts.minute:02d}:{ts.second:02d}"
    )
    fraction = f".{ts.microsecond:06d}".rstrip("0") if ts.microsecond else ""
    offset = ts.utcoffset()
    if not offset:
        zone = "Z"
    else:
        total = int(offset.total_seconds())
        sign = "+" if total >= 0 else "-"
        hours, minutes = divmod(abs(total) // 60, 60)
        zone = f"{sign}{hours:02d}:{minutes:02d}"
    return base + fraction + zone


def _parse_timestamp(text: Any) -> datetime:
    if not isinstance(text, str):
        raise GPULockError(f"invalid timestamp: {text!r}")
    match = _TIMESTAMP_RE.match(text)
    if match is None:
        raise GPULockError(f"invalid timestamp: {text!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "").ljust(6, "0")[:6])
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
        )
    except ValueError as exc:
        raise GPULockError(f"invalid timestamp: {text!r}") from exc


def _format_age(age: timedelta) -> str:
    """Render a duration rounded to whole seconds, such as ``1m30s``."""
    total = age.total_seconds()
    seconds = int(abs(total) + 0.5)
    sign = "-" if total < 0 and seconds else ""
    if seconds == 0:
        return "0s"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LockInfo:
    """The state of the GPU lock: who holds it and since when."""

    holder: Holder | str = Holder.NONE
    since_ts: datetime = field(default_factory=lambda: _ZERO_TIME)

    def to_dict(self) -> dict[str, Any]:
        return {"holder": _holder_text(self.holder), "since_ts": _format_timestamp(self.since_ts)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LockInfo":
        """Build lock state from its JSON shape; missing fields take empty values."""
        if not isinstance(data, Mapping):
            raise GPULockError("lock document must be a JSON object")
        raw_holder = data.get("holder", "")
        if not isinstance(raw_holder, str):
            raise GPULockError(f"invalid holder: {raw_holder!r}")
        holder: Holder | str = Holder(raw_holder) if is_valid_holder(raw_holder) else raw_holder
        raw_ts = data.get("since_ts")
        since_ts = _ZERO_TIME if raw_ts is None else _parse_timestamp(raw_ts)
        return cls(holder=holder, since_ts=since_ts)

    def age(self) -> timedelta:
        return _now() - self.since_ts


class LockManager:
    """Acquires and releases the GPU lock stored in the state directory."""

    def __init__(
        self,
        state_dir: str | os.PathLike[str],
        logger: Logger | None = None,
        lease_timeout: timedelta | float = DEFAULT_LEASE_TIMEOUT,
    ):
        self.state_dir = Path(state_dir)
        self.logger = logger
        if not isinstance(lease_timeout, timedelta):
            lease_timeout = timedelta(seconds=lease_timeout)
        self.lease_timeout = lease_timeout

    @property
    def lock_path(self) -> Path:
        return self.state_dir / LOCK_FILE_NAME

    def _log(
        self,
        level: Level,
        event_type: str,
        message: str,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        if self.logger is not None:
            self.logger.log(level, event_type, message, payload)

    def acquire(self, holder: Holder | str) -> None:
        """Take the lock for ``holder``; a stale lock of another holder is cleared."""
        if not is_valid_holder(holder):
            raise GPULockError(f"invalid holder: {_holder_text(holder)}")
        holder = Holder(holder)
        if holder is Holder.NONE:
            raise GPULockError("cannot acquire lock for HolderNone")

        try:
            existing = self._load()
        except FileNotFoundError:
            existing = None
        except (OSError, GPULockError) as exc:
            raise GPULockError(f"failed to read existing lock: {exc}") from exc

        if existing is not None:
            if existing.holder == holder:
                self._log(
                    Level.INFO,
                    "gpu.lock.already_held",
                    "GPU lock already held by this service",
                    {"holder": holder.value},
                )
                return

            age = existing.age()
            if age > self.lease_timeout:
                self._log(
                    Level.WARN,
                    "gpu.lock.stale_detected",
                    "Stale GPU lock detected",
                    {
                        "current_holder": _holder_text(existing.holder),
                        "age_seconds": age.total_seconds(),
                    },
                )
                try:
                    self._remove_lock_file()
                except OSError as exc:
                    raise GPULockError(f"failed to clear stale lock: {exc}") from exc
            else:
                raise GPULockError(
                    f"GPU lock is held by {_holder_text(existing.holder)} "
                    f"(acquired {_format_age(age)} ago)"
                )

        try:
            self._save(LockInfo(holder=holder, since_ts=_now()))
        except OSError as exc:
            raise GPULockError(f"failed to save lock: {exc}") from exc

        self._log(Level.INFO, "gpu.lock.acquired", "GPU lock acquired", {"holder": holder.value})

    def release(self, holder: Holder | str) -> None:
        """Give up the lock; only its current holder may do so."""
        if not is_valid_holder(holder):
            raise GPULockError(f"invalid holder: {_holder_text(holder)}")
        holder = Holder(holder)

        try:
            existing = self._load()
        except FileNotFoundError:
            self._log(
                Level.INFO,
                "gpu.lock.release.no_lock",
                "No GPU lock to release",
                {"holder": holder.value},
            )
            return
        except (OSError, GPULockError) as exc:
            raise GPULockError(f"failed to read existing lock: {exc}") from exc

        if existing.holder != holder:
            raise GPULockError(
                f"cannot release lock: held by {_holder_text(existing.holder)}, "
                f"not {holder.value}"
            )

        try:
            self._remove_lock_file()
        except OSError as exc:
            raise GPULockError(f"failed to remove lock file: {exc}") from exc

        self._log(Level.INFO, "gpu.lock.released", "GPU lock released", {"holder": holder.value})

    def force_unlock(self) -> None:
        """Remove the lock whoever holds it; meant for recovery."""
        try:
            existing = self._load()
        except FileNotFoundError:
            self._log(Level.INFO, "gpu.lock.force_unlock.no_lock", "No GPU lock to force unlock")
            return
        except (OSError, GPULockError) as exc:
            raise GPULockError(f"failed to read existing lock: {exc}") from exc

        self._log(
            Level.WARN,
            "gpu.lock.stolen",
            "GPU lock forcibly removed",
            {
                "previous_holder": _holder_text(existing.holder),
                "age_seconds": existing.age().total_seconds(),
            },
        )
        try:
            self._remove_lock_file()
        except OSError as exc:
            raise GPULockError(f"failed to remove lock file: {exc}") from exc

    def get_status(self) -> LockInfo:
        """Return the current lock state; an absent lock is held by ``Holder.NONE``."""
        try:
            return self._load()
        except FileNotFoundError:
            return LockInfo(holder=Holder.NONE, since_ts=_ZERO_TIME)
        except (OSError, GPULockError) as exc:
            raise GPULockError(f"failed to read lock: {exc}") from exc

    def is_locked(self) -> bool:
        """Tell whether a live, non-stale lock exists."""
        status = self.get_status()
        if status.holder == Holder.NONE:
            return False
        age = status.age()
        if age > self.lease_timeout:
            self._log(
                Level.WARN,
                "gpu.lock.stale_on_check",
                "Stale lock detected during check",
                {"holder": _holder_text(status.holder), "age_seconds": age.total_seconds()},
            )
            return False
        return True

    def _load(self) -> LockInfo:
        text = self.lock_path.read_text(encoding="utf-8")
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise GPULockError(f"failed to unmarshal lock: {exc}") from exc
        try:
            return LockInfo.from_dict(data)
        except GPULockError as exc:
            raise GPULockError(f"failed to unmarshal lock: {exc}") from exc

    def _save(self, lock: LockInfo) -> None:
        self.state_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        data = json.dumps(lock.to_dict(), indent=2)
        lock_path = self.lock_path
        tmp_path = lock_path.with_name(lock_path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
        try:
            os.replace(tmp_path, lock_path)
        except OSError:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as cleanup_exc:
                self._log(
                    Level.WARN,
                    "gpu.lock.cleanup_failed",
                    "Failed to remove temp lock file",
                    {"error": str(cleanup_exc), "path": str(tmp_path)},
                )
            raise

    def _remove_lock_file(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass