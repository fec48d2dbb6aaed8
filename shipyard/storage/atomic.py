# shipyard/storage/atomic.py
"""
Atomic file writes and the holder-recording exclusive lock.

Every state file is written to a temp file in the same directory, fsynced,
then renamed over the target, so a crash mid-write leaves either the old or
the new document and never a half-written one.
"""

import fcntl
import json
import logging
import os
import socket
import tempfile
import time
from pathlib import Path
from typing import Any
from uuid import uuid4

from shipyard.errors import LockHeldError, LockTimeoutError
from shipyard.procutil import pid_alive
from shipyard.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)

# A lock file with no readable holder is only treated as abandoned after this
# long (the creator may be between create and write).
_UNREADABLE_GRACE_S = 5.0


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write data to path via temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=False) + "\n")


class StateLock:
    """
    Exclusive lock file that records who holds it.

    The lock file contains {pid, host, token, purpose, acquired_at}. A lock
    held by a dead (or zombie) process on this host is stale and reclaimed on
    the next acquire.

    Usage:
        with StateLock(path, purpose="pipeline").held(timeout=5):
            ...
    """

    def __init__(self, path: Path, purpose: str = "", poll_interval: float = 0.1) -> None:
        self.path = Path(path)
        self.purpose = purpose
        self._poll_interval = poll_interval
        self._token: str | None = None

    @property
    def owned(self) -> bool:
        return self._token is not None

    def holder(self) -> dict | None:
        """Return the recorded holder, or None if the lock is free or unreadable."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def is_stale(self) -> bool:
        """True if the lock file exists but its holder can no longer hold it."""
        if not self.path.exists():
            return False
        holder = self.holder()
        if holder is None:
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > _UNREADABLE_GRACE_S
        if holder.get("host") not in (None, socket.gethostname()):
            # Can't probe a pid on another machine
            return False
        return not pid_alive(holder.get("pid"))

    def is_held_by_live_process(self) -> bool:
        return self.path.exists() and not self.is_stale()

    def acquire(self, timeout: float = 0.0, force: bool = False) -> None:
        """
        Acquire the lock, reclaiming it if stale.

        Args:
            timeout: Seconds to keep trying while a live process holds it
            force: Break a live holder's lock once the timeout expires

        Raises:
            LockHeldError: timeout is 0 and a live process holds the lock
            LockTimeoutError: the lock stayed held for the whole timeout
        """
        if self.owned:
            return

        deadline = time.monotonic() + timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            token = uuid4().hex
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                seen = self.holder()
                if self.is_stale():
                    if self._remove_if_unchanged(seen, stale_only=True):
                        logger.warning(f"Reclaimed stale lock {self.path} (holder: {seen})")
                    continue
                if not self.path.exists():
                    continue
                if time.monotonic() >= deadline:
                    holder = self.holder()
                    if force:
                        if self._remove_if_unchanged(holder, stale_only=False):
                            logger.warning(f"Broke lock {self.path} held by {holder}")
                        continue
                    if timeout <= 0:
                        raise LockHeldError(f"{self.path} is held by {holder}", holder)
                    raise LockTimeoutError(
                        f"Timed out after {timeout}s waiting for {self.path} (holder: {holder})"
                    )
                time.sleep(self._poll_interval)
                continue

            record = {
                "pid": os.getpid(),
                "host": socket.gethostname(),
                "token": token,
                "purpose": self.purpose,
                "acquired_at": to_iso(utc_now()),
            }
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f)
                f.flush()
                os.fsync(f.fileno())
            self._token = token
            logger.debug(f"Acquired lock {self.path}")
            return

    def release(self) -> None:
        """Release the lock if this instance still owns it."""
        if not self.owned:
            return
        holder = self.holder()
        if holder and holder.get("token") == self._token:
            self._unlink()
        else:
            logger.warning(f"Lock {self.path} was taken over before release")
        self._token = None

    def held(self, timeout: float = 0.0, force: bool = False) -> "_HeldLock":
        return _HeldLock(self, timeout, force)

    def _remove_if_unchanged(self, seen: dict | None, stale_only: bool) -> bool:
        """
        Delete the lock file if it still records the holder `seen`.

        Runs under an flock on a sibling guard file so that two reclaimers of
        the same dead holder cannot both delete: the second one finds the
        winner's fresh record and leaves it alone.
        """
        guard = self.path.with_name(self.path.name + ".reclaim")
        fd = os.open(guard, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            if self.holder() != seen:
                return False
            if stale_only and not self.is_stale():
                return False
            self._unlink()
            return True
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _unlink(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "StateLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class _HeldLock:
    def __init__(self, lock: StateLock, timeout: float, force: bool) -> None:
        self._lock = lock
        self._timeout = timeout
        self._force = force

    def __enter__(self) -> StateLock:
        self._lock.acquire(timeout=self._timeout, force=self._force)
        return self._lock

    def __exit__(self, *exc) -> None:
        self._lock.release()
