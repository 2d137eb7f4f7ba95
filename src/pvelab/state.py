"""Run bookkeeping: resumable key=value state, a single-run lock and log retention."""

import atexit
import logging
import os
import time
from pathlib import Path
from typing import Dict, Optional

from pvelab.exceptions import LockHeldError

logger = logging.getLogger(__name__)


class StateFile:
    """Flat key=value file remembering the last run (vmid, name, os, storage, ip)."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def as_dict(self) -> Dict[str, str]:
        if not self.path.is_file():
            return {}
        values: Dict[str, str] = {}
        for line in self.path.read_text().splitlines():
            key, sep, value = line.partition("=")
            if sep and key.strip():
                values[key.strip()] = value.strip()
        return values

    def load(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.as_dict().get(key, default)

    def save(self, key: str, value: object) -> None:
        if "\n" in str(value) or "=" in key:
            raise ValueError(f"Cannot store {key!r}={value!r} in state file")
        values = self.as_dict()
        values[key] = str(value)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text("".join(f"{k}={v}\n" for k, v in values.items()))
        os.replace(tmp, self.path)
        logger.debug(f"State saved: {key}={value}")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info(f"🗑️  Cleared state file {self.path}")


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProcessLock:
    """PID-file lock preventing two concurrent provisioning runs.

    A lock left behind by a dead process is treated as stale and taken over.
    The lock is released on normal interpreter exit.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self.held = False

    def acquire(self) -> None:
        """
        Raises:
            LockHeldError: If a live process already holds the lock
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                pid = self._read_pid()
                if pid is not None and _pid_alive(pid):
                    raise LockHeldError(str(self.path), pid)
                logger.warning(f"⚠️  Removing stale lock {self.path} (pid {pid})")
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            break

        self.held = True
        atexit.register(self.release)
        logger.debug(f"Acquired lock {self.path}")

    def _read_pid(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def release(self) -> None:
        if not self.held:
            return
        if self._read_pid() == os.getpid():
            self.path.unlink(missing_ok=True)
        self.held = False
        atexit.unregister(self.release)
        logger.debug(f"Released lock {self.path}")

    def __enter__(self) -> "ProcessLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


def cleanup_old_logs(log_dir: str, retention_days: int, pattern: str = "pvelab_*.log") -> int:
    """Delete run logs older than ``retention_days``. Returns how many were removed."""
    directory = Path(log_dir)
    if not directory.is_dir():
        return 0
    cutoff = time.time() - retention_days * 86400
    removed = 0
    for log_file in directory.glob(pattern):
        if log_file.stat().st_mtime < cutoff:
            log_file.unlink()
            removed += 1
    if removed:
        logger.info(f"🗑️  Removed {removed} log files older than {retention_days} days")
    return removed
