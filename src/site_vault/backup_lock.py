"""Advisory per-backup lock.

A backup's archives and manifest belong to the job that builds them
until the upload is confirmed. The lock is a small JSON file created
with ``O_EXCL`` in the work directory; locks left behind by a dead
process on this host, or older than ``stale_after`` seconds, are taken
over.
"""

import json
import logging
import os
import socket
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

from site_vault.exceptions import BackupLockedError

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 6 * 60 * 60


def lock_path(lock_dir: Union[str, Path], backup_id: str) -> Path:
    return Path(lock_dir) / f".backup-{backup_id}.lock"


def _read_owner(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _is_stale(path: Path, stale_after: Optional[float]) -> bool:
    owner = _read_owner(path)

    if owner and owner.get("host") == socket.gethostname() and isinstance(owner.get("pid"), int):
        try:
            os.kill(owner["pid"], 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            pass

    if stale_after is not None:
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > stale_after

    return False


class BackupLock:
    """Exclusive claim on one backup_id's working set.

    Example:
        with BackupLock(work_dir, "bk_42"):
            builder.build(files, backup_id="bk_42")
    """

    def __init__(
        self,
        lock_dir: Union[str, Path],
        backup_id: str,
        stale_after: Optional[float] = DEFAULT_STALE_AFTER,
    ):
        self.lock_dir = Path(lock_dir)
        self.backup_id = backup_id
        self.stale_after = stale_after
        self.path = lock_path(self.lock_dir, backup_id)
        self.acquired = False

    def acquire(self) -> "BackupLock":
        """Take the lock.

        Raises:
            BackupLockedError: If a live job already holds it
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if _is_stale(self.path, self.stale_after):
                    logger.warning(f"Removing stale lock for backup {self.backup_id}")
                    self.path.unlink(missing_ok=True)
                    continue
                raise BackupLockedError(
                    f"Backup {self.backup_id} is being processed by another job",
                    backup_id=self.backup_id,
                    lock_path=str(self.path),
                )

            with os.fdopen(fd, "w") as f:
                json.dump(
                    {"pid": os.getpid(), "host": socket.gethostname(), "acquired_at": time.time()},
                    f,
                )
            self.acquired = True
            logger.debug(f"Acquired lock {self.path}")
            return self

        raise BackupLockedError(
            f"Could not acquire lock for backup {self.backup_id}",
            backup_id=self.backup_id,
            lock_path=str(self.path),
        )

    def release(self) -> None:
        if self.acquired:
            self.path.unlink(missing_ok=True)
            self.acquired = False
            logger.debug(f"Released lock {self.path}")

    def __enter__(self) -> "BackupLock":
        return self.acquire()

    def __exit__(self, *exc_info: Any) -> None:
        self.release()

    @staticmethod
    def is_locked(
        lock_dir: Union[str, Path],
        backup_id: str,
        stale_after: Optional[float] = DEFAULT_STALE_AFTER,
    ) -> bool:
        """Whether a live job currently holds the lock for ``backup_id``."""
        path = lock_path(lock_dir, backup_id)
        return path.exists() and not _is_stale(path, stale_after)
