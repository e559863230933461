from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from clouddump.logs import filename_token, logger

LOCK_PREFIX = "clouddump-"
LOCK_SUFFIX = ".lock"


@dataclass(frozen=True)
class LockToken:
    job_id: str
    path: Path
    acquired_at: datetime


class JobLock:
    """Per-job mutual exclusion: at most one token per job id at a time."""

    def try_acquire(self, job_id: str) -> Optional[LockToken]:
        raise NotImplementedError

    def release(self, token: LockToken) -> None:
        raise NotImplementedError


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class FileJobLock(JobLock):
    """Lock files created with O_EXCL in a shared directory.

    A lock file holds "<pid> <iso timestamp>". It is stale when the owning
    process is gone or the timestamp is older than ``stale_after``.
    """

    def __init__(
        self,
        directory: Path,
        stale_after: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.directory = Path(directory)
        self.stale_after = stale_after
        self.clock = clock

    def path_for(self, job_id: str) -> Path:
        return self.directory / f"{LOCK_PREFIX}{filename_token(job_id)}{LOCK_SUFFIX}"

    def try_acquire(self, job_id: str) -> Optional[LockToken]:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(job_id)
        acquired_at = self.clock()
        for _ in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._remove_if_stale(path):
                    return None
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{os.getpid()} {acquired_at.isoformat()}\n")
            return LockToken(job_id=job_id, path=path, acquired_at=acquired_at)
        return None

    def release(self, token: LockToken) -> None:
        owner = self._read(token.path)
        if owner is None:
            return
        pid, acquired_at = owner
        if pid != os.getpid() or acquired_at != token.acquired_at:
            logger.warning("Lock %s is no longer held by this run; leaving it in place.", token.path)
            return
        token.path.unlink(missing_ok=True)

    def cleanup_stale(self) -> List[Path]:
        removed: List[Path] = []
        if not self.directory.is_dir():
            return removed
        for path in sorted(self.directory.glob(f"{LOCK_PREFIX}*{LOCK_SUFFIX}")):
            if self._remove_if_stale(path):
                removed.append(path)
        return removed

    def _read(self, path: Path) -> Optional[Tuple[int, datetime]]:
        try:
            parts = path.read_text(encoding="utf-8").split()
        except FileNotFoundError:
            return None
        try:
            return int(parts[0]), datetime.fromisoformat(parts[1])
        except (IndexError, ValueError):
            return None

    def _is_stale(self, path: Path) -> bool:
        owner = self._read(path)
        if owner is None:
            # Created but not written yet: judge by age only.
            try:
                modified = datetime.fromtimestamp(path.stat().st_mtime)
            except FileNotFoundError:
                # Released by its owner in the meantime.
                return True
            return self.clock() - modified > self.stale_after
        pid, acquired_at = owner
        if not _pid_alive(pid):
            return True
        return self.clock() - acquired_at > self.stale_after

    def _remove_if_stale(self, path: Path) -> bool:
        if not self._is_stale(path):
            return False
        logger.warning("Removing stale lock %s", path)
        path.unlink(missing_ok=True)
        return True
