"""
Filesystem recording locks.

A lock file per creator marks "a recording is in progress". The file holds
the PID of the owning process so locks left behind by a crash can be told
apart from live ones.
"""

import os
from pathlib import Path
from typing import List, Optional

import psutil

from .errors import LockHeldError
from .logger import get_logger


class RecordingLock:
    """Handle for an acquired lock file. release() is idempotent."""

    def __init__(self, path: Path, creator_id: str):
        self.path = path
        self.creator_id = creator_id
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> 'RecordingLock':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class RecordingLocks:
    """Directory of per-creator lock files."""

    SUFFIX = ".lock"

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._logger = get_logger('locks')

    def path_for(self, creator_id: str) -> Path:
        return self.directory / f"{creator_id}{self.SUFFIX}"

    def acquire(self, creator_id: str) -> RecordingLock:
        """
        Atomically create the lock file for a creator.

        Args:
            creator_id: Creator account ID.

        Returns:
            RecordingLock owning the file.

        Raises:
            LockHeldError: If the lock file already exists.
            OSError: For any other filesystem failure.
        """
        path = self.path_for(creator_id)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise LockHeldError(creator_id) from None

        try:
            os.write(fd, str(os.getpid()).encode('ascii'))
        finally:
            os.close(fd)

        self._logger.debug(f"Acquired recording lock {path}")
        return RecordingLock(path, creator_id)

    def is_held(self, creator_id: str) -> bool:
        return self.path_for(creator_id).exists()

    def owner_pid(self, creator_id: str) -> Optional[int]:
        """PID stored in the lock file, or None if missing or unreadable."""
        try:
            text = self.path_for(creator_id).read_text(encoding='ascii').strip()
        except (OSError, UnicodeDecodeError):
            return None
        if not text.isdigit():
            return None
        return int(text)

    def is_stale(self, creator_id: str) -> bool:
        """
        True when the lock exists but no live process owns it.

        Empty or garbled files count as stale.
        """
        if not self.is_held(creator_id):
            return False
        pid = self.owner_pid(creator_id)
        if pid is None:
            return True
        try:
            return not psutil.Process(pid).is_running()
        except psutil.NoSuchProcess:
            return True
        except psutil.Error as e:
            self._logger.debug(f"Cannot inspect PID {pid}: {e}")
            return False

    def remove(self, creator_id: str) -> bool:
        try:
            self.path_for(creator_id).unlink()
            return True
        except FileNotFoundError:
            return False

    def remove_if_stale(self, creator_id: str) -> bool:
        if self.is_stale(creator_id):
            self._logger.warning(f"Removing stale recording lock for {creator_id}")
            return self.remove(creator_id)
        return False

    def remove_stale(self) -> List[str]:
        """
        Remove every stale lock in the directory.

        Returns:
            Creator IDs whose locks were removed.
        """
        removed = []
        for path in self.directory.glob(f"*{self.SUFFIX}"):
            creator_id = path.name[:-len(self.SUFFIX)]
            if self.remove_if_stale(creator_id):
                removed.append(creator_id)
        if removed:
            self._logger.info(f"Cleaned up {len(removed)} stale recording lock(s)")
        return removed
