"""
Persisted watch-list for the Fansly live recorder.
JSON mapping of creator ID to display name, rewritten on every change.
"""

import json
import os
import sys
from pathlib import Path
from typing import Dict

import aiofiles

from .errors import WatchListError
from .logger import get_logger
from .registry import Registry


def _file_mode() -> int:
    # Windows only honours the read-only bit, so ask for the loosest mode there
    return 0o666 if sys.platform.startswith('win') else 0o644


class WatchList:
    """
    Creators under live monitoring.

    The in-memory mapping lives in a Registry. Persistence is explicit:
    callers mutate, then save().
    """

    def __init__(self, path: str = "./data/monitoring_state.json"):
        """
        Initialize watch-list.

        Args:
            path: Path to JSON watch-list file.
        """
        self.path = Path(path)
        self._entries: Registry[str, str] = Registry()
        self._logger = get_logger('watchlist')

    async def read_file(self) -> Dict[str, str]:
        """
        Read the file without touching memory.

        A missing or blank file reads as empty.

        Raises:
            WatchListError: If the file is unreadable or does not hold a JSON object.
        """
        if not self.path.exists():
            return {}

        try:
            async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                text = await f.read()
        except OSError as e:
            raise WatchListError(f"Failed to read watch-list {self.path}: {e}") from e

        if not text.strip():
            return {}

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise WatchListError(f"Watch-list {self.path} is corrupt: {e}") from e

        if not isinstance(data, dict):
            raise WatchListError(f"Watch-list {self.path} is not a JSON object")

        return {str(k): str(v) for k, v in data.items()}

    async def load(self) -> Dict[str, str]:
        """
        Load entries from disk at startup, replacing memory.

        An unusable file is logged and treated as empty.
        """
        try:
            entries = await self.read_file()
        except WatchListError as e:
            self._logger.error(f"{e}, starting with an empty watch-list")
            entries = {}
        self._entries.replace(entries)
        self._logger.info(f"Loaded watch-list: {len(entries)} creator(s)")
        return entries

    async def save(self) -> None:
        """
        Write the mapping atomically.

        Raises:
            WatchListError: If the file could not be written.
        """
        data = self._entries.snapshot()
        tmp_file = self.path.with_suffix(self.path.suffix + ".tmp")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_file, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(data, indent=2, ensure_ascii=False))
            os.chmod(tmp_file, _file_mode())
            os.replace(tmp_file, self.path)
        except OSError as e:
            raise WatchListError(f"Failed to save watch-list {self.path}: {e}") from e

    def add(self, creator_id: str, display_name: str) -> None:
        self._entries.add(creator_id, display_name)

    def remove(self, creator_id: str) -> None:
        self._entries.remove(creator_id)

    def contains(self, creator_id: str) -> bool:
        return self._entries.contains(creator_id)

    def get(self, creator_id: str) -> str:
        return self._entries.get(creator_id) or ""

    def snapshot(self) -> Dict[str, str]:
        return self._entries.snapshot()

    def replace(self, entries: Dict[str, str]) -> None:
        self._entries.replace(entries)

    def __len__(self) -> int:
        return len(self._entries)

    async def toggle(self, creator_id: str, display_name: str) -> bool:
        """
        Flip a creator's membership and persist.

        Reloads the file first so edits made by a running service are kept.

        Returns:
            True if the creator is now watched.

        Raises:
            WatchListError: If the file is unusable or could not be written.
        """
        self._entries.replace(await self.read_file())
        if self.contains(creator_id):
            self.remove(creator_id)
            watching = False
        else:
            self.add(creator_id, display_name)
            watching = True
        await self.save()
        return watching
