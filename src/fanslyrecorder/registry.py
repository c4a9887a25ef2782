"""
Lock-guarded registry used for every map shared between tasks.
"""

import threading
from typing import Dict, Generic, Optional, TypeVar

K = TypeVar('K')
V = TypeVar('V')


class Registry(Generic[K, V]):
    """
    Mapping with an internal lock and a deliberately narrow interface.

    The raw dict never leaves the registry; callers get copies from
    snapshot().
    """

    def __init__(self, initial: Optional[Dict[K, V]] = None):
        self._items: Dict[K, V] = dict(initial or {})
        self._lock = threading.Lock()

    def add(self, key: K, value: V) -> None:
        with self._lock:
            self._items[key] = value

    def add_if_absent(self, key: K, value: V) -> bool:
        """Insert only when the key is missing. Returns True if inserted."""
        with self._lock:
            if key in self._items:
                return False
            self._items[key] = value
            return True

    def remove(self, key: K) -> Optional[V]:
        with self._lock:
            return self._items.pop(key, None)

    def discard(self, key: K, value: V) -> bool:
        """Remove the key only while it still maps to this exact value."""
        with self._lock:
            if self._items.get(key) is value:
                del self._items[key]
                return True
            return False

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            return self._items.get(key)

    def contains(self, key: K) -> bool:
        with self._lock:
            return key in self._items

    def snapshot(self) -> Dict[K, V]:
        with self._lock:
            return dict(self._items)

    def replace(self, items: Dict[K, V]) -> None:
        with self._lock:
            self._items = dict(items)

    def clear(self) -> Dict[K, V]:
        """Empty the registry and return what it held."""
        with self._lock:
            items, self._items = self._items, {}
            return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
