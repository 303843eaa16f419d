"""
Per-agent resource registry.

Handles an agent opens (database connections, browser sessions, spawned
processes) are registered here under a key together with the function that
releases them. Resources are never shared between agents; delegation only
passes text. Removing an agent closes everything it registered.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

Closer = Callable[[Any], None]


@dataclass
class _Entry:
    handle: Any
    closer: Closer | None


class ResourceRegistry:
    """Keyed handles with explicit close semantics."""

    def __init__(self, owner: str = ""):
        self.owner = owner
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def register(self, key: str, handle: Any, closer: Closer | None = None) -> None:
        """Store a handle. An existing handle under the same key is closed first."""
        with self._lock:
            previous = self._entries.pop(key, None)
            self._entries[key] = _Entry(handle, closer)
        if previous is not None:
            self._close_entry(key, previous)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
        return entry.handle if entry is not None else default

    def close(self, key: str) -> bool:
        """Close and forget one handle. Returns False if the key was unknown."""
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._close_entry(key, entry)
        return True

    def close_all(self) -> None:
        with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()
        for key, entry in reversed(entries):
            self._close_entry(key, entry)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _close_entry(self, key: str, entry: _Entry) -> None:
        if entry.closer is None:
            return
        try:
            entry.closer(entry.handle)
        except Exception as e:
            # A failing closer must not keep the remaining handles open.
            logger.warning(f"Failed to close resource {key} for {self.owner or 'agent'}: {e}")
        else:
            logger.debug(f"Closed resource {key} for {self.owner or 'agent'}")
