"""
HistoryStore - Persistent conversation windows, keyed by agent id.

Persistence is best-effort: the loop saves after every completed round,
so a crash loses at most the round in flight.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from relaymind.types import Message, Role, messages_from_dicts, messages_to_dicts

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 30 * 1024 * 1024
RECENT_ON_OVERFLOW = 5


class HistoryStore(ABC):
    """
    Abstract base class for chat-history storage.

    Implementations must provide:
    - load_history(): Return the saved window for an agent (empty if none)
    - save_history(): Replace the saved window for an agent
    - clear_history(): Drop one agent's window, or everything
    """

    @abstractmethod
    def load_history(self, agent_id: str) -> list[Message]:
        pass

    @abstractmethod
    def save_history(self, agent_id: str, messages: list[Message]) -> None:
        pass

    @abstractmethod
    def clear_history(self, agent_id: str | None = None) -> None:
        pass


class InMemoryHistoryStore(HistoryStore):
    """Keeps windows in a dict. Used for tests and throwaway agents."""

    def __init__(self) -> None:
        self._data: dict[str, list[dict[str, Any]]] = {}
        self.save_count = 0

    def load_history(self, agent_id: str) -> list[Message]:
        return messages_from_dicts(self._data.get(agent_id, []))

    def save_history(self, agent_id: str, messages: list[Message]) -> None:
        self._data[agent_id] = messages_to_dicts(messages)
        self.save_count += 1

    def clear_history(self, agent_id: str | None = None) -> None:
        if agent_id is None:
            self._data.clear()
        else:
            self._data.pop(agent_id, None)


class JsonHistoryStore(HistoryStore):
    """
    All agents' windows in one JSON file.

    When the file would exceed max_bytes, the saving agent's window is cut
    down to its system message plus the last few messages; if that is still
    too large, every other agent's history is dropped.
    """

    def __init__(self, path: str | Path, max_bytes: int = DEFAULT_MAX_BYTES):
        self.path = Path(path).expanduser()
        self.max_bytes = max_bytes
        self._lock = threading.Lock()

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable history file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def load_history(self, agent_id: str) -> list[Message]:
        with self._lock:
            return messages_from_dicts(self._read_all().get(agent_id, []))

    def save_history(self, agent_id: str, messages: list[Message]) -> None:
        with self._lock:
            history = self._read_all()
            history[agent_id] = messages_to_dicts(messages)
            content = json.dumps(history, indent=2)

            if len(content.encode("utf-8")) > self.max_bytes:
                logger.warning(
                    f"Chat history exceeds {self.max_bytes} bytes; trimming history for {agent_id}"
                )
                system = next((m for m in messages if m.role == Role.SYSTEM), None)
                recent = messages[-RECENT_ON_OVERFLOW:]
                kept = [system] + [m for m in recent if m is not system] if system else recent
                history[agent_id] = messages_to_dicts(kept)
                content = json.dumps(history, indent=2)

                if len(content.encode("utf-8")) > self.max_bytes:
                    logger.warning("Chat history still too large; clearing all other agents")
                    history = {agent_id: messages_to_dicts([system] if system else [])}

            self._write_all(history)

    def clear_history(self, agent_id: str | None = None) -> None:
        with self._lock:
            if agent_id is None:
                self.path.unlink(missing_ok=True)
                return
            history = self._read_all()
            history.pop(agent_id, None)
            self._write_all(history)
