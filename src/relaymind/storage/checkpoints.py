"""
CheckpointStore - Write-once archives of compacted conversation slices.

A checkpoint is written before the memory manager mutates a window, so a
summary is never the only copy of history. The model can read one back
with the read_checkpoint tool.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from relaymind.types import Message, messages_from_dicts, messages_to_dicts

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    """An immutable snapshot of a contiguous slice of a conversation window."""
    id: str
    timestamp: datetime
    summary: str
    original_message_count: int
    messages: tuple[Message, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "summary": self.summary,
            "original_message_count": self.original_message_count,
            "messages": messages_to_dicts(list(self.messages)),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            summary=data.get("summary", ""),
            original_message_count=data.get("original_message_count", len(data.get("messages", []))),
            messages=tuple(messages_from_dicts(data.get("messages", []))),
        )

    def render(self) -> str:
        """Human-readable form returned to the model."""
        lines = [
            f"CHECKPOINT {self.id} (Timestamp: {self.timestamp.isoformat()})",
            f"SUMMARY: {self.summary}",
            "MESSAGES:",
        ]
        for m in self.messages:
            body = m.content if m.content is not None else json.dumps(
                [tc.to_dict() for tc in m.tool_calls or []]
            )
            lines.append(f"[{m.role.value}] {body}")
        return "\n\n".join(lines)


class CheckpointStore:
    """
    Checkpoints stored as one JSON file each.

    Files are created exclusively; an existing checkpoint is never rewritten.
    """

    def __init__(self, storage_dir: str | Path):
        self.storage_dir = Path(storage_dir).expanduser()

    def _path(self, checkpoint_id: str) -> Path:
        return self.storage_dir / f"{checkpoint_id}.json"

    def create_checkpoint(self, messages: list[Message], summary: str) -> str:
        """Archive messages and return the new checkpoint id."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(UTC)
        checkpoint = Checkpoint(
            id=f"ckpt_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}",
            timestamp=now,
            summary=summary,
            original_message_count=len(messages),
            messages=tuple(messages),
        )
        with open(self._path(checkpoint.id), "x", encoding="utf-8") as f:
            json.dump(checkpoint.to_dict(), f, indent=2)
        logger.info(f"Archived {len(messages)} messages to checkpoint {checkpoint.id}")
        return checkpoint.id

    def load_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        """Load a checkpoint by id, or None if it does not exist."""
        if not checkpoint_id or "/" in checkpoint_id or "\\" in checkpoint_id:
            return None
        path = self._path(checkpoint_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return Checkpoint.from_dict(json.load(f))

    def list_checkpoints(self) -> list[dict[str, Any]]:
        """Metadata for every checkpoint, newest first."""
        if not self.storage_dir.exists():
            return []
        entries = []
        for path in self.storage_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Skipping unreadable checkpoint {path.name}: {e}")
                continue
            entries.append({
                "id": data["id"],
                "timestamp": data["timestamp"],
                "summary": data.get("summary", ""),
                "original_message_count": data.get("original_message_count", 0),
            })
        return sorted(entries, key=lambda e: e["timestamp"], reverse=True)
