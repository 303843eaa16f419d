"""
TaskStateStore - Plain-text "active task" snapshots.

Written immediately before every compaction and independently of the
model-generated summary, so the goal survives even when summarization
fails.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path

from relaymind.types import Message, Role

logger = logging.getLogger(__name__)

RECENT_TOOL_RESULTS = 20
PREVIEW_CHARS = 5000


def render_task_state(goal: str | None, messages: list[Message], tool_call_count: int) -> str:
    """Build the markdown snapshot for a window."""
    user_messages = [m for m in messages if m.role == Role.USER and m.content]
    assistant_texts = [
        m.content for m in messages
        if m.role == Role.ASSISTANT and m.content and not m.tool_calls
    ]

    parts = ["# Active Task State", f"## Original Goal\n{goal or '(unknown)'}\n"]

    if user_messages:
        parts.append(f"## Full Original Request\n{user_messages[0].content}\n")

    if assistant_texts and len(assistant_texts[0]) > 50:
        parts.append(f"## Initial Plan/Understanding\n{assistant_texts[0][:PREVIEW_CHARS]}\n")

    tool_lines = [
        f"- {m.name or 'unknown'}: {(m.content or '')[:PREVIEW_CHARS].replace(chr(10), ' ')}"
        for m in messages if m.role == Role.TOOL and m.content
    ][-RECENT_TOOL_RESULTS:]
    if tool_lines:
        parts.append(f"## Recent Tool Activity (last {len(tool_lines)} calls)\n" + "\n".join(tool_lines) + "\n")

    parts.append(
        f"## Stats\n- Total tool calls: {tool_call_count}\n"
        f"- Saved at: {datetime.now(UTC).isoformat()}\n"
    )
    return "\n".join(parts)


class TaskStateStore:
    """One active_task.md per agent under <base_dir>/<agent_id>/."""

    FILENAME = "active_task.md"

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir).expanduser()

    def _path(self, agent_id: str) -> Path:
        return self.base_dir / (agent_id or "default") / self.FILENAME

    def save(self, agent_id: str, text: str) -> Path:
        path = self._path(agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        logger.debug(f"Task state saved to {path}")
        return path

    def load(self, agent_id: str) -> str | None:
        path = self._path(agent_id)
        if path.exists():
            return path.read_text(encoding="utf-8")
        return None
