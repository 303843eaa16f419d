"""
Event log - the observability sink for turns, rounds and tool dispatch.

Every model call, tool dispatch, compaction and delegation is recorded as
an event. Provider failures are logged here before they propagate out of
a turn, so a failed turn still leaves a trail. When the log has a path,
every event is also appended to that file as one JSON line.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of events in the agent event log."""
    TURN_START = "turn_start"
    TURN_END = "turn_end"
    ROUND_CAP_REACHED = "round_cap_reached"
    LLM_REQUEST = "llm_request"
    LLM_RESPONSE = "llm_response"
    LLM_RETRY = "llm_retry"
    LLM_ERROR = "llm_error"
    TOOL_CALL_RECOVERED = "tool_call_recovered"
    TOOL_DISPATCH = "tool_dispatch"
    TOOL_RESULT = "tool_result"
    VALIDATION_ERROR = "validation_error"
    TOOL_ERROR = "tool_error"
    CONFIRMATION_DECLINED = "confirmation_declined"
    COMPACTION = "compaction"
    DELEGATION = "delegation"


@dataclass
class AgentEvent:
    """A single event in the event log."""
    timestamp: datetime
    event_type: EventType
    tool_call_id: str
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "tool_call_id": self.tool_call_id,
            "data": self.data,
        }


@dataclass
class EventLog:
    """Append-only event log."""
    events: list[AgentEvent] = field(default_factory=list)
    path: Path | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def append(self, event: AgentEvent) -> None:
        with self._lock:
            self.events.append(event)
            if self.path is not None:
                self._write(event)

    def log_event(
        self,
        event_type: EventType,
        tool_call_id: str = "",
        **data: Any,
    ) -> AgentEvent:
        event = AgentEvent(
            timestamp=datetime.now(UTC),
            event_type=event_type,
            tool_call_id=tool_call_id,
            data=data,
        )
        self.append(event)
        return event

    def of_type(self, event_type: EventType) -> list[AgentEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def _write(self, event: AgentEvent) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")
        except OSError as e:
            logger.warning(f"Failed to write event to {self.path}: {e}")
