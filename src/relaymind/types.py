"""
Core types for the agent system.

These types represent the data that flows through the conversation loop.
A conversation window is a plain ordered list of Message objects; the
order is the literal transcript replayed to the model, so it is only ever
appended to (or replaced wholesale during compaction).
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ToolCall:
    """
    A request from the LLM to execute a tool.

    `arguments` is the parsed object; `arguments_json` keeps the text the
    model actually produced so it can be replayed verbatim.
    """
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    arguments_json: str | None = None

    def __post_init__(self) -> None:
        if self.arguments_json is None:
            self.arguments_json = json.dumps(self.arguments)

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.arguments_json,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        """Create from OpenAI API format (or the flat {id, name, arguments} form)."""
        function = data.get("function") or {}
        name = function.get("name") or data.get("name", "")
        raw = function.get("arguments", data.get("arguments", {}))

        if isinstance(raw, str):
            try:
                arguments = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError:
                arguments = {"raw": raw}
            if not isinstance(arguments, dict):
                arguments = {"raw": arguments}
            return cls(id=data.get("id", ""), name=name, arguments=arguments, arguments_json=raw)

        return cls(id=data.get("id", ""), name=name, arguments=dict(raw or {}))


@dataclass
class Message:
    """
    A single message in the conversation history.

    content is None for assistant messages that only carry tool calls.
    tool_calls appears only on assistant messages; tool_call_id and name
    appear only on tool messages and link a result back to its request.
    """
    role: Role
    content: str | None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            self.role = Role(self.role)

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        result: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
        }
        if self.tool_calls:
            result["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            result["name"] = self.name
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from OpenAI API format."""
        tool_calls = None
        if data.get("tool_calls"):
            tool_calls = [ToolCall.from_dict(tc) for tc in data["tool_calls"]]
        return cls(
            role=Role(data["role"]),
            content=data.get("content"),
            tool_calls=tool_calls,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


@dataclass
class ToolResult:
    """
    The result of executing a tool.

    This becomes a tool message in the conversation history.
    """
    tool_call_id: str
    content: str
    success: bool = True
    error: str | None = None


def messages_to_dicts(messages: list[Message]) -> list[dict[str, Any]]:
    return [m.to_dict() for m in messages]


def messages_from_dicts(data: list[dict[str, Any]]) -> list[Message]:
    return [Message.from_dict(m) for m in data]
