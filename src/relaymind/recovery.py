"""
Tool-call recovery from free text.

Some models ignore native tool calling and write the call into their text
instead. The system prompt asks them to use a fenced block of the form

    ```json
    { "tool": "tool_name", "args": { "param": "value" } }
    ```

recover_tool_call() tries, in order: a fenced JSON block, then the whole
text as a bare JSON object. It never raises; anything it cannot turn into
a call to a known tool yields None and the text is treated as an answer.
"""

import json
import logging
import re
import uuid
from typing import Any

from relaymind.tools import ToolRegistry
from relaymind.types import ToolCall

logger = logging.getLogger(__name__)

FENCED_BLOCK = re.compile(r"```(?:json|python|js)?\s*(\{.*?\})\s*```", re.DOTALL)

NAME_KEYS = ("tool", "cmd_type", "function", "name")
ARGS_KEYS = ("args", "arguments", "parameters")


def _parse_object(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _candidates(text: str) -> list[dict[str, Any]]:
    found = []
    for match in FENCED_BLOCK.finditer(text):
        obj = _parse_object(match.group(1))
        if obj is not None:
            found.append(obj)
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        obj = _parse_object(stripped)
        if obj is not None:
            found.append(obj)
    return found


def _to_tool_call(obj: dict[str, Any], registry: ToolRegistry) -> ToolCall | None:
    name_key = next((k for k in NAME_KEYS if isinstance(obj.get(k), str) and obj[k]), None)
    if name_key is None or not registry.accepts(obj[name_key]):
        return None
    name = obj[name_key]

    args = next((obj[k] for k in ARGS_KEYS if k in obj), None)
    if isinstance(args, str):
        args = _parse_object(args)
    if not isinstance(args, dict):
        # Flat form: everything except the name key is an argument.
        args = {k: v for k, v in obj.items() if k != name_key}

    return ToolCall(
        id=f"fallback-{uuid.uuid4().hex[:12]}",
        name=registry.resolve(name) or name,
        arguments=args,
    )


def recover_tool_call(text: str | None, registry: ToolRegistry) -> ToolCall | None:
    """Extract a single tool call from model text, or None."""
    if not text:
        return None
    for obj in _candidates(text):
        call = _to_tool_call(obj, registry)
        if call is not None:
            logger.info(f"Recovered tool call from text: {call.name}")
            return call
    return None
