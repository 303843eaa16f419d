"""
ToolDispatcher - Routes tool calls, validates arguments and isolates failures.

Every call requested by the model passes through execute():

1. Routing: "agent:<id>" / "agent/<id>" become a call to the delegate tool,
   "mcp:<server>:<tool>" goes to a configured tool server, anything else
   is resolved through the ToolRegistry.
2. Argument parsing: a dict, or a JSON string that decodes to an object.
3. Schema validation against the tool's declared parameters.
4. Safe-mode gate for destructive tools.
5. Execution with exception isolation.

Nothing here raises into the loop. Every failure becomes a result string
the model sees in the next round.
"""

import json
import logging
from typing import TYPE_CHECKING, Any

from relaymind.errors import ToolValidationError
from relaymind.events import EventLog, EventType
from relaymind.tools import Tool, ToolContext, ToolRegistry
from relaymind.types import ToolCall, ToolResult

if TYPE_CHECKING:
    from relaymind.mcp import McpServerRegistry

logger = logging.getLogger(__name__)

DELEGATE_TOOL = "delegate"
INSTRUCTION_KEYS = ("instruction", "task", "message")

_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, int | float) and not isinstance(v, bool) and v == v,
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
    "null": lambda v: v is None,
}


def validate_arguments(parameters: dict[str, Any], args: dict[str, Any]) -> list[str]:
    """Check required properties and primitive types. Returns a list of problems."""
    errors = []
    for key in parameters.get("required", []):
        if key not in args:
            errors.append(f"Missing required field: {key}")

    for key, schema in (parameters.get("properties") or {}).items():
        if key not in args or "type" not in schema:
            continue
        types = schema["type"] if isinstance(schema["type"], list) else [schema["type"]]
        # Unknown type keywords are not enforced.
        if not any(_TYPE_CHECKS.get(t, lambda v: True)(args[key]) for t in types):
            errors.append(f"Invalid type for {key}: expected {' or '.join(types)}")
    return errors


def parse_arguments(raw_args: dict[str, Any] | str | None) -> dict[str, Any]:
    """Accept a dict or a JSON object string. Raises ValueError otherwise."""
    if raw_args is None:
        return {}
    if isinstance(raw_args, dict):
        return raw_args
    if isinstance(raw_args, str):
        if not raw_args.strip():
            return {}
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError as e:
            raise ValueError(f"arguments are not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ValueError(f"arguments must be a JSON object, got {type(parsed).__name__}")
        return parsed
    raise ValueError(f"arguments must be an object, got {type(raw_args).__name__}")


def format_result(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, default=str)


class ToolDispatcher:
    """
    Executes tool calls for one agent (or a set of agents sharing tools).

    mcp is optional; without it "mcp:" targets return an error result.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        mcp: "McpServerRegistry | None" = None,
        event_log: EventLog | None = None,
    ):
        self.registry = registry
        self.mcp = mcp
        self.event_log = event_log or EventLog()

    def dispatch(
        self,
        name: str,
        raw_args: dict[str, Any] | str | None,
        context: ToolContext,
        call_id: str = "",
    ) -> str:
        """Run one tool call and return the text fed back to the model."""
        return self.execute(
            ToolCall(id=call_id, name=name, arguments={}, arguments_json=""),
            context,
            raw_args=raw_args,
        ).content

    def execute(
        self,
        tool_call: ToolCall,
        context: ToolContext,
        raw_args: dict[str, Any] | str | None = None,
    ) -> ToolResult:
        """
        Execute a ToolCall. raw_args overrides the call's own arguments.

        The call's original JSON is preferred when present so that a model
        emitting a non-object (e.g. a bare list) is told so instead of
        silently receiving {"raw": ...}.
        """
        call_id = tool_call.id
        name = tool_call.name.strip()
        if raw_args is None:
            raw_args = tool_call.arguments_json or tool_call.arguments

        self.event_log.log_event(EventType.TOOL_DISPATCH, call_id, tool_name=name)

        try:
            args = parse_arguments(raw_args)
        except ValueError as e:
            return self._validation_failure(call_id, name, [str(e)])

        lowered = name.lower()
        if lowered.startswith("mcp:"):
            return self._dispatch_mcp(call_id, name, args)

        if lowered.startswith(("agent:", "agent/")):
            target = name[len("agent:"):].strip()
            instruction = next((args[k] for k in INSTRUCTION_KEYS if args.get(k)), None)
            if not instruction:
                return self._validation_failure(
                    call_id, name, ["Agent call requires an 'instruction' argument."]
                )
            name, args = DELEGATE_TOOL, {"target_agent_id": target, "instruction": instruction}

        tool = self.registry.get(name)
        if tool is None:
            error = f"Unknown tool: {name}"
            self.event_log.log_event(EventType.TOOL_ERROR, call_id, tool_name=name, error=error)
            available = ", ".join(sorted(self.registry.tool_names))
            return ToolResult(
                tool_call_id=call_id,
                content=f"Error: Tool '{name}' not found. Available tools: {available}",
                success=False,
                error=error,
            )

        errors = validate_arguments(tool.parameters, args)
        if errors:
            return self._validation_failure(call_id, tool.name, errors)

        refusal = self._check_confirmation(call_id, tool, args, context)
        if refusal is not None:
            return refusal

        return self._invoke(call_id, tool, args, context)

    def _validation_failure(self, call_id: str, name: str, errors: list[str]) -> ToolResult:
        error = ToolValidationError(name, errors)
        logger.warning(str(error))
        self.event_log.log_event(EventType.VALIDATION_ERROR, call_id, tool_name=name, errors=errors)
        return ToolResult(
            tool_call_id=call_id,
            content=f"Error: {error}",
            success=False,
            error=str(error),
        )

    def _check_confirmation(
        self,
        call_id: str,
        tool: Tool,
        args: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult | None:
        safe_mode = context.agent is not None and context.agent.identity.safe_mode
        if not tool.destructive or not safe_mode:
            return None

        if context.confirm is None:
            error = (
                f"Tool '{tool.name}' requires confirmation in safe mode, "
                "but no confirmation callback was provided"
            )
            logger.error(error)
            self.event_log.log_event(EventType.TOOL_ERROR, call_id, tool_name=tool.name, error=error)
            return ToolResult(
                tool_call_id=call_id,
                content=f"Error: configuration error: {error}.",
                success=False,
                error=error,
            )

        prompt = f"Allow {tool.name} with arguments {json.dumps(args, default=str)}?"
        if context.confirm(prompt):
            return None

        logger.info(f"User declined {tool.name}")
        self.event_log.log_event(EventType.CONFIRMATION_DECLINED, call_id, tool_name=tool.name)
        return ToolResult(
            tool_call_id=call_id,
            content=f"Action cancelled by user: {tool.name} was not executed.",
            success=False,
            error="declined",
        )

    def _invoke(
        self,
        call_id: str,
        tool: Tool,
        args: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        logger.debug(f"Executing {tool.name} with {args}")
        try:
            content = format_result(tool.handler(args, context))
        except Exception as e:
            logger.warning(f"Tool {tool.name} raised: {e}")
            self.event_log.log_event(EventType.TOOL_ERROR, call_id, tool_name=tool.name, error=str(e))
            return ToolResult(
                tool_call_id=call_id,
                content=f"Error executing tool {tool.name}: {e}",
                success=False,
                error=str(e),
            )

        self.event_log.log_event(
            EventType.TOOL_RESULT, call_id, tool_name=tool.name, result_chars=len(content)
        )
        return ToolResult(tool_call_id=call_id, content=content)

    def _dispatch_mcp(self, call_id: str, name: str, args: dict[str, Any]) -> ToolResult:
        _, _, rest = name.partition(":")
        server, _, remote_tool = rest.partition(":")
        if not server or not remote_tool:
            return self._validation_failure(call_id, name, ["MCP call format: mcp:<server>:<tool>"])

        if self.mcp is None:
            error = "No MCP servers are configured"
            self.event_log.log_event(EventType.TOOL_ERROR, call_id, tool_name=name, error=error)
            return ToolResult(tool_call_id=call_id, content=f"Error: {error}.", success=False, error=error)

        try:
            content = self.mcp.call_tool(server, remote_tool, args)
        except Exception as e:
            logger.warning(f"MCP call {name} failed: {e}")
            self.event_log.log_event(EventType.TOOL_ERROR, call_id, tool_name=name, error=str(e))
            return ToolResult(
                tool_call_id=call_id,
                content=f"Error executing tool {name}: {e}",
                success=False,
                error=str(e),
            )

        self.event_log.log_event(EventType.TOOL_RESULT, call_id, tool_name=name, result_chars=len(content))
        return ToolResult(tool_call_id=call_id, content=content)
