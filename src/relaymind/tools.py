"""
Tool System - The only way to affect the world.

Tools are the only mechanism by which an agent can have side effects.
A Tool pairs a declarative schema (what the model sees) with a handler
(what actually runs). The registry maps canonical names to tools and
accepts the looser spellings models tend to produce.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from relaymind.agent_loop import Agent

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], bool]

# Names with these prefixes are routed by the dispatcher rather than looked up.
ROUTED_PREFIXES = ("mcp:", "agent:", "agent/")


@dataclass
class ToolContext:
    """
    Capabilities passed down to every tool call.

    agent is the invoking agent (working directory, resources, safe mode).
    confirm is the caller-supplied confirmation callback for destructive
    actions. delegation_chain lists the agent ids the current request has
    already passed through, outermost first.
    """
    agent: "Agent | None" = None
    confirm: ConfirmCallback | None = None
    delegation_chain: tuple[str, ...] = ()

    @property
    def depth(self) -> int:
        return len(self.delegation_chain)


class ToolHandler(Protocol):
    """Protocol for tool handler functions."""
    def __call__(self, args: dict[str, Any], context: ToolContext) -> Any: ...


@dataclass
class Tool:
    """
    Definition of a tool that the agent can use.

    - name: Unique canonical identifier
    - description: What the tool does (shown to the LLM)
    - parameters: JSON Schema object for the tool's arguments
    - handler: Function that executes the tool
    - destructive: Requires confirmation when the agent runs in safe mode
    - aliases: Extra names that resolve to this tool
    """
    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler
    destructive: bool = False
    aliases: tuple[str, ...] = ()

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def normalize_tool_name(name: str) -> str:
    """Map camelCase, kebab-case and spaced names to snake_case ("readFile" -> "read_file")."""
    normalized = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name.strip())
    normalized = re.sub(r"[-\s.]+", "_", normalized)
    return normalized.lower()


@dataclass
class ToolRegistry:
    """
    Registry of available tools.

    Only tools registered here can be called. Lookups go through
    resolve(), which accepts any casing/separator convention plus the
    aliases each tool declares.
    """

    _tools: dict[str, Tool] = field(default_factory=dict)
    _aliases: dict[str, str] = field(default_factory=dict)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self._tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self._tools[tool.name] = tool
        self.add_alias(tool.name, tool.name)
        for alias in tool.aliases:
            self.add_alias(alias, tool.name)
        logger.debug(f"Registered tool: {tool.name}")

    def register_function(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: ToolHandler,
        destructive: bool = False,
        aliases: tuple[str, ...] = (),
    ) -> Tool:
        """Convenience method to register a function as a tool."""
        tool = Tool(
            name=name,
            description=description,
            parameters=parameters,
            handler=handler,
            destructive=destructive,
            aliases=aliases,
        )
        self.register(tool)
        return tool

    def add_alias(self, alias: str, canonical: str) -> None:
        self._aliases[normalize_tool_name(alias).replace("_", "")] = canonical

    def unregister(self, name: str) -> None:
        tool = self._tools.pop(name, None)
        if tool is not None:
            self._aliases = {k: v for k, v in self._aliases.items() if v != name}

    def resolve(self, name: str) -> str | None:
        """Return the canonical name for any accepted spelling, or None."""
        if not name:
            return None
        if name in self._tools:
            return name
        normalized = normalize_tool_name(name)
        if normalized in self._tools:
            return normalized
        return self._aliases.get(normalized.replace("_", ""))

    def get(self, name: str) -> Tool | None:
        """Get a tool by any accepted spelling."""
        canonical = self.resolve(name)
        return self._tools.get(canonical) if canonical else None

    def subset(self, names: list[str] | None) -> "ToolRegistry":
        """A registry restricted to the given canonical names (None keeps all)."""
        if names is None:
            return ToolRegistry(dict(self._tools), dict(self._aliases))
        keep = {n: t for n, t in self._tools.items() if n in set(names)}
        aliases = {k: v for k, v in self._aliases.items() if v in keep}
        return ToolRegistry(keep, aliases)

    def get_schemas(self) -> list[dict[str, Any]]:
        """Get OpenAI-format schemas for all registered tools."""
        return [tool.to_openai_schema() for tool in self._tools.values()]

    @property
    def tool_names(self) -> list[str]:
        """List of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return self.resolve(name) is not None

    def accepts(self, name: str) -> bool:
        """Whether a call to name would be routed somewhere (registered or prefixed)."""
        return name in self or name.strip().lower().startswith(ROUTED_PREFIXES)
