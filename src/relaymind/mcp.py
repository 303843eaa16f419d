"""
Tool servers reachable over stdio JSON-RPC (Model Context Protocol style).

Servers come from the environment:

Option 1: MCP_CONFIG_PATH points to a JSON file
  {
    "servers": {
      "files": {"command": "npx", "args": ["-y", "some-server"], "env": {}}
    }
  }

Option 2: MCP_SERVERS holds the same JSON as a string.

Every operation spawns a fresh connection, initializes it, performs one
request and closes it. Nothing is cached between calls, so a crashed
server only fails the call in flight.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from relaymind.config import RpcConfig
from relaymind.errors import ConfigurationError
from relaymind.rpc import DEFAULT_TIMEOUT, StdioRpcClient
from relaymind.tools import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_CHARS = 100


@dataclass
class McpServerConfig:
    """How to launch one tool server."""
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("name")
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "McpServerConfig":
        return cls(
            name=name,
            command=data.get("command", "npx"),
            args=list(data.get("args", [])),
            env=dict(data.get("env", {})),
            enabled=data.get("enabled", True) is not False,
        )


async def _list_tools_async(server: McpServerConfig, timeout: float) -> list[dict[str, Any]]:
    async with StdioRpcClient(server.command, server.args, server.env, timeout=timeout) as client:
        await client.initialize()
        result = await client.request("tools/list")
    return list((result or {}).get("tools", []))


async def _call_tool_async(
    server: McpServerConfig,
    tool_name: str,
    arguments: dict[str, Any],
    timeout: float,
) -> Any:
    async with StdioRpcClient(server.command, server.args, server.env, timeout=timeout) as client:
        await client.initialize()
        return await client.request("tools/call", {"name": tool_name, "arguments": arguments})


def list_server_tools(server: McpServerConfig, timeout: float = DEFAULT_TIMEOUT) -> list[dict[str, Any]]:
    """The tools/list result of one server (blocking)."""
    return asyncio.run(_list_tools_async(server, timeout))


def call_server_tool(
    server: McpServerConfig,
    tool_name: str,
    arguments: dict[str, Any] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any:
    """The raw tools/call result of one server (blocking)."""
    return asyncio.run(_call_tool_async(server, tool_name, arguments or {}, timeout))


def format_tool_result(result: Any) -> str:
    """Flatten a tools/call result into text for the model."""
    if not isinstance(result, dict) or "content" not in result:
        return json.dumps(result, default=str)

    parts = []
    for item in result.get("content") or []:
        if not isinstance(item, dict):
            parts.append(str(item))
        elif "text" in item:
            parts.append(item["text"])
        elif "data" in item:
            parts.append(f"[Binary data: {len(item['data'])} bytes, {item.get('mimeType', 'unknown type')}]")
        else:
            parts.append(json.dumps(item, default=str))

    text = "\n".join(parts) if parts else "Tool executed successfully (no output)"
    if result.get("isError"):
        return f"Error: {text}"
    return text


class McpServerRegistry:
    """
    The configured tool servers.

    install/remove/set_enabled persist back to config_path when one is set;
    servers given only through MCP_SERVERS live in memory.
    """

    def __init__(
        self,
        servers: dict[str, McpServerConfig] | None = None,
        config_path: Path | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._servers = dict(servers or {})
        self.config_path = config_path
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: RpcConfig | None = None) -> "McpServerRegistry":
        """Load servers from MCP_CONFIG_PATH, else MCP_SERVERS."""
        config = config or RpcConfig.from_env()
        data: dict[str, Any] = {}
        if config.config_path and config.config_path.exists():
            try:
                data = json.loads(config.config_path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                raise ConfigurationError(f"Failed to load MCP config from {config.config_path}: {e}") from e
        elif config.servers_json:
            try:
                data = json.loads(config.servers_json)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Failed to parse MCP_SERVERS JSON: {e}") from e

        return cls(
            servers=cls._parse_servers(data),
            config_path=config.config_path,
            timeout=config.request_timeout,
        )

    @staticmethod
    def _parse_servers(data: dict[str, Any]) -> dict[str, McpServerConfig]:
        if not isinstance(data, dict):
            return {}
        raw = data.get("servers")
        if raw is None and isinstance(data.get("mcp"), dict):
            raw = data["mcp"].get("servers")
        if raw is None:
            raw = data
        return {
            name: McpServerConfig.from_dict(name, cfg)
            for name, cfg in raw.items()
            if isinstance(cfg, dict) and cfg.get("command")
        }

    def list_servers(self, enabled_only: bool = False) -> list[McpServerConfig]:
        return [s for s in self._servers.values() if s.enabled or not enabled_only]

    def get(self, name: str) -> McpServerConfig | None:
        return self._servers.get(name)

    def install(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        enabled: bool = True,
    ) -> McpServerConfig:
        if not name or not command:
            raise ValueError("MCP server name and command are required.")
        server = McpServerConfig(name=name, command=command, args=list(args or []), env=dict(env or {}), enabled=enabled)
        self._servers[name] = server
        self.save()
        logger.info(f"Installed MCP server {name}: {command} {' '.join(server.args)}")
        return server

    def remove(self, name: str) -> None:
        if name not in self._servers:
            raise ValueError(f"MCP server '{name}' not found.")
        del self._servers[name]
        self.save()
        logger.info(f"Removed MCP server {name}")

    def set_enabled(self, name: str, enabled: bool) -> McpServerConfig:
        server = self._servers.get(name)
        if server is None:
            raise ValueError(f"MCP server '{name}' not found.")
        server.enabled = enabled
        self.save()
        return server

    def save(self) -> None:
        """Write the server table back to config_path, keeping unrelated keys."""
        if self.config_path is None:
            return
        data: dict[str, Any] = {}
        if self.config_path.exists():
            try:
                data = json.loads(self.config_path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Overwriting unreadable MCP config {self.config_path}: {e}")
        if not isinstance(data, dict):
            data = {}
        data["servers"] = {name: s.to_dict() for name, s in self._servers.items()}
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def _enabled(self, name: str) -> McpServerConfig:
        server = self._servers.get(name)
        if server is None or not server.enabled:
            available = ", ".join(s.name for s in self.list_servers(enabled_only=True)) or "none"
            raise ConfigurationError(f"MCP server '{name}' not found or disabled. Available: {available}")
        return server

    def list_tools(self, name: str) -> list[dict[str, Any]]:
        return list_server_tools(self._enabled(name), timeout=self.timeout)

    def call_tool(self, name: str, tool_name: str, arguments: dict[str, Any] | None = None) -> str:
        server = self._enabled(name)
        logger.info(f"Calling {tool_name} on MCP server {name}")
        return format_tool_result(call_server_tool(server, tool_name, arguments, timeout=self.timeout))


def register_mcp_tools(registry: ToolRegistry, servers: McpServerRegistry) -> None:
    """Expose the configured servers to the model as mcp_list_tools / mcp_call."""

    def mcp_list_tools(args: dict[str, Any], context: ToolContext) -> str:
        names = [args["server"]] if args.get("server") else [s.name for s in servers.list_servers(True)]
        if not names:
            return "No MCP servers are configured."
        sections = []
        for name in names:
            try:
                tools = servers.list_tools(name)
            except Exception as e:
                sections.append(f"Error listing tools on '{name}': {e}")
                continue
            lines = []
            for tool in tools:
                desc = tool.get("description") or "No description"
                if len(desc) > MAX_DESCRIPTION_CHARS:
                    desc = desc[:MAX_DESCRIPTION_CHARS - 3] + "..."
                lines.append(f"- {tool.get('name')}: {desc}")
            sections.append(f"Tools on '{name}':\n" + ("\n".join(lines) or "(none)"))
        return "\n\n".join(sections)

    def mcp_call(args: dict[str, Any], context: ToolContext) -> str:
        return servers.call_tool(args["server"], args["tool"], args.get("arguments") or {})

    registry.register_function(
        name="mcp_list_tools",
        description="List the tools offered by the configured MCP servers (or one server).",
        parameters={
            "type": "object",
            "properties": {"server": {"type": "string", "description": "Server name (optional)"}},
            "required": [],
        },
        handler=mcp_list_tools,
    )
    registry.register_function(
        name="mcp_call",
        description="Call a tool on an MCP server. Use mcp_list_tools first to see what is available.",
        parameters={
            "type": "object",
            "properties": {
                "server": {"type": "string", "description": "Server name"},
                "tool": {"type": "string", "description": "Tool name on that server"},
                "arguments": {"type": "object", "description": "Arguments for the tool"},
            },
            "required": ["server", "tool"],
        },
        handler=mcp_call,
        aliases=("call_mcp",),
    )
