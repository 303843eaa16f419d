"""Tests for tool-server configuration and the mcp_* tools."""

import json
import sys
from pathlib import Path

import pytest

from relaymind.config import RpcConfig
from relaymind.dispatch import ToolDispatcher
from relaymind.errors import ConfigurationError
from relaymind.mcp import (
    McpServerConfig,
    McpServerRegistry,
    call_server_tool,
    format_tool_result,
    list_server_tools,
    register_mcp_tools,
)
from relaymind.tools import ToolContext, ToolRegistry

ECHO_SERVER = str(Path(__file__).parent / "echo_server.py")


def echo_server_config(name: str = "echo") -> McpServerConfig:
    return McpServerConfig(name=name, command=sys.executable, args=[ECHO_SERVER])


class TestMcpServerRegistry:
    """Tests for loading and editing the server table."""

    def test_load_from_config_file(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text(json.dumps({
            "servers": {
                "files": {"command": "npx", "args": ["-y", "files-server"], "env": {"ROOT": "/tmp"}},
                "off": {"command": "off-server", "enabled": False},
            }
        }))
        registry = McpServerRegistry.from_config(RpcConfig(config_path=path))

        files = registry.get("files")
        assert files is not None
        assert files.args == ["-y", "files-server"]
        assert files.env == {"ROOT": "/tmp"}
        assert [s.name for s in registry.list_servers(enabled_only=True)] == ["files"]
        assert len(registry.list_servers()) == 2

    def test_load_from_json_string(self):
        registry = McpServerRegistry.from_config(
            RpcConfig(servers_json='{"servers": {"a": {"command": "server-a"}}}')
        )
        assert registry.get("a").command == "server-a"

    def test_nested_mcp_section_is_accepted(self):
        registry = McpServerRegistry.from_config(
            RpcConfig(servers_json='{"mcp": {"servers": {"a": {"command": "server-a"}}}}')
        )
        assert registry.get("a") is not None

    def test_invalid_json_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            McpServerRegistry.from_config(RpcConfig(servers_json="{nope"))

    def test_no_configuration_means_no_servers(self):
        assert McpServerRegistry.from_config(RpcConfig()).list_servers() == []

    def test_install_remove_and_enable_persist(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text(json.dumps({"other_setting": 1}))
        registry = McpServerRegistry(config_path=path)

        registry.install("db", "db-server", args=["--ro"])
        saved = json.loads(path.read_text())
        assert saved["other_setting"] == 1
        assert saved["servers"]["db"] == {"command": "db-server", "args": ["--ro"], "env": {}, "enabled": True}

        registry.set_enabled("db", False)
        assert json.loads(path.read_text())["servers"]["db"]["enabled"] is False

        reloaded = McpServerRegistry.from_config(RpcConfig(config_path=path))
        assert reloaded.get("db").enabled is False

        registry.remove("db")
        assert json.loads(path.read_text())["servers"] == {}

    def test_install_requires_name_and_command(self):
        with pytest.raises(ValueError):
            McpServerRegistry().install("", "cmd")

    def test_remove_unknown_raises(self):
        with pytest.raises(ValueError):
            McpServerRegistry().remove("ghost")

    def test_disabled_server_cannot_be_called(self):
        registry = McpServerRegistry({"off": McpServerConfig("off", "off-server", enabled=False)})
        with pytest.raises(ConfigurationError):
            registry.call_tool("off", "anything")


class TestFormatToolResult:
    """Tests for flattening tools/call results."""

    def test_text_parts_joined(self):
        result = {"content": [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}]}
        assert format_tool_result(result) == "one\ntwo"

    def test_binary_part_described(self):
        result = {"content": [{"type": "image", "data": "aGVsbG8=", "mimeType": "image/png"}]}
        assert format_tool_result(result) == "[Binary data: 8 bytes, image/png]"

    def test_error_flag(self):
        result = {"content": [{"type": "text", "text": "bad input"}], "isError": True}
        assert format_tool_result(result) == "Error: bad input"

    def test_empty_content(self):
        assert format_tool_result({"content": []}) == "Tool executed successfully (no output)"

    def test_non_standard_result_is_json(self):
        assert format_tool_result({"value": 3}) == '{"value": 3}'


class TestServerCalls:
    """End-to-end calls against the echo server; each one spawns a fresh process."""

    def test_list_server_tools(self):
        tools = list_server_tools(echo_server_config())
        assert [t["name"] for t in tools] == ["echo", "upper"]

    def test_call_server_tool(self):
        result = call_server_tool(echo_server_config(), "upper", {"text": "hi"})
        assert result["content"][0]["text"] == "HI"

    def test_dispatcher_routes_mcp_prefix(self):
        servers = McpServerRegistry({"echo": echo_server_config()})
        dispatcher = ToolDispatcher(ToolRegistry(), mcp=servers)

        result = dispatcher.dispatch("mcp:echo:echo", {"b": 2, "a": 1}, ToolContext())

        assert result == '{"a": 1, "b": 2}'

    def test_mcp_tools_registered(self):
        servers = McpServerRegistry({"echo": echo_server_config()})
        registry = ToolRegistry()
        register_mcp_tools(registry, servers)
        dispatcher = ToolDispatcher(registry, mcp=servers)

        listing = dispatcher.dispatch("mcp_list_tools", {}, ToolContext())
        called = dispatcher.dispatch("mcp_call", {"server": "echo", "tool": "upper", "arguments": {"text": "ok"}}, ToolContext())

        assert "Tools on 'echo':" in listing
        assert "- upper: Upper-case the text argument" in listing
        assert called == "OK"

    def test_unknown_remote_tool_reports_error(self):
        servers = McpServerRegistry({"echo": echo_server_config()})
        assert servers.call_tool("echo", "nope") == "Error: Unknown tool nope"
