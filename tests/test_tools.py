"""
Tests for ToolRegistry - the only way to affect the world.

Only registered tools can be called; the registry is forgiving about how
the model spells their names.
"""

import pytest

from relaymind.tools import Tool, ToolContext, ToolRegistry, normalize_tool_name


def make_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for name in ("read_file", "list_files", "send_email"):
        registry.register_function(
            name=name,
            description=f"The {name} tool",
            parameters={"type": "object", "properties": {}},
            handler=lambda args, context: "ok",
        )
    registry.add_alias("sendEmail", "send_email")
    return registry


class TestToolDefinition:
    """Test tool definition and schema generation."""

    def test_tool_to_openai_schema(self) -> None:
        """Tool should generate valid OpenAI schema."""
        tool = Tool(
            name="test_tool",
            description="A test tool",
            parameters={
                "type": "object",
                "properties": {"arg1": {"type": "string"}},
                "required": ["arg1"],
            },
            handler=lambda args, context: args["arg1"],
        )

        schema = tool.to_openai_schema()

        assert schema["type"] == "function"
        assert schema["function"]["name"] == "test_tool"
        assert schema["function"]["description"] == "A test tool"
        assert schema["function"]["parameters"]["required"] == ["arg1"]

    def test_destructive_defaults_off(self) -> None:
        tool = Tool(name="t", description="", parameters={}, handler=lambda a, c: None)
        assert tool.destructive is False


class TestNormalizeToolName:
    """Tests for name normalization."""

    @pytest.mark.parametrize("raw, expected", [
        ("readFile", "read_file"),
        ("ReadFile", "read_file"),
        ("read-file", "read_file"),
        ("read file", "read_file"),
        ("  READ_FILE ", "read_file"),
        ("list.files", "list_files"),
    ])
    def test_variants(self, raw, expected) -> None:
        assert normalize_tool_name(raw) == expected


class TestToolRegistry:
    """Tests for registration and lookup."""

    def test_resolve_canonical_and_variants(self) -> None:
        registry = make_registry()
        assert registry.resolve("read_file") == "read_file"
        assert registry.resolve("readFile") == "read_file"
        assert registry.resolve("List-Files") == "list_files"
        assert registry.resolve("listfiles") == "list_files"

    def test_resolve_alias(self) -> None:
        registry = make_registry()
        assert registry.resolve("sendemail") == "send_email"
        assert registry.resolve("SendEmail") == "send_email"

    def test_declared_aliases(self) -> None:
        registry = ToolRegistry()
        registry.register_function("change_directory", "cd", {}, lambda a, c: None, aliases=("cd",))
        assert registry.get("cd").name == "change_directory"

    def test_unknown_name(self) -> None:
        registry = make_registry()
        assert registry.resolve("delete_everything") is None
        assert registry.resolve("") is None
        assert registry.get("nope") is None
        assert "nope" not in registry

    def test_accepts_routed_prefixes(self) -> None:
        registry = make_registry()
        assert registry.accepts("mcp:files:read")
        assert registry.accepts("agent:writer")
        assert registry.accepts("agent/writer")
        assert registry.accepts("readFile")
        assert not registry.accepts("unknown_tool")

    def test_unregister_drops_aliases(self) -> None:
        registry = make_registry()
        registry.unregister("send_email")
        assert registry.resolve("sendEmail") is None
        assert len(registry) == 2

    def test_subset(self) -> None:
        registry = make_registry()
        limited = registry.subset(["read_file"])
        assert limited.tool_names == ["read_file"]
        assert limited.resolve("sendEmail") is None
        assert len(registry) == 3

    def test_subset_none_keeps_everything(self) -> None:
        registry = make_registry()
        copy = registry.subset(None)
        copy.unregister("read_file")
        assert "read_file" in registry
        assert len(copy) == 2

    def test_get_schemas(self) -> None:
        names = [s["function"]["name"] for s in make_registry().get_schemas()]
        assert names == ["read_file", "list_files", "send_email"]


class TestToolContext:
    """Tests for the capability object passed to handlers."""

    def test_depth_is_chain_length(self) -> None:
        assert ToolContext().depth == 0
        assert ToolContext(delegation_chain=("a", "b")).depth == 2
