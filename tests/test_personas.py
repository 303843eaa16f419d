"""Tests for persona loading and system prompts."""

import json

from relaymind.personas import DEFAULT_PERSONA, Persona, build_system_prompt, list_personas, load_persona


class TestLoadPersona:
    """Tests for reading persona files."""

    def test_camel_and_snake_keys(self, tmp_path):
        (tmp_path / "coder.json").write_text(json.dumps({
            "name": "Coder",
            "systemPrompt": "You write code.",
            "allowedTools": ["read_file"],
            "temperature": 0.2,
        }))
        (tmp_path / "tester.json").write_text(json.dumps({
            "name": "Tester",
            "system_prompt": "You test code.",
            "allowed_tools": [],
        }))

        coder = load_persona("coder", tmp_path)
        tester = load_persona("tester", tmp_path)

        assert coder.system_prompt == "You write code."
        assert coder.allowed_tools == ["read_file"]
        assert coder.extra == {"temperature": 0.2}
        assert tester.allowed_tools == []

    def test_missing_allow_list_means_all_tools(self):
        assert Persona.from_dict("p", {"name": "P"}).allowed_tools is None

    def test_missing_file_falls_back_to_default(self, tmp_path):
        assert load_persona("ghost", tmp_path) is DEFAULT_PERSONA
        assert load_persona(None) is DEFAULT_PERSONA

    def test_default_persona_can_be_overridden(self, tmp_path):
        (tmp_path / "default.json").write_text(json.dumps({"name": "Helper", "systemPrompt": "Help."}))
        assert load_persona("ghost", tmp_path).name == "Helper"

    def test_unreadable_file_falls_back(self, tmp_path):
        (tmp_path / "broken.json").write_text("{nope")
        assert load_persona("broken", tmp_path) is DEFAULT_PERSONA

    def test_list_personas(self, tmp_path):
        (tmp_path / "writer.json").write_text("{}")
        (tmp_path / "coder.json").write_text("{}")
        assert list_personas(tmp_path) == ["coder", "default", "writer"]
        assert list_personas(None) == ["default"]


class TestBuildSystemPrompt:
    """Tests for the system message."""

    def test_contents(self):
        persona = Persona(id="coder", name="Coder", system_prompt="You write code.")
        prompt = build_system_prompt(persona, "Coder", ["read_file", "write_file"])

        assert prompt.startswith("You are Coder.\nYou write code.")
        assert "read_file, write_file" in prompt
        assert '{ "tool": "tool_name", "args": { "param": "value" } }' in prompt

    def test_no_tools(self):
        prompt = build_system_prompt(DEFAULT_PERSONA, "Assistant", [])
        assert "following tools: (none)." in prompt
