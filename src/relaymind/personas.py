"""
Personas - named system prompts with a tool allow-list.

A persona file is <persona_id>.json in a personas directory:

    {
      "name": "Researcher",
      "description": "Finds and summarizes information",
      "systemPrompt": "You research topics thoroughly...",
      "allowedTools": ["read_file", "list_files"]
    }

A missing or unreadable persona falls back to the built-in default.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PERSONA_ID = "default"


@dataclass
class Persona:
    """A persona definition. allowed_tools=None means every registered tool."""
    id: str
    name: str
    system_prompt: str
    allowed_tools: list[str] | None = None
    description: str = ""
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, persona_id: str, data: dict) -> "Persona":
        known = {"name", "description", "systemPrompt", "system_prompt", "allowedTools", "allowed_tools"}
        allowed = data.get("allowedTools", data.get("allowed_tools"))
        return cls(
            id=persona_id,
            name=data.get("name") or persona_id,
            system_prompt=data.get("systemPrompt") or data.get("system_prompt") or "",
            allowed_tools=list(allowed) if allowed is not None else None,
            description=data.get("description", ""),
            extra={k: v for k, v in data.items() if k not in known},
        )


DEFAULT_PERSONA = Persona(
    id=DEFAULT_PERSONA_ID,
    name="Assistant",
    system_prompt=(
        "You are an autonomous assistant that completes tasks by using tools. "
        "Work step by step, check the results of each action, and finish with "
        "a short answer describing what was done."
    ),
    description="General purpose task agent",
)


def load_persona(persona_id: str | None, directory: str | Path | None = None) -> Persona:
    """Load <directory>/<persona_id>.json, falling back to the default persona."""
    persona_id = persona_id or DEFAULT_PERSONA_ID
    if directory is not None:
        path = Path(directory) / f"{persona_id}.json"
        try:
            return Persona.from_dict(persona_id, json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            pass
        except (json.JSONDecodeError, OSError, AttributeError) as e:
            logger.warning(f"Could not read persona {path}: {e}")

    if persona_id != DEFAULT_PERSONA_ID:
        logger.warning(f"Persona {persona_id} not found, loading default.")
        if directory is not None:
            return load_persona(DEFAULT_PERSONA_ID, directory)
    return DEFAULT_PERSONA


def list_personas(directory: str | Path | None = None) -> list[str]:
    """Ids of the personas available in directory (always includes the default)."""
    ids = {DEFAULT_PERSONA_ID}
    if directory is not None and Path(directory).is_dir():
        ids.update(p.stem for p in Path(directory).glob("*.json"))
    return sorted(ids)


def build_system_prompt(persona: Persona, agent_name: str, tool_names: list[str]) -> str:
    """The system message an agent's window starts with."""
    tools = ", ".join(tool_names) if tool_names else "(none)"
    return f"""You are {agent_name}.
{persona.system_prompt}

You have access to the following tools: {tools}.

IMPORTANT:
1. ALWAYS use the provided tools to perform actions.
2. Do NOT describe a tool call in your text response. Use the native tool calling mechanism.
3. If native tool calling fails, output a JSON block in this exact format:
```json
{{ "tool": "tool_name", "args": {{ "param": "value" }} }}
```
4. Do not invent file contents; read them.
5. When navigating directories, use change_directory and read_dir.
"""
