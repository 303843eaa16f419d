"""
Configuration for the agent system.

All configuration is loaded from environment variables. This keeps the
system flexible across different LLM backends (vLLM, Ollama, OpenAI or any
other OpenAI-compatible endpoint) without hardcoding any specific values.

The round cap, sliding window and compaction threshold are limits, not
suggestions: the loop and the memory manager enforce them on every turn.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class LLMConfig:
    """Configuration for the LLM client."""
    base_url: str
    api_key: str
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("LLM_BASE_URL", "https://api.openai.com/v1"),
            api_key=os.getenv("LLM_API_KEY", os.getenv("OPENAI_API_KEY", "")),
            model=os.getenv("LLM_MODEL", "gpt-4o"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "4096")),
        )


@dataclass
class ContextConfig:
    """
    Configuration for context management.

    Tokens are approximated as chars / chars_per_token. A real tokenizer
    can be substituted through memory.SizeEstimator; the threshold is
    still what triggers compaction.
    """
    compaction_threshold: int = 40000
    chars_per_token: float = 4.0
    keep_recent: int = 15
    goal_chars: int = 3000
    summary_input_chars: int = 500

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            compaction_threshold=int(os.getenv("CONTEXT_COMPACTION_THRESHOLD", "40000")),
            chars_per_token=float(os.getenv("CONTEXT_CHARS_PER_TOKEN", "4.0")),
            keep_recent=int(os.getenv("CONTEXT_KEEP_RECENT", "15")),
            goal_chars=int(os.getenv("CONTEXT_GOAL_CHARS", "3000")),
            summary_input_chars=int(os.getenv("CONTEXT_SUMMARY_INPUT_CHARS", "500")),
        )


@dataclass
class LoopConfig:
    """
    Configuration for the conversation loop.

    max_rounds is a safety limit against runaway loops. window_messages
    bounds the payload of a single model call independently of compaction.
    """
    max_rounds: int = 50
    window_messages: int = 40
    max_delegation_depth: int = 5

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        return cls(
            max_rounds=int(os.getenv("AGENT_MAX_ROUNDS", "50")),
            window_messages=int(os.getenv("AGENT_WINDOW_MESSAGES", "40")),
            max_delegation_depth=int(os.getenv("AGENT_MAX_DELEGATION_DEPTH", "5")),
        )


@dataclass
class StorageConfig:
    """Where transcripts, checkpoints and task-state snapshots live."""
    base_dir: Path = field(default_factory=lambda: Path.cwd() / ".agent")
    history_file: Path = field(default_factory=lambda: Path.home() / ".relaymind-chat.json")
    max_history_bytes: int = 30 * 1024 * 1024

    @property
    def checkpoint_dir(self) -> Path:
        return self.base_dir / "memory" / "checkpoints"

    @property
    def task_state_dir(self) -> Path:
        return self.base_dir

    @property
    def events_file(self) -> Path:
        return self.base_dir / "events.jsonl"

    @classmethod
    def from_env(cls) -> "StorageConfig":
        """Load configuration from environment variables."""
        return cls(
            base_dir=Path(os.getenv("RELAYMIND_HOME", str(Path.cwd() / ".agent"))),
            history_file=Path(os.getenv(
                "RELAYMIND_HISTORY_FILE", str(Path.home() / ".relaymind-chat.json")
            )),
            max_history_bytes=int(os.getenv("RELAYMIND_MAX_HISTORY_BYTES", str(30 * 1024 * 1024))),
        )


@dataclass
class RpcConfig:
    """Configuration for stdio JSON-RPC tool servers."""
    request_timeout: float = 20.0
    config_path: Path | None = None
    servers_json: str | None = None

    @classmethod
    def from_env(cls) -> "RpcConfig":
        """Load configuration from environment variables."""
        config_path = os.getenv("MCP_CONFIG_PATH")
        return cls(
            request_timeout=float(os.getenv("MCP_REQUEST_TIMEOUT", "20.0")),
            config_path=Path(config_path) if config_path else None,
            servers_json=os.getenv("MCP_SERVERS"),
        )


@dataclass
class RelayConfig:
    """Combined configuration for the entire agent system."""
    llm: LLMConfig
    context: ContextConfig
    loop: LoopConfig
    storage: StorageConfig
    rpc: RpcConfig

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Load all configuration from environment variables."""
        return cls(
            llm=LLMConfig.from_env(),
            context=ContextConfig.from_env(),
            loop=LoopConfig.from_env(),
            storage=StorageConfig.from_env(),
            rpc=RpcConfig.from_env(),
        )
