"""
RelayMind - Orchestration core for autonomous LLM task agents.

An agent receives an instruction, calls a model, lets the model invoke
named tools, feeds the results back, and stops when the model answers
without requesting more tools. Around that loop:

1. Memory: long windows are compacted into a summary plus recent messages,
   with the full history archived to checkpoints first
2. Tools: a registry with forgiving name resolution, schema validation,
   a confirmation gate for destructive actions and failure isolation
3. Delegation: named agents can hand tasks to each other, bounded in depth
4. Tool servers: external tools reachable over stdio JSON-RPC
"""

__version__ = "0.1.0"

from relaymind.agent_loop import Agent, AgentIdentity, AgentLoop, assemble_window
from relaymind.builtin_tools import register_builtin_tools
from relaymind.config import (
    ContextConfig,
    LLMConfig,
    LoopConfig,
    RelayConfig,
    RpcConfig,
    StorageConfig,
)
from relaymind.dispatch import ToolDispatcher
from relaymind.errors import (
    ConfigurationError,
    ContextLengthExceededError,
    DelegationError,
    LLMError,
    RelayMindError,
    RpcClosedError,
    RpcError,
    RpcTimeoutError,
    ToolValidationError,
)
from relaymind.events import EventLog, EventType
from relaymind.llm import ChatResponse, LLMClient, ModelProvider
from relaymind.mcp import McpServerConfig, McpServerRegistry, register_mcp_tools
from relaymind.memory import CharCountEstimator, MemoryManager, SizeEstimator
from relaymind.multi_agent import AgentRegistry, create_agent_registry
from relaymind.personas import Persona, build_system_prompt, list_personas, load_persona
from relaymind.recovery import recover_tool_call
from relaymind.resources import ResourceRegistry
from relaymind.rpc import FrameDecoder, StdioRpcClient, encode_frame
from relaymind.tools import Tool, ToolContext, ToolRegistry
from relaymind.types import Message, Role, ToolCall, ToolResult

__all__ = [
    "Agent",
    "AgentIdentity",
    "AgentLoop",
    "AgentRegistry",
    "CharCountEstimator",
    "ChatResponse",
    "ConfigurationError",
    "ContextConfig",
    "ContextLengthExceededError",
    "DelegationError",
    "EventLog",
    "EventType",
    "FrameDecoder",
    "LLMClient",
    "LLMConfig",
    "LLMError",
    "LoopConfig",
    "McpServerConfig",
    "McpServerRegistry",
    "MemoryManager",
    "Message",
    "ModelProvider",
    "Persona",
    "RelayConfig",
    "RelayMindError",
    "ResourceRegistry",
    "Role",
    "RpcClosedError",
    "RpcConfig",
    "RpcError",
    "RpcTimeoutError",
    "SizeEstimator",
    "StdioRpcClient",
    "StorageConfig",
    "Tool",
    "ToolCall",
    "ToolContext",
    "ToolDispatcher",
    "ToolRegistry",
    "ToolResult",
    "ToolValidationError",
    "__version__",
    "assemble_window",
    "build_system_prompt",
    "create_agent_registry",
    "encode_frame",
    "list_personas",
    "load_persona",
    "recover_tool_call",
    "register_builtin_tools",
    "register_mcp_tools",
]
