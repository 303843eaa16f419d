"""
Multi-Agent Delegation - Named agents handing tasks to each other.

Agents live in an AgentRegistry. Any agent whose tool set includes the
delegate tool can pass an instruction to another agent; the target runs a
full turn of its own and its answer comes back as the tool result.

Delegation is bounded two ways:
- An agent cannot delegate to itself, nor to any agent already working on
  the same request further up the chain (A -> B -> A).
- The chain can be at most max_delegation_depth hops long.

Only text crosses between agents. Each agent keeps its own window,
working directory and resources.
"""

import logging
import uuid
from pathlib import Path
from typing import Any

from relaymind.agent_loop import Agent, AgentIdentity, AgentLoop
from relaymind.builtin_tools import register_builtin_tools
from relaymind.config import LoopConfig, RelayConfig
from relaymind.dispatch import DELEGATE_TOOL, ToolDispatcher
from relaymind.errors import DelegationError
from relaymind.events import EventLog, EventType
from relaymind.llm import LLMClient, ModelProvider
from relaymind.mcp import McpServerRegistry, register_mcp_tools
from relaymind.memory import MemoryManager
from relaymind.personas import build_system_prompt, load_persona
from relaymind.storage import CheckpointStore, HistoryStore, JsonHistoryStore, TaskStateStore
from relaymind.tools import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

DELEGATE_PARAMETERS = {
    "type": "object",
    "properties": {
        "target_agent_id": {
            "type": "string",
            "description": "Id, name or persona of the agent that should do the work",
        },
        "instruction": {
            "type": "string",
            "description": "What the other agent should do, with all needed context",
        },
    },
    "required": ["target_agent_id", "instruction"],
}


class AgentRegistry:
    """
    The set of named agents sharing one provider and one base tool registry.

    Every agent gets its own AgentLoop. The registry registers the delegate
    tool into the base tool registry so personas can allow it.
    """

    def __init__(
        self,
        provider: ModelProvider,
        tools: ToolRegistry,
        history: HistoryStore | None = None,
        memory: MemoryManager | None = None,
        mcp: McpServerRegistry | None = None,
        config: LoopConfig | None = None,
        personas_dir: str | Path | None = None,
        event_log: EventLog | None = None,
        safe_mode: bool = True,
    ):
        self.provider = provider
        self.tools = tools
        self.history = history
        self.memory = memory
        self.mcp = mcp
        self.config = config or LoopConfig()
        self.personas_dir = personas_dir
        self.event_log = event_log or EventLog()
        self.safe_mode = safe_mode

        self._agents: dict[str, AgentLoop] = {}
        self._active_id: str | None = None

        if DELEGATE_TOOL not in self.tools:
            self.tools.register_function(
                name=DELEGATE_TOOL,
                description=(
                    "Delegate a task to another agent. The agent runs the task "
                    "and its final answer is returned."
                ),
                parameters=DELEGATE_PARAMETERS,
                handler=self._delegate_tool,
                aliases=("delegate_task",),
            )

    def create_agent(
        self,
        persona_id: str = "default",
        agent_id: str | None = None,
        cwd: str | Path | None = None,
    ) -> AgentLoop:
        """Build an agent from a persona and add it to the registry."""
        persona = load_persona(persona_id, self.personas_dir)
        agent_id = agent_id or f"{persona_id}-{uuid.uuid4().hex[:4]}"
        if agent_id in self._agents:
            raise DelegationError(f"Agent '{agent_id}' already exists.")

        tools = self.tools.subset(persona.allowed_tools)
        agent = Agent(
            identity=AgentIdentity(
                id=agent_id,
                name=persona.name,
                persona_id=persona.id,
                safe_mode=self.safe_mode,
            ),
            tools=tools,
            history=self.history,
            system_prompt=build_system_prompt(persona, persona.name, tools.tool_names),
            cwd=cwd,
            description=persona.description,
        )
        logger.info(f"Creating agent {agent_id} with persona {persona.id}")
        return self.add(agent)

    def add(self, agent: Agent) -> AgentLoop:
        """Register an already-built agent."""
        loop = AgentLoop(
            agent,
            self.provider,
            dispatcher=ToolDispatcher(agent.tools, mcp=self.mcp, event_log=self.event_log),
            memory=self.memory,
            config=self.config,
            event_log=self.event_log,
        )
        self._agents[agent.identity.id] = loop
        if self._active_id is None:
            self._active_id = agent.identity.id
        return loop

    def get(self, agent_id: str) -> AgentLoop | None:
        return self._agents.get(agent_id)

    def remove(self, ref: str) -> bool:
        """Remove an agent and release its resources."""
        loop = self.resolve(ref)
        if loop is None:
            return False
        del self._agents[loop.identity.id]
        loop.agent.close()
        if self._active_id == loop.identity.id:
            self._active_id = next(iter(self._agents), None)
        logger.info(f"Removed agent {loop.identity.id}")
        return True

    def resolve(self, ref: str) -> AgentLoop | None:
        """Find an agent by exact id, then display name (any case), then persona id."""
        if not ref:
            return None
        ref = ref.strip()
        if ref in self._agents:
            return self._agents[ref]
        lowered = ref.lower()
        for loop in self._agents.values():
            if loop.identity.name.lower() == lowered:
                return loop
        for loop in self._agents.values():
            if loop.identity.persona_id == ref:
                return loop
        return None

    def list_agents(self) -> list[dict[str, Any]]:
        return [
            {
                "id": loop.identity.id,
                "name": loop.identity.name,
                "persona": loop.identity.persona_id,
                "description": loop.agent.description or loop.identity.name,
                "active": loop.identity.id == self._active_id,
            }
            for loop in self._agents.values()
        ]

    @property
    def active(self) -> AgentLoop | None:
        return self._agents.get(self._active_id) if self._active_id else None

    def set_active(self, ref: str) -> AgentLoop:
        loop = self.resolve(ref)
        if loop is None:
            raise DelegationError(f"Agent '{ref}' not found.")
        self._active_id = loop.identity.id
        return loop

    def __len__(self) -> int:
        return len(self._agents)

    def delegate(
        self,
        caller: Agent | None,
        target_ref: str,
        instruction: str,
        context: ToolContext,
    ) -> str:
        """
        Run instruction as a turn of the target agent and return its answer.

        Every failure is returned as an error string; nothing is raised.
        """
        target = self.resolve(target_ref)
        if target is None:
            available = ", ".join(a["name"] for a in self.list_agents()) or "none"
            return f"Error: Agent '{target_ref}' not found. Available agents: {available}"

        target_id = target.identity.id
        if caller is not None and caller.identity.id == target_id:
            return "Error: Cannot delegate task to self."

        if target_id in context.delegation_chain:
            chain = " -> ".join(context.delegation_chain + (target_id,))
            logger.warning(f"Rejected delegation cycle: {chain}")
            return f"Error: Delegation cycle detected ({chain}). {target.identity.name} is already working on this request."

        if context.depth > self.config.max_delegation_depth:
            return (
                f"Error: Maximum delegation depth ({self.config.max_delegation_depth}) reached. "
                "Finish the task yourself."
            )

        caller_name = caller.name if caller is not None else "user"
        logger.info(f"[Delegation] {caller_name} -> {target.identity.name}: {instruction[:200]}")
        self.event_log.log_event(
            EventType.DELEGATION,
            caller=caller.identity.id if caller is not None else None,
            target=target_id,
            depth=context.depth,
        )

        try:
            result = target.run_turn(
                f"[Request from {caller_name}]: {instruction}",
                confirm=context.confirm,
                delegation_chain=context.delegation_chain,
                new_task=True,
            )
        except Exception as e:
            logger.error(f"Delegated task failed in {target.identity.name}: {e}")
            return f"Error executing task with {target.identity.name}: {e}"

        return f"Result from {target.identity.name}:\n{result or ''}"

    def _delegate_tool(self, args: dict[str, Any], context: ToolContext) -> str:
        return self.delegate(context.agent, args["target_agent_id"], args["instruction"], context)


def create_agent_registry(
    config: RelayConfig | None = None,
    provider: ModelProvider | None = None,
    personas_dir: str | Path | None = None,
    safe_mode: bool = True,
) -> AgentRegistry:
    """
    Wire a complete system from configuration.

    Uses the JSON history file, file-backed checkpoints and task snapshots,
    the built-in tools, and any tool servers named in MCP_CONFIG_PATH or
    MCP_SERVERS.
    """
    config = config or RelayConfig.from_env()
    provider = provider or LLMClient(config.llm)
    event_log = EventLog(path=config.storage.events_file)

    checkpoints = CheckpointStore(config.storage.checkpoint_dir)
    tools = register_builtin_tools(ToolRegistry(), checkpoints=checkpoints)
    mcp = McpServerRegistry.from_config(config.rpc)
    if mcp.list_servers():
        register_mcp_tools(tools, mcp)

    memory = MemoryManager(
        provider,
        checkpoints=checkpoints,
        task_states=TaskStateStore(config.storage.task_state_dir),
        config=config.context,
        event_log=event_log,
    )
    return AgentRegistry(
        provider,
        tools,
        history=JsonHistoryStore(config.storage.history_file, config.storage.max_history_bytes),
        memory=memory,
        mcp=mcp,
        config=config.loop,
        personas_dir=personas_dir,
        event_log=event_log,
        safe_mode=safe_mode,
    )
