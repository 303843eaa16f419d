"""
AgentLoop - Turn-based agent execution.

This module implements the core conversation loop that:
1. Receives user input
2. Compacts the window if it has grown too large
3. Sends a bounded slice of the window to the model
4. Parses tool calls from the response (recovering them from text if needed)
5. Executes tools through the ToolDispatcher
6. Feeds results back to the model
7. Repeats until the model answers without tools or the round cap is hit

Tool failures never end a turn; they are fed back as results. Provider
failures end the turn after one size-reduction retry.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path

from relaymind.config import LoopConfig
from relaymind.dispatch import ToolDispatcher
from relaymind.errors import ContextLengthExceededError
from relaymind.events import EventLog, EventType
from relaymind.llm import ChatResponse, ModelProvider, TokenCallback
from relaymind.memory import SUMMARY_HEADER, MemoryManager, restore_task_state
from relaymind.recovery import recover_tool_call
from relaymind.resources import ResourceRegistry
from relaymind.storage import HistoryStore
from relaymind.tools import ConfirmCallback, ToolContext, ToolRegistry
from relaymind.types import Message, Role, ToolCall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentIdentity:
    """Who an agent is. safe_mode gates destructive tools behind confirmation."""
    id: str
    name: str
    persona_id: str = "default"
    safe_mode: bool = True


class Agent:
    """
    State owned by one named agent.

    - messages: the conversation window (system message first, if any)
    - cwd: working directory that file and shell tools resolve against
    - resources: handles opened by this agent's tools
    - lock: held for the duration of a turn
    - task_goal: the first user request of the current task, recovered
      from the saved window when the agent is restored
    """

    def __init__(
        self,
        identity: AgentIdentity,
        tools: ToolRegistry,
        history: HistoryStore | None = None,
        system_prompt: str | None = None,
        cwd: str | Path | None = None,
        description: str = "",
    ):
        self.identity = identity
        self.tools = tools
        self.history = history
        self.description = description
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.resources = ResourceRegistry(owner=identity.id)
        self.lock = threading.Lock()

        self.messages: list[Message] = history.load_history(identity.id) if history else []
        self.task_goal, self.tool_call_count = restore_task_state(self.messages)
        if system_prompt is not None:
            if self.messages and _is_system_prompt(self.messages[0]):
                self.messages[0] = Message(role=Role.SYSTEM, content=system_prompt)
            else:
                self.messages.insert(0, Message(role=Role.SYSTEM, content=system_prompt))

    @property
    def name(self) -> str:
        return self.identity.name

    def save(self) -> None:
        """Persist the window. Best-effort: failures are logged, not raised."""
        if self.history is None:
            return
        try:
            self.history.save_history(self.identity.id, self.messages)
        except OSError as e:
            logger.warning(f"Failed to save history for {self.identity.id}: {e}")

    def reset(self) -> None:
        """Start a fresh task: keep only the system message."""
        self.messages = [m for m in self.messages[:1] if m.role == Role.SYSTEM]
        self.task_goal = None
        self.tool_call_count = 0
        self.save()

    def close(self) -> None:
        self.resources.close_all()


def _is_system_prompt(message: Message) -> bool:
    return message.role == Role.SYSTEM and not (message.content or "").startswith(SUMMARY_HEADER)


def assemble_window(messages: list[Message], max_messages: int) -> list[Message]:
    """
    The payload for one model call.

    Leading system messages plus the last max_messages other messages. Tool
    messages at the front of the slice whose assistant request was cut off
    are dropped so every tool result in the payload follows its request.
    """
    prefix_len = 0
    while prefix_len < len(messages) and messages[prefix_len].role == Role.SYSTEM:
        prefix_len += 1
    rest = messages[prefix_len:]
    tail = rest[-max_messages:] if max_messages > 0 else []
    while tail and tail[0].role == Role.TOOL:
        tail = tail[1:]
    return messages[:prefix_len] + tail


class AgentLoop:
    """
    Runs turns for one agent.

    A turn is one call to run_turn(); a round is one model call plus the
    tool calls it requested. A turn runs at most config.max_rounds rounds.
    """

    def __init__(
        self,
        agent: Agent,
        provider: ModelProvider,
        dispatcher: ToolDispatcher | None = None,
        memory: MemoryManager | None = None,
        config: LoopConfig | None = None,
        event_log: EventLog | None = None,
    ):
        self.agent = agent
        self.provider = provider
        self.config = config or LoopConfig()
        self.event_log = event_log or EventLog()
        self.dispatcher = dispatcher or ToolDispatcher(agent.tools, event_log=self.event_log)
        self.memory = memory

    @property
    def identity(self) -> AgentIdentity:
        return self.agent.identity

    def run_turn(
        self,
        user_text: str,
        confirm: ConfirmCallback | None = None,
        on_token: TokenCallback | None = None,
        delegation_chain: tuple[str, ...] = (),
        new_task: bool = False,
    ) -> str | None:
        """
        Process one user message to completion.

        new_task makes user_text the active task goal even if the agent
        already has one; delegated requests start a new task this way.

        Returns the last non-empty assistant text, or None if the model
        never produced any. Raises LLMError if the provider fails.
        """
        with self.agent.lock:
            return self._run_turn(user_text, confirm, on_token, delegation_chain, new_task)

    def _run_turn(
        self,
        user_text: str,
        confirm: ConfirmCallback | None,
        on_token: TokenCallback | None,
        delegation_chain: tuple[str, ...],
        new_task: bool,
    ) -> str | None:
        agent = self.agent
        turn_id = f"turn_{uuid.uuid4().hex[:8]}"

        agent.messages.append(Message(role=Role.USER, content=user_text))
        if new_task or agent.task_goal is None:
            agent.task_goal = user_text

        self.event_log.log_event(EventType.TURN_START, turn_id, agent_id=agent.identity.id)

        self._compact()

        context = ToolContext(
            agent=agent,
            confirm=confirm,
            delegation_chain=delegation_chain + (agent.identity.id,),
        )
        tool_schemas = self.dispatcher.registry.get_schemas()
        window_cap = self.config.window_messages
        retried = False
        answer: str | None = None

        for round_number in range(1, self.config.max_rounds + 1):
            while True:
                window = assemble_window(agent.messages, window_cap)
                self.event_log.log_event(
                    EventType.LLM_REQUEST, turn_id, round=round_number, message_count=len(window)
                )
                try:
                    response = self.provider.chat(window, tool_schemas or None, on_token)
                    break
                except ContextLengthExceededError as e:
                    if retried:
                        self._fail_turn(turn_id, e)
                        raise
                    retried = True
                    window_cap = max(1, window_cap // 2)
                    logger.warning(f"Context length exceeded; retrying with {window_cap} messages")
                    self.event_log.log_event(EventType.LLM_RETRY, turn_id, window_messages=window_cap)
                except Exception as e:
                    self._fail_turn(turn_id, e)
                    raise

            tool_calls = self._tool_calls_from(response, turn_id)
            self.event_log.log_event(
                EventType.LLM_RESPONSE,
                turn_id,
                round=round_number,
                has_content=bool(response.content),
                tool_calls=len(tool_calls),
            )

            if response.content or tool_calls:
                agent.messages.append(Message(
                    role=Role.ASSISTANT,
                    content=response.content,
                    tool_calls=tool_calls or None,
                ))
            if response.content:
                answer = response.content

            if not tool_calls:
                agent.save()
                self.event_log.log_event(EventType.TURN_END, turn_id, rounds=round_number)
                return answer

            for tool_call in tool_calls:
                logger.info(f"{agent.name} calling tool: {tool_call.name}")
                result = self.dispatcher.execute(tool_call, context)
                agent.tool_call_count += 1
                agent.messages.append(Message(
                    role=Role.TOOL,
                    content=result.content,
                    tool_call_id=tool_call.id,
                    name=tool_call.name,
                ))
            agent.save()
            self._compact()

        logger.warning(f"{agent.name} reached the round cap ({self.config.max_rounds}) without a final answer")
        self.event_log.log_event(EventType.ROUND_CAP_REACHED, turn_id, rounds=self.config.max_rounds)
        agent.save()
        return answer

    def _compact(self) -> None:
        if self.memory is not None and self.memory.maybe_compact(self.agent):
            self.agent.save()

    def _tool_calls_from(self, response: ChatResponse, turn_id: str) -> list[ToolCall]:
        tool_calls = list(response.tool_calls)
        if not tool_calls:
            recovered = recover_tool_call(response.content, self.dispatcher.registry)
            if recovered is not None:
                self.event_log.log_event(EventType.TOOL_CALL_RECOVERED, recovered.id, tool_name=recovered.name)
                tool_calls = [recovered]

        seen: set[str] = set()
        for tc in tool_calls:
            if not tc.id or tc.id in seen:
                tc.id = f"call_{uuid.uuid4().hex[:12]}"
            seen.add(tc.id)
        return tool_calls

    def _fail_turn(self, turn_id: str, error: Exception) -> None:
        logger.error(f"Model call failed for {self.agent.name}: {error}")
        self.event_log.log_event(EventType.LLM_ERROR, turn_id, error=str(error), error_type=type(error).__name__)
        self.agent.save()
