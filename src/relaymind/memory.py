"""
Memory Manager - Keeps a long-running conversation inside the model's context.

When the estimated size of an agent's window crosses the compaction
threshold, the window is split into:

1. The leading system message (kept verbatim)
2. A cold region (older messages), replaced by one summary message
3. A hot region (the most recent messages), kept unchanged

Before anything is replaced, the cold region is archived to a checkpoint and
a plain-text snapshot of the active task is written to disk. The summary
message always repeats the original goal verbatim, so the agent does not
forget a multi-part task even when the model-written summary is poor or
summarization fails outright.
"""

import json
import logging
import math
import re
from typing import TYPE_CHECKING, Protocol

from relaymind.config import ContextConfig
from relaymind.events import EventLog, EventType
from relaymind.llm import ModelProvider
from relaymind.storage import CheckpointStore, TaskStateStore
from relaymind.storage.task_state import render_task_state
from relaymind.types import Message, Role

if TYPE_CHECKING:
    from relaymind.agent_loop import Agent

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "…[truncated]"
SUMMARY_HEADER = "[PREVIOUS CONVERSATION SUMMARY]:"
REQUEST_EXCERPT_CHARS = 500

ACTIVE_TASK_PATTERN = re.compile(
    r'\[ACTIVE TASK - DO NOT FORGET\]: "(?P<goal>.*?)"\n'
    r'Full original request: "(?P<request>.*?)"\n'
    r'You have made \d+ tool calls so far \((?P<archived>\d+) before this summary\)',
    re.DOTALL,
)

SUMMARY_SYSTEM_TEXT = (
    "You summarize technical conversations. NEVER lose the original task goal "
    "or its sub-parts. Be specific with file paths, code changes, and progress."
)

SUMMARY_PROMPT = '''You are summarizing a conversation to free up context window space.

CRITICAL RULE: The summary MUST preserve the user's ORIGINAL TASK and its sub-tasks so the agent can continue working after summarization. Quote the original request verbatim. If the task had multiple parts (A, B, C, D or steps 1-5), list them ALL explicitly.

The user's original request was:
"""
{request}
"""

Now summarize the following conversation history. Structure your summary as:

1. **CURRENT TASK**: What the user asked for (with ALL sub-tasks/parts listed explicitly)
2. **COMPLETED SO FAR**: What has been done (be specific: file paths, commands run, changes made)
3. **IN PROGRESS / NEXT**: What remains to be done
4. **KEY FACTS**: Important technical details (file paths, names, configs, decisions)
5. **BLOCKED / ISSUES**: Any errors or problems encountered

History to summarize:
{history}
'''


class SizeEstimator(Protocol):
    """Anything that can estimate the token size of a window."""

    def estimate_size(self, messages: list[Message]) -> int: ...


class CharCountEstimator:
    """
    Tokens approximated as characters / chars_per_token.

    Counts message contents plus the JSON of any tool calls.
    """

    def __init__(self, chars_per_token: float = 4.0):
        self.chars_per_token = chars_per_token

    def estimate_size(self, messages: list[Message]) -> int:
        total = 0
        for m in messages:
            if m.content:
                total += len(m.content)
            if m.tool_calls:
                total += len(json.dumps([tc.to_dict() for tc in m.tool_calls]))
        return math.ceil(total / self.chars_per_token)


def truncate_goal(goal: str, limit: int) -> str:
    if len(goal) <= limit:
        return goal
    return goal[:limit] + TRUNCATION_MARKER


def heuristic_summary(messages: list[Message]) -> str:
    """A summary built without the model, used when generation fails."""
    tool_counts: dict[str, int] = {}
    for m in messages:
        for tc in m.tool_calls or []:
            tool_counts[tc.name] = tool_counts.get(tc.name, 0) + 1
    last_text = next(
        (m.content for m in reversed(messages) if m.role == Role.ASSISTANT and m.content),
        None,
    )

    lines = [f"{len(messages)} earlier messages were compacted without a model-written summary."]
    if tool_counts:
        activity = ", ".join(f"{name} x{count}" for name, count in sorted(tool_counts.items()))
        lines.append(f"Tool activity: {activity}")
    if last_text:
        lines.append(f"Last assistant note: {last_text[:1000]}")
    return "\n".join(lines)


def restore_task_state(messages: list[Message]) -> tuple[str | None, int]:
    """
    Recover (task goal, tool call count) from a saved window.

    A window that went through compaction carries the goal and the number
    of archived tool calls in its latest summary message; tool results
    after that message are added on top. Otherwise the goal is the first
    user message and every tool result counts.
    """
    for index in range(len(messages) - 1, -1, -1):
        match = _active_task(messages[index])
        if match is not None:
            later = sum(1 for m in messages[index + 1:] if m.role == Role.TOOL)
            return match.group("goal"), int(match.group("archived")) + later
    return _first_user_text(messages), sum(1 for m in messages if m.role == Role.TOOL)


class MemoryManager:
    """
    Compacts agent windows that have grown past the threshold.

    maybe_compact() is idempotent: calling it again without new messages
    does nothing, because either the window is below the threshold or the
    cold region is too small to shrink the window.
    """

    def __init__(
        self,
        provider: ModelProvider,
        checkpoints: CheckpointStore,
        task_states: TaskStateStore,
        config: ContextConfig | None = None,
        estimator: SizeEstimator | None = None,
        event_log: EventLog | None = None,
    ):
        self.provider = provider
        self.checkpoints = checkpoints
        self.task_states = task_states
        self.config = config or ContextConfig()
        self.estimator = estimator or CharCountEstimator(self.config.chars_per_token)
        self.event_log = event_log or EventLog()

    def split_point(self, messages: list[Message]) -> tuple[int, int]:
        """
        Return (start, end) of the cold region.

        The hot region starts at end; it is moved earlier until it does not
        begin with a tool message whose request would be summarized away.
        """
        start = 1 if messages and messages[0].role == Role.SYSTEM else 0
        end = max(start, len(messages) - self.config.keep_recent)
        while end > start and end < len(messages) and messages[end].role == Role.TOOL:
            end -= 1
        return start, end

    def maybe_compact(self, agent: "Agent") -> bool:
        """Compact agent.messages in place if needed. Returns True if it did."""
        messages = agent.messages
        estimated = self.estimator.estimate_size(messages)
        if estimated < self.config.compaction_threshold:
            return False

        start, end = self.split_point(messages)
        cold = messages[start:end]
        if len(cold) < 2:
            logger.debug(f"Window for {agent.identity.id} is large (~{estimated} tokens) but has nothing to compact")
            return False

        logger.warning(f"Memory usage high for {agent.identity.id} (~{estimated} tokens). Summarizing...")

        goal = agent.task_goal or _first_user_text(messages) or "(unknown)"
        request = _original_request(messages) or goal
        self.task_states.save(
            agent.identity.id,
            render_task_state(goal, messages, agent.tool_call_count),
        )

        summary = self._summarize(request, cold)
        checkpoint_id = self.checkpoints.create_checkpoint(cold, summary)

        kept_results = sum(1 for m in messages[end:] if m.role == Role.TOOL)
        new_messages = messages[:start]
        new_messages.append(Message(
            role=Role.SYSTEM,
            content=self._summary_message(
                summary,
                checkpoint_id,
                goal,
                request,
                agent.tool_call_count,
                max(0, agent.tool_call_count - kept_results),
            ),
        ))
        new_messages.extend(messages[end:])
        agent.messages = new_messages

        self.event_log.log_event(
            EventType.COMPACTION,
            agent_id=agent.identity.id,
            checkpoint_id=checkpoint_id,
            estimated_tokens=estimated,
            messages_before=len(messages),
            messages_after=len(new_messages),
        )
        logger.info(
            f"Memory summarized for {agent.identity.id}. "
            f"Reduced from {len(messages)} to {len(new_messages)} messages."
        )
        return True

    def _summarize(self, request: str, cold: list[Message]) -> str:
        limit = self.config.summary_input_chars
        history = "\n".join(
            f"{m.role.value}: "
            + json.dumps(m.content if m.content else [tc.to_dict() for tc in m.tool_calls or []])[:limit]
            for m in cold
        )
        prompt = SUMMARY_PROMPT.format(
            request=truncate_goal(request, self.config.goal_chars),
            history=history,
        )
        try:
            summary = self.provider.generate(prompt, SUMMARY_SYSTEM_TEXT)
        except Exception as e:
            logger.error(f"Failed to summarize memory, using heuristic summary: {e}")
            return heuristic_summary(cold)
        if not summary or not summary.strip():
            logger.warning("Model returned an empty summary, using heuristic summary")
            return heuristic_summary(cold)
        return summary.strip()

    def _summary_message(
        self,
        summary: str,
        checkpoint_id: str,
        goal: str,
        request: str,
        tool_calls: int,
        archived_calls: int,
    ) -> str:
        return (
            f"{SUMMARY_HEADER}\n{summary}\n[END SUMMARY]\n\n"
            f"The full earlier history is archived in checkpoint {checkpoint_id} "
            f"(use read_checkpoint to view it).\n\n"
            f'[ACTIVE TASK - DO NOT FORGET]: "{truncate_goal(goal, self.config.goal_chars)}"\n'
            f'Full original request: "{truncate_goal(request, REQUEST_EXCERPT_CHARS)}"\n'
            f"You have made {tool_calls} tool calls so far ({archived_calls} before this summary). "
            "Continue from where you left off."
        )


def _first_user_text(messages: list[Message]) -> str | None:
    return next((m.content for m in messages if m.role == Role.USER and m.content), None)


def _active_task(message: Message) -> re.Match | None:
    if message.role != Role.SYSTEM or not message.content or not message.content.startswith(SUMMARY_HEADER):
        return None
    return ACTIVE_TASK_PATTERN.search(message.content)


def _original_request(messages: list[Message]) -> str | None:
    """The first user request, carried forward through earlier summaries."""
    for m in messages:
        match = _active_task(m)
        if match is not None:
            return match.group("request")
        if m.role == Role.USER and m.content:
            return m.content
    return None
