"""
Tests for the AgentLoop and related components.
"""

import pytest

from relaymind.agent_loop import Agent, AgentIdentity, AgentLoop, assemble_window
from relaymind.config import ContextConfig, LoopConfig
from relaymind.errors import ContextLengthExceededError, LLMError
from relaymind.events import EventLog, EventType
from relaymind.llm import ChatResponse
from relaymind.memory import MemoryManager
from relaymind.storage import CheckpointStore, InMemoryHistoryStore, TaskStateStore
from relaymind.tools import ToolRegistry
from relaymind.types import Message, Role, ToolCall

SEVEN_FILES = "\n".join(f"/tmp/file{i}.txt" for i in range(7))


class MockLLMClient:
    """Mock LLM client for testing. Exceptions in the script are raised."""

    def __init__(self, responses: list | None = None, on_chat=None):
        self._responses = responses or []
        self._response_index = 0
        self._on_chat = on_chat
        self._calls: list[dict] = []

    def chat(self, messages: list[Message], tools: list[dict] | None = None, on_token=None) -> ChatResponse:
        self._calls.append({"messages": list(messages), "tools": tools, "on_token": on_token})
        if self._on_chat is not None:
            self._on_chat(messages, on_token)

        if self._response_index < len(self._responses):
            response = self._responses[self._response_index]
            self._response_index += 1
            if isinstance(response, Exception):
                raise response
            return response

        return ChatResponse(content="Default response", tool_calls=[], finish_reason="stop", raw_response={})

    def generate(self, prompt: str, system_text: str | None = None) -> str:
        return "summary"


def make_tools(handler=None) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_function(
        name="list_files",
        description="List files",
        parameters={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
        handler=handler or (lambda args, context: SEVEN_FILES),
    )
    return registry


def make_loop(responses=None, config=None, handler=None, history=None, on_chat=None):
    agent = Agent(
        AgentIdentity(id="a1", name="Alpha"),
        make_tools(handler),
        history=history,
        system_prompt="You are a test agent.",
    )
    llm = MockLLMClient(responses, on_chat=on_chat)
    loop = AgentLoop(agent, llm, config=config or LoopConfig(), event_log=EventLog())
    return loop, llm


def tool_response(*calls: ToolCall, content: str | None = None) -> ChatResponse:
    return ChatResponse(content=content, tool_calls=list(calls), finish_reason="tool_calls")


def list_tmp(call_id: str = "call_1") -> ToolCall:
    return ToolCall(id=call_id, name="list_files", arguments={"path": "/tmp"})


class TestAssembleWindow:
    """Tests for the per-call payload."""

    def test_keeps_system_prefix_and_tail(self):
        messages = [Message(role=Role.SYSTEM, content="sys")] + [
            Message(role=Role.USER, content=str(i)) for i in range(10)
        ]
        window = assemble_window(messages, 3)
        assert [m.content for m in window] == ["sys", "7", "8", "9"]

    def test_drops_orphaned_tool_results(self):
        messages = [
            Message(role=Role.SYSTEM, content="sys"),
            Message(role=Role.ASSISTANT, content=None, tool_calls=[list_tmp()]),
            Message(role=Role.TOOL, content="a", tool_call_id="call_1", name="list_files"),
            Message(role=Role.ASSISTANT, content="done"),
        ]
        window = assemble_window(messages, 2)
        assert [m.role for m in window] == [Role.SYSTEM, Role.ASSISTANT]
        assert window[1].content == "done"

    def test_small_window_is_unchanged(self):
        messages = [Message(role=Role.SYSTEM, content="sys"), Message(role=Role.USER, content="hi")]
        assert assemble_window(messages, 40) == messages


class TestAgent:
    """Tests for agent state."""

    def test_system_prompt_replaces_stored_one(self):
        history = InMemoryHistoryStore()
        history.save_history("a1", [
            Message(role=Role.SYSTEM, content="old prompt"),
            Message(role=Role.USER, content="earlier"),
        ])
        agent = Agent(AgentIdentity(id="a1", name="Alpha"), ToolRegistry(), history=history, system_prompt="new")
        assert [m.content for m in agent.messages] == ["new", "earlier"]

    def test_reset_keeps_only_system(self):
        agent = Agent(AgentIdentity(id="a1", name="Alpha"), ToolRegistry(), system_prompt="sys")
        agent.messages.append(Message(role=Role.USER, content="hi"))
        agent.task_goal = "hi"
        agent.reset()
        assert [m.content for m in agent.messages] == ["sys"]
        assert agent.task_goal is None

    def test_safe_mode_defaults_on(self):
        assert AgentIdentity(id="a1", name="Alpha").safe_mode is True


class TestAgentLoop:
    """Tests for AgentLoop."""

    def test_text_answer_ends_turn(self):
        loop, llm = make_loop([ChatResponse(content="Hello!")])

        assert loop.run_turn("Hi") == "Hello!"
        assert [m.role for m in loop.agent.messages] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
        assert len(llm._calls) == 1
        assert llm._calls[0]["tools"][0]["function"]["name"] == "list_files"

    def test_tool_round_then_answer(self):
        loop, llm = make_loop([tool_response(list_tmp()), ChatResponse(content="There are 7 files.")])

        answer = loop.run_turn("How many files are in /tmp?")

        assert answer == "There are 7 files."
        messages = loop.agent.messages
        assert [m.role for m in messages] == [
            Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT,
        ]
        assert messages[2].tool_calls[0].id == "call_1"
        assert messages[3].tool_call_id == "call_1"
        assert messages[3].name == "list_files"
        assert messages[3].content == SEVEN_FILES
        assert llm._calls[1]["messages"][-1].content == SEVEN_FILES
        assert loop.agent.tool_call_count == 1

    def test_every_call_in_a_round_gets_a_result(self):
        second = ToolCall(id="call_2", name="list_files", arguments={"path": "/var"})
        loop, _ = make_loop([tool_response(list_tmp(), second), ChatResponse(content="done")])

        loop.run_turn("list both")

        tool_messages = [m for m in loop.agent.messages if m.role == Role.TOOL]
        assert [m.tool_call_id for m in tool_messages] == ["call_1", "call_2"]

    def test_round_cap(self):
        responses = [tool_response(list_tmp(f"call_{i}")) for i in range(10)]
        loop, llm = make_loop(responses, config=LoopConfig(max_rounds=3))

        answer = loop.run_turn("loop forever")

        assert answer is None
        assert len(llm._calls) == 3
        assert len([m for m in loop.agent.messages if m.role == Role.TOOL]) == 3
        assert loop.event_log.of_type(EventType.ROUND_CAP_REACHED)

    def test_round_cap_returns_last_text(self):
        responses = [tool_response(list_tmp(f"call_{i}"), content=f"step {i}") for i in range(5)]
        loop, _ = make_loop(responses, config=LoopConfig(max_rounds=2))
        assert loop.run_turn("go") == "step 1"

    def test_tool_call_recovered_from_text(self):
        fenced = '```json\n{"tool": "list_files", "args": {"path": "/tmp"}}\n```'
        loop, _ = make_loop([ChatResponse(content=fenced), ChatResponse(content="There are 7 files.")])

        assert loop.run_turn("How many files are in /tmp?") == "There are 7 files."

        assistant = loop.agent.messages[2]
        assert assistant.tool_calls[0].id.startswith("fallback-")
        assert loop.agent.messages[3].tool_call_id == assistant.tool_calls[0].id
        assert loop.event_log.of_type(EventType.TOOL_CALL_RECOVERED)

    def test_missing_and_duplicate_ids_are_replaced(self):
        calls = [
            ToolCall(id="", name="list_files", arguments={"path": "/a"}),
            ToolCall(id="dup", name="list_files", arguments={"path": "/b"}),
            ToolCall(id="dup", name="list_files", arguments={"path": "/c"}),
        ]
        loop, _ = make_loop([tool_response(*calls), ChatResponse(content="ok")])

        loop.run_turn("list")

        ids = [tc.id for tc in loop.agent.messages[2].tool_calls]
        assert len(set(ids)) == 3
        assert all(ids)
        assert [m.tool_call_id for m in loop.agent.messages if m.role == Role.TOOL] == ids

    def test_tool_failure_does_not_end_turn(self):
        def broken(args, context):
            raise PermissionError("denied")

        loop, _ = make_loop([tool_response(list_tmp()), ChatResponse(content="Could not list.")], handler=broken)

        assert loop.run_turn("list /tmp") == "Could not list."
        assert loop.agent.messages[3].content == "Error executing tool list_files: denied"

    def test_unknown_tool_is_reported_to_model(self):
        call = ToolCall(id="call_1", name="format_disk", arguments={})
        loop, llm = make_loop([tool_response(call), ChatResponse(content="Sorry.")])

        loop.run_turn("wipe")

        assert loop.agent.messages[3].content.startswith("Error: Tool 'format_disk' not found.")
        assert len(llm._calls) == 2

    def test_context_length_retry_with_smaller_window(self):
        loop, llm = make_loop(
            [ContextLengthExceededError("too long"), ChatResponse(content="ok")],
            config=LoopConfig(window_messages=10),
        )
        for i in range(20):
            loop.agent.messages.append(Message(role=Role.USER, content=f"old {i}"))

        assert loop.run_turn("continue") == "ok"

        assert len(llm._calls[0]["messages"]) == 11
        assert len(llm._calls[1]["messages"]) == 6
        assert loop.event_log.of_type(EventType.LLM_RETRY)

    def test_second_context_length_error_propagates(self):
        loop, llm = make_loop([ContextLengthExceededError("too long"), ContextLengthExceededError("still")])

        with pytest.raises(ContextLengthExceededError):
            loop.run_turn("continue")

        assert len(llm._calls) == 2
        assert loop.event_log.of_type(EventType.LLM_ERROR)
        assert loop.agent.messages[-1].content == "continue"

    def test_provider_error_propagates_and_is_logged(self):
        history = InMemoryHistoryStore()
        loop, _ = make_loop([LLMError("HTTP 500: boom")], history=history)

        with pytest.raises(LLMError):
            loop.run_turn("hello")

        event = loop.event_log.of_type(EventType.LLM_ERROR)[0]
        assert event.data["error_type"] == "LLMError"
        assert history.load_history("a1")[-1].content == "hello"
        assert not loop.agent.lock.locked()

    def test_no_text_returns_none(self):
        history = InMemoryHistoryStore()
        loop, _ = make_loop([ChatResponse(content=None)], history=history)

        assert loop.run_turn("hi") is None

        stored = history.load_history("a1")
        assert [m.role for m in stored] == [Role.SYSTEM, Role.USER]
        assert all(m.content is not None or m.tool_calls for m in stored)

    def test_on_token_is_passed_through(self):
        tokens = []

        def stream(messages, on_token):
            on_token("Hel")
            on_token("lo")

        loop, llm = make_loop([ChatResponse(content="Hello")], on_chat=stream)

        loop.run_turn("hi", on_token=tokens.append)

        assert tokens == ["Hel", "lo"]
        assert llm._calls[0]["on_token"] is not None

    def test_task_goal_is_the_first_request(self):
        loop, _ = make_loop([ChatResponse(content="a"), ChatResponse(content="b")])
        loop.run_turn("Write the report")
        loop.run_turn("Also add a chart")
        assert loop.agent.task_goal == "Write the report"

    def test_new_task_replaces_goal(self):
        loop, _ = make_loop([ChatResponse(content="a"), ChatResponse(content="b")])
        loop.run_turn("Write the report")
        loop.run_turn("Summarize the logs", new_task=True)
        assert loop.agent.task_goal == "Summarize the logs"

    def test_lock_is_held_during_turn(self):
        seen = []
        loop, _ = make_loop([ChatResponse(content="ok")], on_chat=lambda m, t: seen.append(loop.agent.lock.locked()))
        loop.run_turn("hi")
        assert seen == [True]
        assert not loop.agent.lock.locked()

    def test_window_is_persisted(self):
        history = InMemoryHistoryStore()
        loop, _ = make_loop([tool_response(list_tmp()), ChatResponse(content="done")], history=history)

        loop.run_turn("list")

        assert [m.role for m in history.load_history("a1")] == [m.role for m in loop.agent.messages]
        assert history.save_count >= 2

    def test_compaction_runs_before_model_call(self):
        class RecordingMemory:
            def __init__(self):
                self.calls = 0

            def maybe_compact(self, agent):
                self.calls += 1
                return False

        loop, _ = make_loop([ChatResponse(content="ok")])
        loop.memory = RecordingMemory()

        loop.run_turn("hi")

        assert loop.memory.calls == 1

    def test_compaction_runs_between_rounds(self, tmp_path):
        responses = [tool_response(list_tmp(f"call_{i}")) for i in range(10)] + [ChatResponse(content="done")]
        loop, _ = make_loop(responses, handler=lambda args, context: "x" * 1000)
        loop.memory = MemoryManager(
            loop.provider,
            checkpoints=CheckpointStore(tmp_path / "checkpoints"),
            task_states=TaskStateStore(tmp_path / "state"),
            config=ContextConfig(compaction_threshold=1000, keep_recent=4),
            event_log=loop.event_log,
        )

        assert loop.run_turn("List everything") == "done"

        messages = loop.agent.messages
        assert len(loop.event_log.of_type(EventType.COMPACTION)) >= 2
        assert len(messages) < 10
        assert messages[1].content.startswith("[PREVIOUS CONVERSATION SUMMARY]:")
        assert '[ACTIVE TASK - DO NOT FORGET]: "List everything"' in messages[1].content
        assert loop.agent.tool_call_count == 10
        assert loop.memory.estimator.estimate_size(messages) < 1000

    def test_tool_context_carries_delegation_chain(self):
        seen = []

        def capture(args, context):
            seen.append((context.agent.identity.id, context.delegation_chain))
            return "ok"

        loop, _ = make_loop([tool_response(list_tmp()), ChatResponse(content="done")], handler=capture)

        loop.run_turn("list", delegation_chain=("boss",))

        assert seen == [("a1", ("boss", "a1"))]
