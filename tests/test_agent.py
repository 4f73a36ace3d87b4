"""Tests for the agent service and its streaming response loop."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage
from langchain_core.messages.tool import tool_call_chunk
from pydantic import BaseModel

from agent_engine.models.llm import ProviderConfig
from agent_engine.models.messages import ConversationMessage, MessageStatus, NoteAttachment, ToolOutcome, ToolResult
from agent_engine.services.agent import AgentService, ProcessOptions
from agent_engine.services.response_loop import TOOL_RESULTS_INSTRUCTION, build_tool_followup
from agent_engine.tools import MCPToolRegistry, ToolDefinition

SYSTEM_PROMPT = "You are a test assistant."


class ScriptedModel:
    """Chat model stand-in that streams one scripted turn per call."""

    def __init__(self, *turns):
        self.turns = list(turns)
        self.calls: list[list] = []
        self.bound_tools: list | None = None

    def bind_tools(self, tools):
        self.bound_tools = tools
        return self

    async def astream(self, messages, **kwargs):
        self.calls.append(list(messages))
        turn = self.turns.pop(0)
        if callable(turn):
            async for chunk in turn():
                yield chunk
            return
        for chunk in turn:
            yield chunk if isinstance(chunk, AIMessageChunk) else AIMessageChunk(content=chunk)


class EchoInput(BaseModel):
    value: str


def make_registry() -> MCPToolRegistry:
    async def echo(params: EchoInput) -> str:
        return f"echo:{params.value}"

    registry = MCPToolRegistry()
    registry.register_tool("test", ToolDefinition("echo", "Echo a value", EchoInput, echo))
    return registry


def echo_call_chunk(text: str = "", value: str = "x", call_id: str = "call_1") -> AIMessageChunk:
    return AIMessageChunk(
        content=text,
        tool_call_chunks=[tool_call_chunk(name="mcp_test_echo", args=f'{{"value": "{value}"}}', id=call_id, index=0)],
    )


def make_agent(model: ScriptedModel, **kwargs) -> AgentService:
    config = ProviderConfig(type="anthropic", model="claude-test")
    return AgentService(config, system_prompt=SYSTEM_PROMPT, chat_model=model, **kwargs)


class TestBuildToolFollowup:
    """Tests for the messages handed back to the model after a tool batch."""

    def test_followup_with_turn_text(self):
        results = [
            ToolResult(id="1", name="mcp_fs_read", result=ToolOutcome(success=True, output="file body")),
            ToolResult(id="2", name="mcp_fs_stat", result=ToolOutcome(success=False, error="missing")),
        ]

        ai, human = build_tool_followup("Checking the file.", results)

        assert ai == AIMessage(content="Checking the file.")
        assert human.content == (
            "Tool execution results:\n"
            "Tool mcp_fs_read result:\nfile body\n\n"
            "Tool mcp_fs_stat result:\nError: missing\n\n" + TOOL_RESULTS_INSTRUCTION
        )

    def test_followup_without_turn_text(self):
        result = ToolResult(id="1", name="t", result=ToolOutcome(success=True, output="ok"))

        [human] = build_tool_followup("  ", [result])

        assert isinstance(human, HumanMessage)


class TestProcessMessage:
    """Tests for AgentService.process_message."""

    @pytest.mark.asyncio
    async def test_plain_reply_completes(self):
        """Test a reply without tool calls streams into a completed message."""
        model = ScriptedModel(["Hello", " there", "!"])
        agent = make_agent(model)

        reply = await agent.process_message("t1", "Hi")

        assert reply.status == MessageStatus.COMPLETED
        assert reply.content == "Hello there!"
        assert reply.role == "assistant"
        assert reply.model == "claude-test"
        assert reply.token_metrics is not None
        assert reply.token_metrics.total_tokens > 0

        [context] = model.calls
        assert context == [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content="Hi")]

        stored = await agent.get_conversation("t1")
        assert [m.role for m in stored] == ["user", "assistant"]
        assert stored[1].status == MessageStatus.COMPLETED
        assert stored[1].content == "Hello there!"

    @pytest.mark.asyncio
    async def test_tool_turn_then_followup(self):
        """Test streamed tool calls run and their results feed a second turn."""
        model = ScriptedModel([echo_call_chunk("Let me check.")], ["The answer is echo:x"])
        agent = make_agent(model, registry=make_registry())

        reply = await agent.process_message("t1", "Echo x")

        assert reply.status == MessageStatus.COMPLETED
        assert reply.content == "The answer is echo:x"
        assert [call.name for call in reply.tool_calls] == ["mcp_test_echo"]
        assert reply.tool_calls[0].parameters == {"value": "x"}
        assert reply.tool_results[0].id == "call_1"
        assert reply.tool_results[0].result.output == "echo:x"

        assert model.bound_tools[0]["function"]["name"] == "mcp_test_echo"
        second_context = model.calls[1]
        assert second_context[-2] == AIMessage(content="Let me check.")
        assert second_context[-1].content.startswith("Tool execution results:\nTool mcp_test_echo result:\necho:x")

    @pytest.mark.asyncio
    async def test_tool_call_embedded_in_text(self):
        """Test a fenced JSON tool call in the reply text is executed."""
        block = '```json\n{"name": "mcp_test_echo", "arguments": {"value": "y"}}\n```'
        model = ScriptedModel([f"Looking it up.\n\n{block}"], ["Done: echo:y"])
        agent = make_agent(model, registry=make_registry())

        reply = await agent.process_message("t1", "Echo y")

        assert reply.content == "Done: echo:y"
        assert reply.tool_results[0].result.output == "echo:y"
        assert model.calls[1][-2] == AIMessage(content="Looking it up.")

    @pytest.mark.asyncio
    async def test_max_turns_appends_notice(self):
        """Test a reply still requesting tools on its last turn completes with a notice."""
        model = ScriptedModel([echo_call_chunk("first", call_id="a")], [echo_call_chunk("second", call_id="b")])
        agent = make_agent(model, registry=make_registry())

        reply = await agent.process_message("t1", "Loop", ProcessOptions(max_turns=2))

        assert reply.status == MessageStatus.COMPLETED
        assert reply.content.startswith("second\n\n")
        assert "maximum number of tool-calling turns (2)" in reply.content
        assert [call.id for call in reply.tool_calls] == ["a", "b"]
        assert [result.id for result in reply.tool_results] == ["a", "b"]
        assert reply.tool_results[0].result.success is True
        assert reply.tool_results[1].result.success is False
        assert "maximum number of tool-calling turns" in reply.tool_results[1].result.error

    @pytest.mark.asyncio
    async def test_single_turn_limit_reports_unrun_tools(self):
        """Test every recorded tool call has a result even when none could run."""
        agent = make_agent(ScriptedModel([echo_call_chunk("Checking")]), registry=make_registry())

        reply = await agent.process_message("t1", "Echo", ProcessOptions(max_turns=1))

        assert len(reply.tool_calls) == len(reply.tool_results) == 1
        assert reply.tool_results[0].id == reply.tool_calls[0].id
        assert reply.tool_results[0].result.success is False

    @pytest.mark.asyncio
    async def test_model_failure_marks_reply_failed(self):
        """Test a stream failure keeps partial content and appends the classified error."""

        async def failing():
            yield AIMessageChunk(content="Partial")
            raise ConnectionError("connection refused")

        agent = make_agent(ScriptedModel(failing))

        reply = await agent.process_message("t1", "Hi")

        assert reply.status == MessageStatus.FAILED
        assert reply.content.startswith("Partial\n\n**Network Error**")

    @pytest.mark.asyncio
    async def test_model_creation_failure_marks_reply_failed(self):
        """Test errors before streaming starts are reported on the reply."""
        agent = AgentService(ProviderConfig(type="local", model="tiny"), system_prompt=SYSTEM_PROMPT)

        reply = await agent.process_message("t1", "Hi")

        assert reply.status == MessageStatus.FAILED
        assert reply.content.startswith("**Error Occurred**")

    @pytest.mark.asyncio
    async def test_external_signal_cancels_mid_stream(self):
        """Test tripping the caller's signal keeps the partial content."""
        signal = asyncio.Event()

        async def stream():
            yield AIMessageChunk(content="Partial ")
            await asyncio.sleep(0.05)
            signal.set()
            await asyncio.sleep(10)
            yield AIMessageChunk(content="never")

        agent = make_agent(ScriptedModel(stream), registry=make_registry())

        reply = await asyncio.wait_for(agent.process_message("t1", "Hi", ProcessOptions(signal=signal)), timeout=2)

        assert reply.status == MessageStatus.CANCELLED
        assert reply.content == "Partial "
        assert reply.tool_results is None

    @pytest.mark.asyncio
    async def test_cancel_message_stops_running_reply(self):
        """Test cancel_message trips the loop for an in-flight reply."""
        started = asyncio.Event()

        async def stream():
            yield AIMessageChunk(content="Working")
            await asyncio.sleep(0.05)
            started.set()
            await asyncio.sleep(10)
            yield AIMessageChunk(content="never")

        agent = make_agent(ScriptedModel(stream))
        task = asyncio.create_task(agent.process_message("t1", "Hi"))
        await asyncio.wait_for(started.wait(), timeout=2)

        pending = [m for m in await agent.get_conversation("t1") if m.is_pending]
        assert len(pending) == 1
        assert await agent.cancel_message("t1", pending[0].id) is True

        reply = await asyncio.wait_for(task, timeout=2)
        assert reply.status == MessageStatus.CANCELLED
        assert reply.content == "Working"
        assert await agent.cancel_message("t1", reply.id) is False

    @pytest.mark.asyncio
    async def test_cancel_during_slow_tool_finishes_promptly(self):
        """Test cancelling while a tool is running abandons the batch without waiting for it."""
        signal = asyncio.Event()
        tool_cancelled = asyncio.Event()

        async def slow(params: EchoInput) -> str:
            asyncio.get_running_loop().call_later(0.1, signal.set)
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                tool_cancelled.set()
                raise
            return "too late"

        registry = make_registry()
        registry.register_tool("test", ToolDefinition("slow", "Sleeps", EchoInput, slow))
        chunk = AIMessageChunk(
            content="Working on it.",
            tool_call_chunks=[tool_call_chunk(name="mcp_test_slow", args='{"value": "x"}', id="call_1", index=0)],
        )
        agent = make_agent(ScriptedModel([chunk], ["never"]), registry=registry)

        loop = asyncio.get_running_loop()
        started = loop.time()
        reply = await asyncio.wait_for(agent.process_message("t1", "Go", ProcessOptions(signal=signal)), timeout=2)

        assert loop.time() - started < 1.0
        assert reply.status == MessageStatus.CANCELLED
        assert reply.content == "Working on it."
        assert tool_cancelled.is_set()
        assert len(reply.tool_calls) == len(reply.tool_results) == 1
        assert reply.tool_results[0].result.success is False
        assert "cancelled" in reply.tool_results[0].result.error

        stored = await agent.store.get_message("t1", reply.id)
        assert stored.status == MessageStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_rate_limit(self):
        """Test a reply blocked on the rate limiter is cancelled without waiting out the window."""
        signal = asyncio.Event()

        async def full_window(*args):
            await asyncio.sleep(5)

        limiter = Mock()
        limiter.acquire = AsyncMock(side_effect=full_window)
        model = ScriptedModel(["never"])
        agent = make_agent(model, rate_limiter=limiter)

        asyncio.get_running_loop().call_later(0.05, signal.set)
        reply = await asyncio.wait_for(agent.process_message("t1", "Hi", ProcessOptions(signal=signal)), timeout=2)

        assert reply.status == MessageStatus.CANCELLED
        assert reply.content == ""
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_cancel_orphaned_pending_message(self):
        agent = make_agent(ScriptedModel())
        orphan = ConversationMessage(role="assistant", status=MessageStatus.PENDING)
        await agent.store.add_message("t1", orphan)

        assert await agent.cancel_message("t1", orphan.id) is True

        stored = await agent.store.get_message("t1", orphan.id)
        assert stored.status == MessageStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_on_update_receives_snapshots(self):
        """Test the update callback sees streaming and final states."""
        snapshots: list[ConversationMessage] = []

        async def on_update(message: ConversationMessage) -> None:
            snapshots.append(message)

        agent = make_agent(ScriptedModel(["a", "b"]))

        await agent.process_message("t1", "Hi", ProcessOptions(on_update=on_update))

        assert [s.content for s in snapshots] == ["a", "ab", "ab"]
        assert snapshots[-1].status == MessageStatus.COMPLETED
        assert all(s.is_pending for s in snapshots[:-1])

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_reply(self):
        agent = make_agent(ScriptedModel(["ok"]))

        reply = await agent.process_message("t1", "Hi", ProcessOptions(on_update=Mock(side_effect=RuntimeError("ui"))))

        assert reply.status == MessageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_citations_are_recorded(self):
        chunk = AIMessageChunk(content="Per the source.", additional_kwargs={"citations": ["https://example.com"]})
        agent = make_agent(ScriptedModel([chunk]))

        reply = await agent.process_message("t1", "Search")

        assert reply.citations == ["https://example.com"]

    @pytest.mark.asyncio
    async def test_events_are_broadcast(self):
        """Test subscribers see both creations and the final update."""
        agent = make_agent(ScriptedModel(["Hello"]))

        async with agent.broadcaster.subscribe("t1") as queue:
            await agent.process_message("t1", "Hi")

            events = []
            while not queue.empty():
                events.append(queue.get_nowait())

        assert [(e.type, e.message.role) for e in events[:2]] == [
            ("message_create", "user"),
            ("message_create", "assistant"),
        ]
        assert events[-1].type == "thread_update"
        assert events[-1].message.status == MessageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_rate_limiter_is_consulted_per_turn(self):
        limiter = Mock()
        limiter.acquire = AsyncMock()
        model = ScriptedModel([echo_call_chunk()], ["done"])
        agent = make_agent(model, registry=make_registry(), rate_limiter=limiter)

        await agent.process_message("t1", "Hi")

        assert limiter.acquire.await_count == 2
        assert limiter.acquire.await_args.args[0] == "anthropic:claude-test"

    @pytest.mark.asyncio
    async def test_notes_only_message_is_accepted(self):
        model = ScriptedModel(["Read it."])
        agent = make_agent(model)
        note = NoteAttachment(title="Plan", content="Ship it")

        await agent.process_message("t1", "", ProcessOptions(notes=[note]))

        assert "--- ATTACHED NOTES: Plan ---" in model.calls[0][-1].content

    @pytest.mark.asyncio
    async def test_existing_user_message_is_reused(self):
        """Test a retried request does not duplicate the user message."""
        agent = make_agent(ScriptedModel(["first"], ["second"]))

        await agent.process_message("t1", "Hi", ProcessOptions(user_message_id="user-1"))
        await agent.process_message("t1", "Hi", ProcessOptions(user_message_id="user-1"))

        roles = [m.role for m in await agent.get_conversation("t1")]
        assert roles == ["user", "assistant", "assistant"]

    @pytest.mark.asyncio
    async def test_without_prior_conversation(self):
        model = ScriptedModel(["one"], ["two"])
        agent = make_agent(model)

        await agent.process_message("t1", "First")
        await agent.process_message("t1", "Second", ProcessOptions(include_prior_conversation=False))

        assert model.calls[1] == [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content="Second")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text,options",
        [
            ("", None),
            ("   ", None),
            (None, None),
            ("Hi", ProcessOptions(max_turns=0)),
        ],
    )
    async def test_invalid_input_raises(self, text, options):
        agent = make_agent(ScriptedModel())

        with pytest.raises(ValueError):
            await agent.process_message("t1", text, options)

        assert not await agent.store.has_thread("t1")

    @pytest.mark.asyncio
    async def test_empty_system_prompt_raises(self):
        agent = AgentService(ProviderConfig(type="anthropic", model="m"), system_prompt=" ", chat_model=ScriptedModel())

        with pytest.raises(ValueError, match="System prompt"):
            await agent.process_message("t1", "Hi")


class TestThreadOperations:
    """Tests for thread-level operations on AgentService."""

    @pytest.mark.asyncio
    async def test_get_conversation_hides_system_messages(self):
        agent = make_agent(ScriptedModel())
        await agent.store.add_message("t1", ConversationMessage(role="system", content="hidden"))
        await agent.store.add_message("t1", ConversationMessage(role="user", content="visible"))

        messages = await agent.get_conversation("t1")

        assert [m.content for m in messages] == ["visible"]

    @pytest.mark.asyncio
    async def test_delete_message(self):
        agent = make_agent(ScriptedModel())
        message = await agent.store.add_message("t1", ConversationMessage(role="user", content="bye"))

        assert await agent.delete_message("t1", message.id) is True
        assert await agent.delete_message("t1", message.id) is False
        assert await agent.get_conversation("t1") == []

    @pytest.mark.asyncio
    async def test_load_conversation_replaces_contents(self):
        agent = make_agent(ScriptedModel())
        await agent.store.add_message("t1", ConversationMessage(role="user", content="old"))

        await agent.load_conversation(
            "t1",
            [
                ConversationMessage(role="system", content="skipped"),
                ConversationMessage(role="user", content="new question"),
                ConversationMessage(role="assistant", content="new answer"),
            ],
        )

        assert [m.content for m in await agent.get_conversation("t1")] == ["new question", "new answer"]

    @pytest.mark.asyncio
    async def test_clear_and_delete_thread(self):
        agent = make_agent(ScriptedModel())
        await agent.store.add_message("t1", ConversationMessage(role="user", content="hi"))

        await agent.clear_conversation("t1")
        assert await agent.store.has_thread("t1")
        assert await agent.get_conversation("t1") == []

        assert await agent.delete_thread("t1") is True
        assert await agent.delete_thread("t1") is False
