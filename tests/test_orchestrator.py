"""Tests for orchestrator components."""

import asyncio

import pytest
from pydantic import ValidationError
from unittest.mock import AsyncMock, MagicMock

from shared.errors import TransportError
from shared.models import (
    ConversationTurn,
    LoopState,
    ModelResponse,
    Role,
    TextPart,
    ToolDefinition,
    ToolInvocationRequest,
    ToolResponsePart,
)
from shared.schema import StructuredOutputValidator
from tool_registry import ToolContext, ToolRegistry


def tool_call(name: str, **arguments) -> ModelResponse:
    return ModelResponse(
        text=f"Calling {name}",
        tool_calls=[ToolInvocationRequest(name=name, arguments=arguments)],
        finish_reason="tool_calls",
    )


def make_registry(handler=None) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolDefinition(name="lookup", description="Look something up"),
        handler or MagicMock(return_value={"value": 42})
    )
    return registry


def make_session_and_context(text: str = "Hello"):
    from orchestrator.session import ConversationSession

    session = ConversationSession()
    session.append(ConversationTurn.user(text))
    context = ToolContext(
        request_id="req-1",
        session=session,
        validator=StructuredOutputValidator()
    )
    return session, context


class TestConversationSession:
    """Tests for ConversationSession."""

    def test_view_preserves_append_order(self):
        from orchestrator.session import ConversationSession

        session = ConversationSession()
        turns = [ConversationTurn.user(f"Message {i}") for i in range(10)]
        for turn in turns:
            session.append(turn)

        assert list(session.view()) == turns
        assert len(session) == 10

    def test_view_is_read_only_snapshot(self):
        from orchestrator.session import ConversationSession

        session = ConversationSession()
        session.append(ConversationTurn.user("Hello"))
        view = session.view()
        session.append(ConversationTurn.assistant("Hi!"))

        assert isinstance(view, tuple)
        assert len(view) == 1
        assert len(session.view()) == 2

    def test_turns_are_immutable(self):
        turn = ConversationTurn.user("Hello")

        with pytest.raises(ValidationError):
            turn.role = Role.ASSISTANT

    def test_append_rejects_non_turns(self):
        from orchestrator.session import ConversationSession

        session = ConversationSession()
        with pytest.raises(TypeError):
            session.append({"role": "user", "content": "Hello"})

    def test_last_user_text(self):
        from orchestrator.session import ConversationSession

        session = ConversationSession()
        assert session.last_user_text() is None

        session.append(ConversationTurn.user("First"))
        session.append(ConversationTurn.assistant("Reply"))
        session.append(ConversationTurn.user("Second"))

        assert session.last_user_text() == "Second"

    def test_transcript(self):
        from orchestrator.session import ConversationSession

        session = ConversationSession()
        session.append(ConversationTurn.user("Hello"))
        call = ToolInvocationRequest(name="lookup", arguments={"q": 1}, call_id="c1")
        session.append(ConversationTurn.assistant(None, (call,)))
        session.append(ConversationTurn.tool_response("c1", "lookup", {"value": 42}))

        transcript = session.to_transcript()

        assert [r["role"] for r in transcript] == ["user", "assistant", "tool"]
        assert transcript[1]["tool_calls"] == [{"name": "lookup", "arguments": {"q": 1}}]
        assert transcript[2]["content"] == {"value": 42}

    def test_transcript_tolerates_tool_turn_without_response_part(self):
        from orchestrator.session import ConversationSession

        session = ConversationSession()
        session.append(ConversationTurn(role=Role.TOOL))
        session.append(ConversationTurn(role=Role.TOOL, parts=(TextPart(text="raw output"),)))

        transcript = session.to_transcript()

        assert transcript == [
            {"role": "tool", "content": ""},
            {"role": "tool", "content": "raw output"},
        ]

    def test_history_skips_tool_traffic(self):
        from orchestrator.session import ConversationSession

        session = ConversationSession()
        session.append(ConversationTurn.user("Hello"))
        call = ToolInvocationRequest(name="lookup", call_id="c1")
        session.append(ConversationTurn.assistant(None, (call,)))
        session.append(ConversationTurn.tool_response("c1", "lookup", {"value": 42}))
        session.append(ConversationTurn.assistant("It is 42."))

        assert session.history() == [
            {"role": "user", "text": "Hello"},
            {"role": "assistant", "text": "It is 42."},
        ]


class TestModelClients:
    """Tests for model client providers."""

    @pytest.mark.asyncio
    async def test_scripted_chat_model_default(self):
        from orchestrator.llm import ScriptedChatModel

        model = ScriptedChatModel()
        response = await model.send((ConversationTurn.user("Hello"),))

        assert response.text is not None
        assert response.finish_reason == "stop"
        assert len(model.call_history) == 1

    @pytest.mark.asyncio
    async def test_scripted_chat_model_assigns_call_ids(self):
        from orchestrator.llm import ScriptedChatModel

        model = ScriptedChatModel([tool_call("lookup")])
        response = await model.send(())

        assert response.tool_calls[0].call_id

    @pytest.mark.asyncio
    async def test_scripted_chat_model_raises_scripted_errors(self):
        from orchestrator.llm import ScriptedChatModel

        model = ScriptedChatModel([TransportError("down")])
        with pytest.raises(TransportError):
            await model.send(())

    def test_parse_tool_call_decodes_arguments(self):
        from orchestrator.llm import _parse_tool_call

        call = _parse_tool_call(
            {"id": "call_9", "function": {"name": "lookup", "arguments": '{"q": "x"}'}},
            0
        )

        assert call.call_id == "call_9"
        assert call.name == "lookup"
        assert call.arguments == {"q": "x"}

    def test_parse_tool_call_with_bad_arguments(self):
        from orchestrator.llm import _parse_tool_call

        call = _parse_tool_call({"function": {"name": "lookup", "arguments": "{oops"}}, 3)

        assert call.call_id == "call_3"
        assert call.arguments == {}

    def test_create_chat_model_factory(self):
        from orchestrator.llm import ScriptedChatModel, create_chat_model
        from shared.config import LLMSettings

        model = create_chat_model(LLMSettings(provider="mock"))

        assert isinstance(model, ScriptedChatModel)

    def test_invalid_provider_raises(self):
        from orchestrator.llm import create_structured_model
        from shared.config import LLMSettings

        with pytest.raises(ValueError, match="Unsupported"):
            create_structured_model(LLMSettings(provider="invalid_provider"))


class TestToolLoop:
    """Tests for the ToolLoop state machine."""

    @pytest.mark.asyncio
    async def test_no_tool_call_terminates_first_round(self):
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        model = ScriptedChatModel(["Hello! How can I help you?"])
        registry = make_registry()
        session, context = make_session_and_context()

        outcome = await ToolLoop(model, registry).run(session, context)

        assert outcome.state == LoopState.TERMINATED
        assert outcome.completed
        assert outcome.text == "Hello! How can I help you?"
        assert outcome.iterations == 0
        assert len(model.call_history) == 1
        assert session.view()[-1].role == Role.ASSISTANT

    @pytest.mark.asyncio
    async def test_tool_call_dispatched_once_with_verbatim_arguments(self):
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        handler = MagicMock(return_value={"value": 42})
        model = ScriptedChatModel([
            tool_call("lookup", key="E001", depth=2),
            "The value is 42.",
        ])
        registry = make_registry(handler)
        session, context = make_session_and_context()

        outcome = await ToolLoop(model, registry).run(session, context)

        assert outcome.completed
        assert outcome.text == "The value is 42."
        assert outcome.iterations == 1
        assert outcome.tool_calls == ["lookup"]
        handler.assert_called_once_with({"key": "E001", "depth": 2}, context)

        roles = [t.role for t in session.view()]
        assert roles == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        tool_part = session.view()[2].parts[0]
        assert isinstance(tool_part, ToolResponsePart)
        assert tool_part.response == {"value": 42}
        assert tool_part.call_id == session.view()[1].tool_calls[0].call_id

        # The second round trip saw the tool result
        assert len(model.call_history[1]["turns"]) == 3

    @pytest.mark.asyncio
    async def test_only_first_tool_call_is_dispatched(self):
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        first = MagicMock(return_value={"n": 1})
        second = MagicMock(return_value={"n": 2})
        registry = ToolRegistry()
        registry.register(ToolDefinition(name="first", description="First"), first)
        registry.register(ToolDefinition(name="second", description="Second"), second)
        model = ScriptedChatModel([
            ModelResponse(tool_calls=[
                ToolInvocationRequest(name="first"),
                ToolInvocationRequest(name="second"),
            ]),
            "Done.",
        ])
        session, context = make_session_and_context()

        outcome = await ToolLoop(model, registry).run(session, context)

        assert outcome.completed
        first.assert_called_once()
        second.assert_not_called()
        assert [c.name for c in session.view()[1].tool_calls] == ["first"]

    @pytest.mark.asyncio
    async def test_iteration_bound_aborts(self):
        """Six tool-call rounds against a bound of five abort after the fifth dispatch."""
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        handler = MagicMock(return_value={"value": 1})
        model = ScriptedChatModel([
            ModelResponse(
                text=f"Working on step {i}",
                tool_calls=[ToolInvocationRequest(name="lookup")]
            )
            for i in range(1, 7)
        ])
        registry = make_registry(handler)
        session, context = make_session_and_context()

        outcome = await ToolLoop(model, registry, max_iterations=5).run(session, context)

        assert outcome.state == LoopState.ABORTED
        assert not outcome.completed
        assert outcome.iterations == 5
        assert outcome.text == "Working on step 5"
        assert handler.call_count == 5
        assert len(model.call_history) == 5

    @pytest.mark.asyncio
    async def test_unknown_tool_is_terminal(self):
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        model = ScriptedChatModel([tool_call("does_not_exist"), "never sent"])
        session, context = make_session_and_context()

        outcome = await ToolLoop(model, make_registry()).run(session, context)

        assert outcome.state == LoopState.UNKNOWN_TOOL
        assert "does_not_exist" in outcome.error
        assert len(model.call_history) == 1
        last = session.view()[-1]
        assert last.role == Role.TOOL
        assert last.parts[0].is_error
        assert last.parts[0].response["code"] == "UNKNOWN_TOOL"

    @pytest.mark.asyncio
    async def test_handler_failure_is_terminal(self):
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        handler = MagicMock(side_effect=RuntimeError("storage offline"))
        model = ScriptedChatModel([tool_call("lookup"), "never sent"])
        session, context = make_session_and_context()

        outcome = await ToolLoop(model, make_registry(handler)).run(session, context)

        assert outcome.state == LoopState.HANDLER_FAILURE
        assert "storage offline" in outcome.error
        assert len(model.call_history) == 1
        assert session.view()[-1].parts[0].response["code"] == "HANDLER_FAILURE"

    @pytest.mark.asyncio
    async def test_handler_timeout_is_recorded_as_timeout(self):
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        async def slow_handler(args, ctx):
            await asyncio.sleep(5)

        model = ScriptedChatModel([tool_call("lookup"), "never sent"])
        session, context = make_session_and_context()

        outcome = await ToolLoop(model, make_registry(slow_handler), tool_timeout=0.01).run(session, context)

        assert outcome.state == LoopState.HANDLER_FAILURE
        last = session.view()[-1].parts[0]
        assert last.is_error
        assert last.response["code"] == "TIMEOUT"
        assert "timed out" in last.response["error"]

    def test_outcome_rejects_non_terminal_state(self):
        from shared.models import LoopOutcome

        assert LoopState.CANCELLED.is_terminal
        assert not LoopState.DISPATCHING.is_terminal
        with pytest.raises(ValidationError, match="not a terminal loop state"):
            LoopOutcome(state=LoopState.AWAIT_RESPONSE)

    @pytest.mark.asyncio
    async def test_transport_error_is_recovered(self):
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        model = ScriptedChatModel([tool_call("lookup"), TransportError("connection reset")])
        session, context = make_session_and_context()

        outcome = await ToolLoop(model, make_registry()).run(session, context)

        assert outcome.state == LoopState.TRANSPORT_ERROR
        assert outcome.text == "Calling lookup"
        assert "connection reset" in outcome.error

    @pytest.mark.asyncio
    async def test_round_trip_timeout_is_transport_error(self):
        from orchestrator.llm import ChatModel
        from orchestrator.loop import ToolLoop

        class SlowModel(ChatModel):
            async def send(self, turns, tools=None):
                await asyncio.sleep(5)

        session, context = make_session_and_context()

        outcome = await ToolLoop(SlowModel(), make_registry(), round_timeout=0.01).run(session, context)

        assert outcome.state == LoopState.TRANSPORT_ERROR
        assert "timed out" in outcome.error
        assert len(session) == 1

    @pytest.mark.asyncio
    async def test_cancellation_during_dispatch_appends_no_tool_turn(self):
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        started = asyncio.Event()

        async def slow_handler(args, ctx):
            started.set()
            await asyncio.sleep(5)
            return {"value": 1}

        cancel_event = asyncio.Event()
        model = ScriptedChatModel([tool_call("lookup"), "never sent"])
        session, context = make_session_and_context()

        async def cancel_when_started():
            await started.wait()
            cancel_event.set()

        canceller = asyncio.create_task(cancel_when_started())
        outcome = await ToolLoop(model, make_registry(slow_handler)).run(
            session, context, cancel_event=cancel_event
        )
        await canceller

        assert outcome.state == LoopState.CANCELLED
        assert len(model.call_history) == 1
        roles = [t.role for t in session.view()]
        assert roles == [Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_cancellation_during_round_trip(self):
        from orchestrator.llm import ChatModel
        from orchestrator.loop import ToolLoop

        started = asyncio.Event()
        send_cancelled = asyncio.Event()

        class SlowModel(ChatModel):
            async def send(self, turns, tools=None):
                started.set()
                try:
                    await asyncio.sleep(5)
                except asyncio.CancelledError:
                    send_cancelled.set()
                    raise
                return ModelResponse(text="too late")

        cancel_event = asyncio.Event()
        session, context = make_session_and_context()

        async def cancel_when_started():
            await started.wait()
            cancel_event.set()

        canceller = asyncio.create_task(cancel_when_started())
        outcome = await ToolLoop(SlowModel(), make_registry()).run(
            session, context, cancel_event=cancel_event
        )
        await canceller

        assert outcome.state == LoopState.CANCELLED
        assert outcome.iterations == 0
        assert send_cancelled.is_set()
        assert [t.role for t in session.view()] == [Role.USER]

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        cancel_event = asyncio.Event()
        cancel_event.set()
        model = ScriptedChatModel(["Hello"])
        session, context = make_session_and_context()

        outcome = await ToolLoop(model, make_registry()).run(session, context, cancel_event=cancel_event)

        assert outcome.state == LoopState.CANCELLED
        assert model.call_history == []

    def test_invalid_max_iterations(self):
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.loop import ToolLoop

        with pytest.raises(ValueError):
            ToolLoop(ScriptedChatModel(), make_registry(), max_iterations=0)


class TestAssistantGateway:
    """Tests for AssistantGateway."""

    @pytest.mark.asyncio
    async def test_process_message_simple(self):
        from orchestrator.gateway import AssistantGateway
        from orchestrator.llm import ScriptedChatModel

        gateway = AssistantGateway(
            chat_model=ScriptedChatModel(["Hello! How can I help you?"]),
            registry=make_registry()
        )

        result = await gateway.process_message("Hello")

        assert result["response"] == "Hello! How can I help you?"
        assert result["completed"] is True
        assert result["state"] == "terminated"
        assert result["transcript"][0] == {"role": "user", "content": "Hello"}
        assert gateway.registry.frozen

    @pytest.mark.asyncio
    async def test_aborted_response_flags_incomplete(self):
        from orchestrator.gateway import INCOMPLETE_NOTICE, AssistantGateway
        from orchestrator.llm import ScriptedChatModel

        model = ScriptedChatModel(default=tool_call("lookup"))
        gateway = AssistantGateway(chat_model=model, registry=make_registry(), max_iterations=3)

        result = await gateway.process_message("Do something")

        assert result["completed"] is False
        assert result["state"] == "aborted"
        assert result["iterations"] == 3
        assert result["response"].startswith("Calling lookup")
        assert INCOMPLETE_NOTICE in result["response"]

    @pytest.mark.asyncio
    async def test_unknown_tool_reports_error(self):
        from orchestrator.gateway import AssistantGateway
        from orchestrator.llm import ScriptedChatModel

        gateway = AssistantGateway(
            chat_model=ScriptedChatModel([tool_call("hr.get_employee")]),
            registry=make_registry()
        )

        result = await gateway.process_message("Who is E001?")

        assert result["state"] == "unknown_tool"
        assert "not available" in result["response"]
        assert "hr.get_employee" in result["error"]

    @pytest.mark.asyncio
    async def test_each_interaction_gets_a_fresh_session(self):
        from orchestrator.gateway import AssistantGateway
        from orchestrator.llm import ScriptedChatModel

        model = ScriptedChatModel(["One", "Two"])
        gateway = AssistantGateway(chat_model=model, registry=make_registry())

        first = await gateway.process_message("First")
        second = await gateway.process_message("Second")

        assert first["interaction_id"] != second["interaction_id"]
        assert len(model.call_history[1]["turns"]) == 1

    @pytest.mark.asyncio
    async def test_follow_up_message_continues_session(self):
        from orchestrator.gateway import AssistantGateway
        from orchestrator.llm import ScriptedChatModel
        from orchestrator.session import ConversationSession

        model = ScriptedChatModel([
            "The Pacific Science Center is next to the Space Needle.",
            "Take the monorail from Westlake Center.",
        ])
        gateway = AssistantGateway(chat_model=model, registry=make_registry())
        session = ConversationSession()

        first = await gateway.process_message("Tell me about the Pacific Science Center.", session=session)
        second = await gateway.process_message("How do I get there?", session=session)

        assert first["session_id"] == second["session_id"] == session.session_id
        turns = model.call_history[1]["turns"]
        assert [t.role for t in turns] == [Role.USER, Role.ASSISTANT, Role.USER]
        assert turns[0].text == "Tell me about the Pacific Science Center."
        assert turns[2].text == "How do I get there?"
        assert session.history() == [
            {"role": "user", "text": "Tell me about the Pacific Science Center."},
            {"role": "assistant", "text": "The Pacific Science Center is next to the Space Needle."},
            {"role": "user", "text": "How do I get there?"},
            {"role": "assistant", "text": "Take the monorail from Westlake Center."},
        ]

    @pytest.mark.asyncio
    async def test_iteration_bound_applies_per_message(self):
        from orchestrator.gateway import AssistantGateway
        from orchestrator.llm import ScriptedChatModel

        model = ScriptedChatModel(default=tool_call("lookup"))
        gateway = AssistantGateway(chat_model=model, registry=make_registry(), max_iterations=2)
        session = gateway.get_session("s-1")

        first = await gateway.process_message("Do something", session=session)
        second = await gateway.process_message("Do it again", session=session)

        assert first["iterations"] == 2
        assert second["iterations"] == 2
        assert len(model.call_history) == 4

    def test_get_and_end_session(self):
        from orchestrator.gateway import AssistantGateway
        from orchestrator.llm import ScriptedChatModel

        gateway = AssistantGateway(chat_model=ScriptedChatModel(), registry=make_registry())

        session = gateway.get_session("s-1")

        assert gateway.get_session("s-1") is session
        assert gateway.get_session().session_id != "s-1"
        assert gateway.end_session("s-1") is True
        assert gateway.end_session("s-1") is False
        assert gateway.get_session("s-1") is not session

    @pytest.mark.asyncio
    async def test_attachments_are_recorded_on_user_turn(self):
        from orchestrator.gateway import AssistantGateway
        from orchestrator.llm import ScriptedChatModel
        from shared.models import AttachmentPart

        model = ScriptedChatModel(["Nice picture."])
        gateway = AssistantGateway(chat_model=model, registry=make_registry())
        attachment = AttachmentPart(mime_type="image/jpeg", uri="file:///tmp/storyboard.jpg")

        await gateway.process_message("What is in this image?", attachments=(attachment,))

        user_turn = model.call_history[0]["turns"][0]
        assert user_turn.parts == (TextPart(text="What is in this image?"), attachment)

    @pytest.mark.asyncio
    async def test_health_check(self):
        from orchestrator.gateway import AssistantGateway
        from orchestrator.llm import ScriptedChatModel

        gateway = AssistantGateway(chat_model=ScriptedChatModel(), registry=make_registry())

        health = await gateway.health_check()

        assert health["gateway"] == "healthy"
        assert health["provider"] == "mock"
        assert health["tool_count"] == 1

    def test_build_gateway_with_mock_provider(self):
        from orchestrator.gateway import build_gateway
        from shared.config import LLMSettings, Settings

        gateway = build_gateway(Settings(llm=LLMSettings(provider="mock")))

        assert "get_current_app_settings" in gateway.registry
        assert "update_app_settings" in gateway.registry
        assert gateway.loop.max_iterations == 5
