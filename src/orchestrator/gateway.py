"""Assistant Gateway - runs one interaction end to end.

The gateway coordinates:
- Creating or continuing an in-memory session
- Running the orchestrator loop against the tool registry
- Turning the loop outcome into a user-facing response
"""

import asyncio
import uuid
from typing import Any, Optional

from shared.config import Settings
from shared.logging import bind_context, get_logger, unbind_context
from shared.models import AttachmentPart, ConversationTurn, LoopOutcome, LoopState
from shared.schema import StructuredOutputValidator
from orchestrator.llm import ChatModel, StructuredModel, create_chat_model, create_structured_model
from orchestrator.loop import DEFAULT_MAX_ITERATIONS, ToolLoop
from orchestrator.session import ConversationSession
from tool_registry import ToolContext, ToolRegistry

logger = get_logger(__name__)


INCOMPLETE_NOTICE = "Note: the request did not fully complete."

FAILURE_MESSAGES = {
    LoopState.UNKNOWN_TOOL: "The assistant requested a capability that is not available.",
    LoopState.HANDLER_FAILURE: "A tool failed while handling the request.",
    LoopState.TRANSPORT_ERROR: "The language model could not be reached.",
    LoopState.CANCELLED: "The request was cancelled.",
}


class AssistantGateway:
    """
    Entry point for chat interactions.

    Each message runs one interaction, either on a fresh session or on a
    caller-held one. The registry is frozen on construction so concurrent
    interactions can share it safely.
    """

    def __init__(
        self,
        chat_model: ChatModel,
        registry: ToolRegistry,
        structured_model: Optional[StructuredModel] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        round_timeout: Optional[float] = None,
        tool_timeout: Optional[float] = None,
        validator: Optional[StructuredOutputValidator] = None
    ) -> None:
        """
        Initialize the gateway.

        Args:
            chat_model: Conversational model capability
            registry: Tool registry with all tools registered
            structured_model: Single-shot model capability for tool handlers
            max_iterations: Maximum dispatched tool rounds per interaction
            round_timeout: Limit on each model round trip, in seconds
            tool_timeout: Limit on each tool dispatch, in seconds
            validator: Structured output validator shared by handlers
        """
        self.chat_model = chat_model
        self.structured_model = structured_model
        self.registry = registry
        self.registry.freeze()
        self.validator = validator or StructuredOutputValidator()
        self.loop = ToolLoop(
            chat_model,
            registry,
            max_iterations=max_iterations,
            round_timeout=round_timeout,
            tool_timeout=tool_timeout,
        )
        self._sessions: dict[str, ConversationSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def process_message(
        self,
        user_message: str,
        attachments: tuple[AttachmentPart, ...] = (),
        cancel_event: Optional[asyncio.Event] = None,
        session: Optional[ConversationSession] = None
    ) -> dict[str, Any]:
        """
        Process a user message and generate a response.

        Args:
            user_message: User's input message
            attachments: Optional binary attachment references
            cancel_event: Optional external cancellation signal
            session: Existing session to continue; a fresh one is created if
                omitted

        Returns:
            Response containing the assistant message and outcome metadata
        """
        interaction_id = str(uuid.uuid4())
        bind_context(interaction_id=interaction_id)
        try:
            if session is None:
                session = ConversationSession(session_id=interaction_id)

            logger.info(
                "Processing message",
                session_id=session.session_id,
                length=len(user_message),
                prior_turns=len(session)
            )

            async with self._lock_for(session.session_id):
                session.append(ConversationTurn.user(user_message, attachments))

                context = ToolContext(
                    request_id=interaction_id,
                    session=session,
                    structured_model=self.structured_model,
                    validator=self.validator,
                )
                outcome = await self.loop.run(session, context, cancel_event=cancel_event)

            return {
                "interaction_id": interaction_id,
                "session_id": session.session_id,
                "response": self._format_response(outcome),
                "completed": outcome.completed,
                "state": outcome.state.value,
                "iterations": outcome.iterations,
                "error": outcome.error,
                "transcript": session.to_transcript(),
            }
        finally:
            unbind_context("interaction_id")

    def get_session(self, session_id: Optional[str] = None) -> ConversationSession:
        """
        Look up an in-memory session, creating it if unknown.

        Sessions are never persisted; they are lost when the process exits.
        """
        session_id = session_id or str(uuid.uuid4())
        session = self._sessions.get(session_id)
        if session is None:
            session = ConversationSession(session_id=session_id)
            self._sessions[session_id] = session
            logger.info("Session created", session_id=session_id)
        return session

    def end_session(self, session_id: str) -> bool:
        """Forget a session. Returns False if it was unknown."""
        self._locks.pop(session_id, None)
        return self._sessions.pop(session_id, None) is not None

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        """Serialize interactions that share one session."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _format_response(self, outcome: LoopOutcome) -> str:
        """Render an outcome for the user, flagging anything incomplete."""
        if outcome.completed:
            return outcome.text or "I apologize, but I couldn't generate a response."

        if outcome.state == LoopState.ABORTED:
            if outcome.text:
                return f"{outcome.text}\n\n{INCOMPLETE_NOTICE}"
            return (
                "I apologize, but I wasn't able to complete the task within the allowed number of steps. "
                f"{INCOMPLETE_NOTICE}"
            )

        message = FAILURE_MESSAGES.get(outcome.state, "The request failed.")
        if outcome.error:
            message = f"{message} ({outcome.error})"
        return f"{message} {INCOMPLETE_NOTICE}"

    async def health_check(self) -> dict[str, Any]:
        """Report gateway configuration."""
        return {
            "gateway": "healthy",
            "provider": self.chat_model.provider_name,
            "tool_count": len(self.registry),
            "max_iterations": self.loop.max_iterations,
            "malformed_outputs": self.validator.failures,
            "active_sessions": len(self._sessions),
        }


def build_gateway(settings: Settings) -> AssistantGateway:
    """Wire the default settings-assistant domain into a gateway."""
    from domains.settings import SYSTEM_PROMPT, SettingsStore, register_settings_tools

    registry = ToolRegistry()
    register_settings_tools(registry, SettingsStore())

    system_prompt = settings.orchestrator.system_prompt or SYSTEM_PROMPT
    return AssistantGateway(
        chat_model=create_chat_model(settings.llm, system_prompt=system_prompt),
        structured_model=create_structured_model(settings.llm),
        registry=registry,
        max_iterations=settings.orchestrator.max_iterations,
        round_timeout=settings.orchestrator.round_timeout_seconds,
        tool_timeout=settings.orchestrator.tool_timeout_seconds,
    )
