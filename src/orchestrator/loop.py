"""Orchestrator loop - the tool calling state machine.

Each round submits the session view to the chat model. A response without
a tool call terminates the loop; otherwise the first tool call is
dispatched, its result appended as a tool turn and the session resubmitted.

    AWAIT_RESPONSE -> TERMINATED                      (no tool call)
    AWAIT_RESPONSE -> DISPATCHING -> AWAIT_RESPONSE   (tool call)
    DISPATCHING    -> ABORTED                         (iteration bound reached)

Unknown tools, handler failures, transport failures and cancellation end the
loop in their own terminal states. Terminal states are never resumed.
"""

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

from shared.errors import HandlerFailure, LoopCancelled, TransportError, UnknownToolError
from shared.logging import get_logger
from shared.models import (
    ConversationTurn,
    LoopOutcome,
    LoopState,
    ToolInvocationRequest,
    ToolResult,
    ToolResultStatus,
)
from orchestrator.llm import ChatModel
from orchestrator.session import ConversationSession
from tool_registry import ToolContext, ToolRegistry

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ITERATIONS = 5


class _StepTimeout(Exception):
    pass


async def _suspend(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    cancel_event: Optional[asyncio.Event]
) -> T:
    """
    Await one suspension point, racing it against timeout and cancellation.

    Raises:
        LoopCancelled: If ``cancel_event`` fired first
        _StepTimeout: If ``timeout`` elapsed first
    """
    task = asyncio.ensure_future(awaitable)

    if cancel_event is None:
        try:
            return await asyncio.wait_for(task, timeout)
        except asyncio.TimeoutError as e:
            raise _StepTimeout() from e

    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass

    if cancel_event.is_set():
        raise LoopCancelled()
    raise _StepTimeout()


class ToolLoop:
    """
    Drives a multi-turn exchange with the chat model.

    One model round trip is outstanding at a time and at most one tool is
    dispatched per round. When a response carries several tool calls only
    the first is dispatched; the rest are logged and dropped.
    """

    def __init__(
        self,
        chat_model: ChatModel,
        registry: ToolRegistry,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        round_timeout: Optional[float] = None,
        tool_timeout: Optional[float] = None
    ) -> None:
        """
        Initialize the loop.

        Args:
            chat_model: Conversational model capability
            registry: Tool registry used for dispatch
            max_iterations: Maximum number of dispatched tool rounds
            round_timeout: Limit on each model round trip, in seconds
            tool_timeout: Limit on each tool dispatch, in seconds
        """
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        self.chat_model = chat_model
        self.registry = registry
        self.max_iterations = max_iterations
        self.round_timeout = round_timeout
        self.tool_timeout = tool_timeout

    async def run(
        self,
        session: ConversationSession,
        context: ToolContext,
        cancel_event: Optional[asyncio.Event] = None
    ) -> LoopOutcome:
        """
        Run the loop until a terminal state is reached.

        Args:
            session: Session seeded with the user's turn
            context: Context handed to tool handlers
            cancel_event: Optional external cancellation signal

        Returns:
            The terminal outcome
        """
        tools = self.registry.get_tools_for_llm() or None
        iterations = 0
        last_text: Optional[str] = None
        dispatched: list[str] = []
        state = LoopState.AWAIT_RESPONSE

        def finish(terminal: LoopState, text: Optional[str], error: Optional[str] = None) -> LoopOutcome:
            log = logger.info if terminal == LoopState.TERMINATED else logger.warning
            log(
                "Loop finished",
                state=terminal.value,
                from_state=state.value,
                iterations=iterations,
                error=error
            )
            return LoopOutcome(
                state=terminal,
                text=text,
                iterations=iterations,
                error=error,
                tool_calls=dispatched,
            )

        while True:
            state = LoopState.AWAIT_RESPONSE
            if cancel_event is not None and cancel_event.is_set():
                return finish(LoopState.CANCELLED, last_text, "cancelled")

            try:
                response = await self._round_trip(session, tools, cancel_event)
            except LoopCancelled:
                return finish(LoopState.CANCELLED, last_text, "cancelled")
            except TransportError as e:
                return finish(LoopState.TRANSPORT_ERROR, last_text, str(e))

            if response.text:
                last_text = response.text

            if not response.tool_calls:
                session.append(ConversationTurn.assistant(response.text))
                return finish(LoopState.TERMINATED, response.text or "")

            call = response.tool_calls[0]
            if len(response.tool_calls) > 1:
                logger.warning(
                    "Multiple tool calls in one round, dispatching the first only",
                    dispatched=call.name,
                    discarded=[c.name for c in response.tool_calls[1:]]
                )

            session.append(ConversationTurn.assistant(response.text, (call,)))

            state = LoopState.DISPATCHING
            iterations += 1
            logger.info("Dispatching tool", tool=call.name, iteration=iterations, state=state.value)

            try:
                result = await _suspend(
                    self.registry.dispatch(call.name, call.arguments, context, timeout=self.tool_timeout),
                    None,
                    cancel_event
                )
            except LoopCancelled:
                return finish(LoopState.CANCELLED, last_text, "cancelled")
            except UnknownToolError as e:
                self._append_error(session, ToolResult(
                    tool_name=call.name,
                    status=ToolResultStatus.NOT_FOUND,
                    error=str(e),
                    error_code="UNKNOWN_TOOL",
                ), call)
                return finish(LoopState.UNKNOWN_TOOL, last_text, str(e))
            except HandlerFailure as e:
                self._append_error(session, ToolResult(
                    tool_name=call.name,
                    status=ToolResultStatus.TIMEOUT if e.timed_out else ToolResultStatus.ERROR,
                    error=str(e),
                    error_code="TIMEOUT" if e.timed_out else "HANDLER_FAILURE",
                ), call)
                return finish(LoopState.HANDLER_FAILURE, last_text, str(e))

            session.append(ConversationTurn.tool_response(
                call.call_id,
                call.name,
                result.payload()
            ))
            dispatched.append(call.name)

            if iterations >= self.max_iterations:
                return finish(
                    LoopState.ABORTED,
                    last_text,
                    f"maximum of {self.max_iterations} tool rounds reached"
                )

    async def _round_trip(
        self,
        session: ConversationSession,
        tools: Optional[list[dict[str, Any]]],
        cancel_event: Optional[asyncio.Event]
    ):
        try:
            return await _suspend(
                self.chat_model.send(session.view(), tools),
                self.round_timeout,
                cancel_event
            )
        except _StepTimeout as e:
            raise TransportError(
                f"Model round trip timed out after {self.round_timeout}s",
                timed_out=True
            ) from e

    def _append_error(
        self,
        session: ConversationSession,
        result: ToolResult,
        call: ToolInvocationRequest
    ) -> None:
        """Record a failed dispatch as an error tool turn answering ``call``."""
        session.append(ConversationTurn.tool_response(
            call.call_id,
            call.name,
            result.payload(),
            is_error=True
        ))
