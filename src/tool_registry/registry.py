"""Tool Registry and Dispatcher.

Maps declared tools to local handlers and routes invocation requests to
them. Dispatch resolves names only: argument-shape checks belong to the
handlers, which often need business clamping beyond generic type checks.
"""

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from shared.errors import DuplicateToolError, HandlerFailure, UnknownToolError
from shared.logging import get_logger
from shared.models import ToolDefinition, ToolResult, ToolResultStatus
from shared.schema import StructuredOutputValidator, create_tool_schema

logger = get_logger(__name__)


class ToolContext(BaseModel):
    """
    Context handed to every tool handler.

    Carries the interaction's session (to be treated as read-only), the
    single-shot model capability and the validator for handlers that make
    nested structured calls.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    request_id: str
    session: Any = None
    structured_model: Any = None
    validator: StructuredOutputValidator

    def latest_user_text(self) -> Optional[str]:
        if self.session is None:
            return None
        return self.session.last_user_text()


ToolHandler = Callable[[dict[str, Any], ToolContext], Union[Any, Awaitable[Any]]]


class ToolRegistry:
    """
    Registry of tool definitions and their handlers.

    Responsibilities:
    - Register tools, rejecting duplicate names
    - Supply tool declarations to the model
    - Dispatch invocation requests to the bound handler
    """

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolDefinition, ToolHandler]] = {}
        self._frozen = False

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        """
        Register a tool and its handler.

        Raises:
            DuplicateToolError: If the name is already registered
            RuntimeError: If the registry has been frozen
        """
        if self._frozen:
            raise RuntimeError("Tool registry is frozen")

        if definition.name in self._tools:
            raise DuplicateToolError(definition.name)

        self._tools[definition.name] = (definition, handler)
        logger.info("Tool registered", tool=definition.name)

    def freeze(self) -> None:
        """Make the registry read-only so it can be shared across interactions."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[ToolDefinition]:
        entry = self._tools.get(name)
        return entry[0] if entry else None

    def list_tools(self) -> list[ToolDefinition]:
        return [definition for definition, _ in self._tools.values()]

    def get_tools_for_llm(self) -> list[dict[str, Any]]:
        """Tool declarations in OpenAI function calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": definition.name,
                    "description": definition.description,
                    "parameters": create_tool_schema(definition.parameters),
                },
            }
            for definition in self.list_tools()
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def dispatch(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolContext,
        timeout: Optional[float] = None
    ) -> ToolResult:
        """
        Invoke the handler bound to ``name``.

        Args:
            name: Tool name from the invocation request
            arguments: Arguments, passed to the handler verbatim
            context: Handler context
            timeout: Optional limit on handler execution, in seconds

        Returns:
            Successful tool result carrying the tool's result variant

        Raises:
            UnknownToolError: If no tool matches ``name``
            HandlerFailure: If the handler failed, timed out, or returned a
                value outside its declared result variant
        """
        entry = self._tools.get(name)
        if entry is None:
            logger.warning("Unknown tool requested", tool=name, request_id=context.request_id)
            raise UnknownToolError(name)

        definition, handler = entry
        start_time = time.perf_counter()

        try:
            if timeout is not None:
                raw = await asyncio.wait_for(self._invoke(handler, arguments, context), timeout)
            else:
                raw = await self._invoke(handler, arguments, context)
        except asyncio.TimeoutError as e:
            logger.error("Tool timed out", tool=name, timeout=timeout)
            raise HandlerFailure(name, f"timed out after {timeout}s", cause=e, timed_out=True) from e
        except HandlerFailure:
            raise
        except Exception as e:
            logger.error("Tool execution failed", tool=name, error=str(e), exc_info=True)
            raise HandlerFailure(name, str(e), cause=e) from e

        data = self._coerce_result(definition, raw)

        return ToolResult(
            tool_name=name,
            status=ToolResultStatus.SUCCESS,
            data=data,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
        )

    async def _invoke(
        self,
        handler: ToolHandler,
        arguments: dict[str, Any],
        context: ToolContext
    ) -> Any:
        """Run async handlers directly and sync handlers in the default executor."""
        if inspect.iscoroutinefunction(handler):
            return await handler(arguments, context)

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, handler, arguments, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _coerce_result(self, definition: ToolDefinition, raw: Any) -> Any:
        """Coerce handler output into the tool's declared result variant."""
        result_model = definition.result_model
        if result_model is None or isinstance(raw, result_model):
            return raw

        try:
            return result_model.model_validate(raw)
        except ValidationError as e:
            logger.error(
                "Tool returned an undeclared result shape",
                tool=definition.name,
                expected=result_model.__name__
            )
            raise HandlerFailure(
                definition.name,
                f"result does not match {result_model.__name__}",
                cause=e
            ) from e
