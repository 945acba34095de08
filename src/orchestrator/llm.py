"""Model client collaborators.

Conversational round trips and single-shot structured generation have
different contracts, so they are exposed as two capability interfaces:

- ``ChatModel``: accepts the session's turn history plus tool declarations
  and returns text or tool-call requests.
- ``StructuredModel``: accepts one prompt plus an output contract and
  returns raw text for the structured output validator.

Concrete providers use LlamaIndex (OpenAI / Azure OpenAI). Scripted
providers serve tests and the ``mock`` provider setting.
"""

import json
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Iterable, Optional, Union

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from shared.config import LLMSettings
from shared.errors import TransportError
from shared.logging import get_logger
from shared.models import (
    AttachmentPart,
    ConversationTurn,
    DataPart,
    ModelResponse,
    Role,
    StructuredOutputContract,
    TextPart,
    ToolInvocationRequest,
    ToolResponsePart,
)
from shared.schema import create_tool_schema

logger = get_logger(__name__)


class ChatModel(ABC):
    """
    Conversational, multi-turn model capability.

    The model receives only the declared tools and the session history; it
    outputs either a final text or a structured tool call. It never executes
    tools itself.
    """

    provider_name: str = "unknown"

    @abstractmethod
    async def send(
        self,
        turns: tuple[ConversationTurn, ...],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ModelResponse:
        """
        Submit the turn history for one round trip.

        Args:
            turns: Ordered session view
            tools: Available tools in OpenAI function format

        Returns:
            Model response with text and/or tool calls

        Raises:
            TransportError: If the provider failed after retries
        """
        pass


class StructuredModel(ABC):
    """Single-shot, schema-constrained model capability."""

    provider_name: str = "unknown"

    @abstractmethod
    async def generate(self, prompt: str, contract: StructuredOutputContract) -> str:
        """
        Generate raw text intended to match ``contract``.

        Raises:
            TransportError: If the provider failed after retries
        """
        pass


class _LlamaIndexProvider:
    """Lazy LlamaIndex LLM construction shared by both capabilities."""

    def __init__(self, settings: LLMSettings) -> None:
        self.settings = settings
        self.provider_name = settings.provider
        self._llm = None

    def _get_llm(self):
        """Lazy initialization of LlamaIndex LLM."""
        if self._llm is None:
            if self.settings.provider == "azure_openai":
                from llama_index.llms.azure_openai import AzureOpenAI

                self._llm = AzureOpenAI(
                    model=self.settings.model,
                    engine=self.settings.deployment_name or self.settings.model,
                    api_key=self.settings.api_key,
                    azure_endpoint=self.settings.api_base,
                    api_version=self.settings.api_version,
                    temperature=self.settings.temperature,
                    max_tokens=self.settings.max_tokens,
                    timeout=self.settings.request_timeout_seconds,
                )
            else:
                from llama_index.llms.openai import OpenAI

                self._llm = OpenAI(
                    model=self.settings.model,
                    api_key=self.settings.api_key,
                    api_base=self.settings.api_base,
                    temperature=self.settings.temperature,
                    max_tokens=self.settings.max_tokens,
                    timeout=self.settings.request_timeout_seconds,
                )
        return self._llm

    async def _achat(self, messages: list, **kwargs: Any):
        """Call the LLM with retries, translating failures to TransportError."""
        llm = self._get_llm()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.max_retries),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                reraise=True
            ):
                with attempt:
                    return await llm.achat(messages, **kwargs)
        except Exception as e:
            logger.error("LLM call failed", provider=self.provider_name, error=str(e))
            raise TransportError(f"LLM call failed: {e}") from e


def _render_part(part: Any) -> str:
    if isinstance(part, TextPart):
        return part.text
    if isinstance(part, DataPart):
        return json.dumps(part.data, default=str)
    if isinstance(part, AttachmentPart):
        return f"[attachment {part.mime_type}: {part.uri}]"
    return ""


def _parse_tool_call(raw: Any, index: int) -> ToolInvocationRequest:
    """Normalize an OpenAI-style tool call (object or dict)."""
    if isinstance(raw, dict):
        call_id = raw.get("id") or f"call_{index}"
        function = raw.get("function", {})
        name = function.get("name", "")
        arguments = function.get("arguments", "{}")
    else:
        call_id = getattr(raw, "id", None) or f"call_{index}"
        name = raw.function.name
        arguments = raw.function.arguments

    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            logger.warning("Undecodable tool call arguments", tool=name)
            arguments = {}
    if not isinstance(arguments, dict):
        arguments = {}

    return ToolInvocationRequest(name=name, arguments=arguments, call_id=call_id)


class LlamaIndexChatModel(_LlamaIndexProvider, ChatModel):
    """Conversational model backed by a LlamaIndex OpenAI-compatible LLM."""

    def __init__(self, settings: LLMSettings, system_prompt: Optional[str] = None) -> None:
        super().__init__(settings)
        self.system_prompt = system_prompt

    def _convert_turns(self, turns: tuple[ConversationTurn, ...]) -> list:
        """Convert session turns to LlamaIndex chat messages."""
        from llama_index.core.llms import ChatMessage, MessageRole

        result = []
        if self.system_prompt:
            result.append(ChatMessage(role=MessageRole.SYSTEM, content=self.system_prompt))

        for turn in turns:
            if turn.role == Role.TOOL:
                for part in turn.parts:
                    if isinstance(part, ToolResponsePart):
                        result.append(ChatMessage(
                            role=MessageRole.TOOL,
                            content=json.dumps(part.response, default=str),
                            additional_kwargs={"tool_call_id": part.call_id, "name": part.name},
                        ))
                continue

            content = "\n".join(filter(None, (_render_part(p) for p in turn.parts)))
            if turn.role == Role.USER:
                result.append(ChatMessage(role=MessageRole.USER, content=content))
                continue

            chat_msg = ChatMessage(role=MessageRole.ASSISTANT, content=content or None)
            if turn.tool_calls:
                chat_msg.additional_kwargs = {
                    "tool_calls": [
                        {
                            "id": call.call_id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments),
                            },
                        }
                        for call in turn.tool_calls
                    ]
                }
            result.append(chat_msg)

        return result

    async def send(
        self,
        turns: tuple[ConversationTurn, ...],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ModelResponse:
        """Generate a round trip using the configured LLM."""
        messages = self._convert_turns(turns)
        if tools:
            response = await self._achat(messages, tools=tools)
        else:
            response = await self._achat(messages)

        message = response.message
        raw_calls = message.additional_kwargs.get("tool_calls") or []
        tool_calls = [_parse_tool_call(tc, i) for i, tc in enumerate(raw_calls)]

        return ModelResponse(
            text=message.content,
            tool_calls=tool_calls,
            finish_reason="tool_calls" if tool_calls else "stop",
        )


class LlamaIndexStructuredModel(_LlamaIndexProvider, StructuredModel):
    """Single-shot JSON generation backed by a LlamaIndex LLM."""

    async def generate(self, prompt: str, contract: StructuredOutputContract) -> str:
        from llama_index.core.llms import ChatMessage, MessageRole

        schema = create_tool_schema(contract.fields)
        messages = [
            ChatMessage(
                role=MessageRole.SYSTEM,
                content=f"Respond only with a JSON object matching this schema: {json.dumps(schema)}"
            ),
            ChatMessage(role=MessageRole.USER, content=prompt),
        ]
        response = await self._achat(messages, response_format={"type": "json_object"})
        return response.message.content or ""


ScriptedReply = Union[ModelResponse, str, Exception]


class ScriptedChatModel(ChatModel):
    """Chat model replaying scripted responses, for tests and offline runs."""

    provider_name = "mock"

    def __init__(
        self,
        responses: Iterable[ScriptedReply] = (),
        default: Optional[ModelResponse] = None
    ) -> None:
        self._responses: deque[ScriptedReply] = deque(responses)
        self.default = default or ModelResponse(text="This is a mock response.")
        self.call_history: list[dict[str, Any]] = []

    def set_next_response(self, response: ScriptedReply) -> None:
        """Queue a response to return."""
        self._responses.append(response)

    async def send(
        self,
        turns: tuple[ConversationTurn, ...],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ModelResponse:
        self.call_history.append({"turns": turns, "tools": tools})

        reply = self._responses.popleft() if self._responses else self.default
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return ModelResponse(text=reply)

        calls = [
            call if call.call_id else call.model_copy(
                update={"call_id": f"call_{len(self.call_history)}_{i}"}
            )
            for i, call in enumerate(reply.tool_calls)
        ]
        return reply.model_copy(update={"tool_calls": calls})


class ScriptedStructuredModel(StructuredModel):
    """Structured model replaying scripted raw outputs."""

    provider_name = "mock"

    def __init__(self, responses: Iterable[Union[str, Exception]] = (), default: str = "{}") -> None:
        self._responses: deque[Union[str, Exception]] = deque(responses)
        self.default = default
        self.call_history: list[dict[str, Any]] = []

    def set_next_response(self, response: Union[str, Exception]) -> None:
        self._responses.append(response)

    async def generate(self, prompt: str, contract: StructuredOutputContract) -> str:
        self.call_history.append({"prompt": prompt, "contract": contract})
        reply = self._responses.popleft() if self._responses else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply


_SUPPORTED_PROVIDERS = ("openai", "azure_openai", "mock")


def _check_provider(settings: LLMSettings) -> None:
    if settings.provider not in _SUPPORTED_PROVIDERS:
        raise ValueError(
            f"Unsupported LLM provider: {settings.provider}. "
            f"Supported: {list(_SUPPORTED_PROVIDERS)}"
        )


def create_chat_model(settings: LLMSettings, system_prompt: Optional[str] = None) -> ChatModel:
    """
    Factory function to create the conversational model client.

    Raises:
        ValueError: If provider is not supported
    """
    _check_provider(settings)
    logger.info("Creating chat model", provider=settings.provider, model=settings.model)
    if settings.provider == "mock":
        return ScriptedChatModel()
    return LlamaIndexChatModel(settings, system_prompt=system_prompt)


def create_structured_model(settings: LLMSettings) -> StructuredModel:
    """
    Factory function to create the single-shot model client.

    Raises:
        ValueError: If provider is not supported
    """
    _check_provider(settings)
    if settings.provider == "mock":
        return ScriptedStructuredModel()
    return LlamaIndexStructuredModel(settings)
