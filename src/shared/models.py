"""Core data models for the tool loop.

This module defines the shared data structures exchanged between the
session, the model clients, the tool registry and the orchestrator loop.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    """Author of a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TextPart(BaseModel):
    """Plain text content."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    text: str


class DataPart(BaseModel):
    """A structured (JSON-like) value."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["data"] = "data"
    data: Any


class AttachmentPart(BaseModel):
    """Reference to binary content; the bytes themselves are never held here."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["attachment"] = "attachment"
    mime_type: str
    uri: str


class ToolCallPart(BaseModel):
    """A tool invocation requested by the assistant."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["tool_call"] = "tool_call"
    call_id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResponsePart(BaseModel):
    """The result of a tool invocation, fed back to the model."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["tool_response"] = "tool_response"
    call_id: str
    name: str
    response: Any = None
    is_error: bool = False


Part = Annotated[
    Union[TextPart, DataPart, AttachmentPart, ToolCallPart, ToolResponsePart],
    Field(discriminator="kind"),
]


class ConversationTurn(BaseModel):
    """
    A single role-tagged message unit.

    Turns are immutable once created; the session only ever appends them.
    """
    model_config = ConfigDict(frozen=True)

    role: Role
    parts: tuple[Part, ...] = ()

    @classmethod
    def user(
        cls,
        text: str,
        attachments: tuple["AttachmentPart", ...] = ()
    ) -> "ConversationTurn":
        """Build a user turn from text and optional attachment references."""
        return cls(role=Role.USER, parts=(TextPart(text=text), *attachments))

    @classmethod
    def assistant(
        cls,
        text: Optional[str] = None,
        tool_calls: tuple["ToolInvocationRequest", ...] = ()
    ) -> "ConversationTurn":
        """Build an assistant turn, optionally recording requested tool calls."""
        parts: list[Any] = []
        if text:
            parts.append(TextPart(text=text))
        for call in tool_calls:
            parts.append(ToolCallPart(
                call_id=call.call_id,
                name=call.name,
                arguments=call.arguments
            ))
        return cls(role=Role.ASSISTANT, parts=tuple(parts))

    @classmethod
    def tool_response(
        cls,
        call_id: str,
        name: str,
        response: Any,
        is_error: bool = False
    ) -> "ConversationTurn":
        """Build a tool-role turn carrying a result or an error payload."""
        return cls(
            role=Role.TOOL,
            parts=(ToolResponsePart(
                call_id=call_id,
                name=name,
                response=response,
                is_error=is_error
            ),)
        )

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]


class FieldType(str, Enum):
    """JSON value types a declared field may take."""
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class FieldSpec(BaseModel):
    """
    Declaration of a single named field.

    Used both for tool parameter schemas and for structured output contracts.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    type: FieldType = FieldType.STRING
    description: str = ""
    required: bool = True
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    enum: Optional[tuple[Any, ...]] = None

    @property
    def is_ranged(self) -> bool:
        return self.type in (FieldType.NUMBER, FieldType.INTEGER) and (
            self.minimum is not None or self.maximum is not None
        )


class ToolDefinition(BaseModel):
    """
    Declaration of a tool available to the model.

    ``result_model`` names the closed result variant the tool produces; the
    dispatcher coerces handler output into it.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1, description="Unique, stable tool name")
    description: str = Field(..., description="Clear description for LLM usage")
    parameters: tuple[FieldSpec, ...] = ()
    result_model: Optional[type[BaseModel]] = None


class ToolInvocationRequest(BaseModel):
    """A tool call parsed from a model response."""
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    call_id: str = ""


class ModelResponse(BaseModel):
    """Response from a conversational model round trip."""
    text: Optional[str] = None
    tool_calls: list[ToolInvocationRequest] = Field(default_factory=list)
    finish_reason: str = "stop"

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class ToolResultStatus(str, Enum):
    """Status of tool execution."""
    SUCCESS = "success"
    ERROR = "error"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"


class ToolResult(BaseModel):
    """
    Result of a tool execution.

    ``data`` holds the tool's result variant (a pydantic model when the tool
    declares one).
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    tool_name: str
    status: ToolResultStatus
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    execution_time_ms: float = 0

    def payload(self) -> Any:
        """JSON-able value written into the session as the tool response."""
        if self.status != ToolResultStatus.SUCCESS:
            return {"error": self.error or "Unknown error", "code": self.error_code}
        if isinstance(self.data, BaseModel):
            return self.data.model_dump(mode="json")
        return self.data


class StructuredOutputContract(BaseModel):
    """Schema for a single-shot, schema-constrained generation."""
    model_config = ConfigDict(frozen=True)

    name: str = "response"
    fields: tuple[FieldSpec, ...]

    def field(self, name: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None


class LoopState(str, Enum):
    """States of the orchestrator loop."""
    AWAIT_RESPONSE = "await_response"
    DISPATCHING = "dispatching"
    # Terminal states
    TERMINATED = "terminated"
    ABORTED = "aborted"
    UNKNOWN_TOOL = "unknown_tool"
    HANDLER_FAILURE = "handler_failure"
    TRANSPORT_ERROR = "transport_error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (LoopState.AWAIT_RESPONSE, LoopState.DISPATCHING)


class LoopOutcome(BaseModel):
    """Terminal result of one orchestrator run."""
    state: LoopState
    text: Optional[str] = None
    iterations: int = 0
    error: Optional[str] = None
    tool_calls: list[str] = Field(default_factory=list)

    @field_validator("state")
    @classmethod
    def _must_be_terminal(cls, value: LoopState) -> LoopState:
        if not value.is_terminal:
            raise ValueError(f"{value.value} is not a terminal loop state")
        return value

    @property
    def completed(self) -> bool:
        return self.state == LoopState.TERMINATED
