"""Shared models, configuration, logging and validation for the tool loop."""

from shared.models import (
    ConversationTurn,
    FieldSpec,
    LoopOutcome,
    LoopState,
    ModelResponse,
    StructuredOutputContract,
    ToolDefinition,
    ToolInvocationRequest,
    ToolResult,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging
from shared.schema import StructuredOutputValidator

__all__ = [
    "ConversationTurn",
    "FieldSpec",
    "LoopOutcome",
    "LoopState",
    "ModelResponse",
    "StructuredOutputContract",
    "ToolDefinition",
    "ToolInvocationRequest",
    "ToolResult",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
    "StructuredOutputValidator",
]
