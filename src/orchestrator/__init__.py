"""Orchestrator.

Holds the conversation session, the model client capabilities, the tool
calling loop and the gateway that runs one interaction.
"""

from orchestrator.llm import ChatModel, StructuredModel, create_chat_model, create_structured_model
from orchestrator.session import ConversationSession
from orchestrator.loop import ToolLoop
from orchestrator.gateway import AssistantGateway

__all__ = [
    "ChatModel",
    "StructuredModel",
    "create_chat_model",
    "create_structured_model",
    "ConversationSession",
    "ToolLoop",
    "AssistantGateway",
]
