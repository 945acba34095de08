"""Tool registry - declaration, lookup and dispatch of local tools.

Tools are registered once at startup with a handler, after which the
registry is frozen and may be shared read-only between interactions.
"""

from tool_registry.registry import ToolContext, ToolHandler, ToolRegistry

__all__ = [
    "ToolContext",
    "ToolHandler",
    "ToolRegistry",
]
