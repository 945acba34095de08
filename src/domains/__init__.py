"""Tool domains.

Each domain declares its tools and binds handlers into a ToolRegistry:
- settings: adjustable application settings assistant
- queries: single-shot classification and rephrasing helpers
"""

from domains.settings import (
    SYSTEM_PROMPT,
    AppSettings,
    SettingsStore,
    register_settings_tools,
)
from domains.queries import QueryClassification, classify_query, rephrase_query

__all__ = [
    "SYSTEM_PROMPT",
    "AppSettings",
    "SettingsStore",
    "register_settings_tools",
    "QueryClassification",
    "classify_query",
    "rephrase_query",
]
