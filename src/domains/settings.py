"""Settings Domain - adjustable application settings assistant.

The model reads the current accessibility settings, then asks for an
update. The update tool makes a nested single-shot call whose output is
validated and clamped before it is stored, so a misbehaving model can
never push a setting outside its supported range.
"""

import json
import threading
from typing import Any

from pydantic import BaseModel, Field

from shared.logging import get_logger
from shared.models import FieldSpec, FieldType, StructuredOutputContract, ToolDefinition
from tool_registry import ToolContext, ToolRegistry

logger = get_logger(__name__)


class AppSettings(BaseModel):
    """Application settings, focused on accessibility."""
    darkMode: bool = False
    fontSizeFactor: float = Field(default=1.0, ge=0.8, le=2.0)
    notificationsEnabled: bool = True
    notificationVolume: float = Field(default=0.7, ge=0.0, le=1.0)
    reduceMotion: bool = False
    autoPlayVideos: bool = True
    highContrast: bool = False
    textToSpeechRate: float = Field(default=1.0, ge=0.5, le=2.0)


class SettingDefinition(BaseModel):
    """Describes one setting for the model."""
    key: str
    description: str
    examples: list[str]
    type: FieldType
    minimum: float | None = None
    maximum: float | None = None


SETTING_DEFINITIONS: list[SettingDefinition] = [
    SettingDefinition(
        key="darkMode",
        type=FieldType.BOOLEAN,
        description=(
            "Display mode. Boolean: 'true' for dark background with light text, 'false' for light "
            "background with dark text. Useful for light sensitivity or preference."
        ),
        examples=["Enable dark mode", "Switch to light mode", "My eyes hurt from the bright screen", "I have photophobia"],
    ),
    SettingDefinition(
        key="fontSizeFactor",
        type=FieldType.NUMBER,
        minimum=0.8,
        maximum=2.0,
        description=(
            "Text size multiplier. Number between 0.8 (smaller) and 2.0 (larger), default 1.0. "
            "Increases or decreases default text size."
        ),
        examples=["Make text bigger", "Increase font size", "Shrink the text", "I find it hard to read this"],
    ),
    SettingDefinition(
        key="notificationsEnabled",
        type=FieldType.BOOLEAN,
        description="Master toggle for all app notifications. Boolean: 'true' to allow notifications, 'false' to block all.",
        examples=["Turn off notifications", "Enable alerts", "Stop all pop-ups", "I don't want to be disturbed"],
    ),
    SettingDefinition(
        key="notificationVolume",
        type=FieldType.NUMBER,
        minimum=0.0,
        maximum=1.0,
        description="Volume for notification sounds. Number between 0.0 (muted) and 1.0 (maximum).",
        examples=["Make notifications louder", "Lower the alert volume", "Mute notification sounds", "I can't hear the alerts"],
    ),
    SettingDefinition(
        key="reduceMotion",
        type=FieldType.BOOLEAN,
        description=(
            "Minimizes animations and motion effects. Boolean: 'true' to reduce motion, 'false' for "
            "standard animations. Helps with motion sickness or vestibular disorders."
        ),
        examples=["Reduce animations", "Turn off motion effects", "The animations make me dizzy", "Stop things from moving so much"],
    ),
    SettingDefinition(
        key="autoPlayVideos",
        type=FieldType.BOOLEAN,
        description="Controls if videos play automatically. Boolean: 'true' to autoplay, 'false' to require manual play.",
        examples=["Stop videos from playing automatically", "Enable video autoplay", "Don't play videos unless I click"],
    ),
    SettingDefinition(
        key="highContrast",
        type=FieldType.BOOLEAN,
        description=(
            "Increases color contrast between text and background. Boolean: 'true' for high contrast "
            "mode, 'false' for standard contrast. Aids users with low vision."
        ),
        examples=["Enable high contrast mode", "Increase contrast", "Make text stand out more", "Colors are hard to distinguish"],
    ),
    SettingDefinition(
        key="textToSpeechRate",
        type=FieldType.NUMBER,
        minimum=0.5,
        maximum=2.0,
        description="Speed for screen reader voice. Number between 0.5 (slower) and 2.0 (faster), default 1.0.",
        examples=["Speak faster", "Slow down the reading speed", "Make the text-to-speech slower"],
    ),
]


SETTINGS_CONTRACT = StructuredOutputContract(
    name="app_settings",
    fields=tuple(
        FieldSpec(
            name=d.key,
            type=d.type,
            description=d.description,
            minimum=d.minimum,
            maximum=d.maximum,
        )
        for d in SETTING_DEFINITIONS
    ),
)


SYSTEM_PROMPT = """You are an AI assistant helping users manage application settings.

WHEN THE USER EXPRESSES A DESIRE TO CHANGE SETTINGS (either explicitly like "increase font size" or implicitly like "it's hard to read" or "my eyes are sensitive"):
1. Get Current State: First, call 'get_current_app_settings' to retrieve the current settings values.
2. Calculate New State: Next, call 'update_app_settings'. Pass the complete 'currentSettings' object you received and the user's original request as 'userRequest'.
3. Confirm/Inform: After 'update_app_settings' returns the new settings, tell the user clearly which settings changed. If nothing needed to change, say so.

For general chat or questions not related to settings, respond conversationally.
"""


class SettingsStore:
    """In-memory settings storage shared by the settings tools."""

    def __init__(self, initial: AppSettings | None = None) -> None:
        self._settings = initial or AppSettings()
        self._lock = threading.Lock()

    def get(self) -> AppSettings:
        with self._lock:
            return self._settings.model_copy()

    def update(self, settings: AppSettings) -> AppSettings:
        with self._lock:
            self._settings = settings.model_copy()
        logger.info("Settings stored", settings=settings.model_dump())
        return settings


def build_update_prompt(current: AppSettings, user_request: str) -> str:
    """Build the single-shot prompt that computes the new settings."""
    values = current.model_dump()
    descriptions = "\n\n".join(
        f'Setting Key: "{d.key}"\n'
        f"Description: {d.description}\n"
        f"Current Value: {json.dumps(values[d.key])}\n"
        f"Examples for Change: {', '.join(d.examples)}"
        for d in SETTING_DEFINITIONS
    )

    return f"""Analyze the user request based on the current application settings and their descriptions provided below. Determine which settings need to change and calculate their new values based on the request (explicit or implicit). Infer reasonable changes (e.g., increase font factor by 0.2 for 'bigger font', set dark mode to true for 'light sensitivity'). Adhere to value ranges/types mentioned in descriptions.

Return ONLY a single JSON object representing the *complete set* of application settings with the updated values.

Current Settings Object:
{json.dumps(values, indent=2)}

Setting Descriptions:
---
{descriptions}
---

User Request: "{user_request}"
"""


GET_SETTINGS_TOOL = ToolDefinition(
    name="get_current_app_settings",
    description="Retrieves the current values of all application settings.",
    result_model=AppSettings,
)

UPDATE_SETTINGS_TOOL = ToolDefinition(
    name="update_app_settings",
    description=(
        "Calculates and applies updated application settings based on the user's request and the "
        "current settings state. Should be called after getting the current settings."
    ),
    parameters=(
        FieldSpec(
            name="currentSettings",
            type=FieldType.OBJECT,
            description="The current state of all application settings, obtained via get_current_app_settings.",
        ),
        FieldSpec(
            name="userRequest",
            type=FieldType.STRING,
            description="The original user query or statement indicating desired changes (can be explicit or implicit).",
        ),
    ),
    result_model=AppSettings,
)


class SettingsTools:
    """Handlers for the settings tools, bound to one store."""

    def __init__(self, store: SettingsStore) -> None:
        self.store = store

    def get_current_app_settings(self, arguments: dict[str, Any], context: ToolContext) -> AppSettings:
        settings = self.store.get()
        logger.info("Current settings read", request_id=context.request_id)
        return settings

    async def update_app_settings(self, arguments: dict[str, Any], context: ToolContext) -> AppSettings:
        # The store is authoritative; the model's echoed copy may be stale or altered.
        current = self.store.get()
        user_request = context.latest_user_text() or str(arguments.get("userRequest", ""))

        if context.structured_model is None:
            logger.warning("No structured model available, keeping current settings")
            return current

        proposed = await context.validator.generate(
            context.structured_model,
            build_update_prompt(current, user_request),
            SETTINGS_CONTRACT,
            fallback=current,
        )
        if proposed is current:
            logger.info("Returning current settings due to unusable proposal")
            return current

        return self.store.update(AppSettings.model_validate(proposed))


def register_settings_tools(registry: ToolRegistry, store: SettingsStore) -> SettingsTools:
    """Register the settings tools against ``store``."""
    tools = SettingsTools(store)
    registry.register(GET_SETTINGS_TOOL, tools.get_current_app_settings)
    registry.register(UPDATE_SETTINGS_TOOL, tools.update_app_settings)
    return tools
