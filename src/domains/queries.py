"""Query Domain - single-shot helpers for incoming user queries.

Neither helper is conversational: each sends one prompt, constrained by an
output contract, and returns ``None`` when the model's answer is unusable.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from shared.logging import get_logger
from shared.models import FieldSpec, FieldType, StructuredOutputContract
from shared.schema import StructuredOutputValidator

logger = get_logger(__name__)


class QueryClassification(str, Enum):
    """Intent categories for incoming queries."""
    INFORMATION_SEEKING = "INFORMATION_SEEKING"
    UPDATE_APP_SETTINGS = "UPDATE_APP_SETTINGS"
    OTHER = "OTHER"


CLASSIFICATION_DESCRIPTIONS: dict[QueryClassification, tuple[str, list[str]]] = {
    QueryClassification.INFORMATION_SEEKING: (
        "The user is asking for factual information or explanations.",
        ["What is the capital of France?", "Explain how photosynthesis works."],
    ),
    QueryClassification.UPDATE_APP_SETTINGS: (
        "The user wants to modify settings or preferences within an application, such as dark "
        "mode, font size or notification volume, explicitly or by describing a need.",
        [
            "Turn on dark mode.",
            "Increase the font size.",
            "Mute notifications.",
            "I have light sensitivity.",
            "I have difficulty reading small text.",
        ],
    ),
    QueryClassification.OTHER: (
        "The user's query does not fit into any of the other defined categories.",
        [],
    ),
}

CLASSIFICATION_CONTRACT = StructuredOutputContract(
    name="query_classification",
    fields=(
        FieldSpec(
            name="queryClassification",
            type=FieldType.STRING,
            enum=tuple(c.value for c in QueryClassification),
        ),
        FieldSpec(name="reason", type=FieldType.STRING),
    ),
)

REPHRASE_CONTRACT = StructuredOutputContract(
    name="rephrased_query",
    fields=(
        FieldSpec(
            name="rephrasedQuery",
            type=FieldType.STRING,
            description="The precise, augmented query suitable for a routing engine.",
        ),
        FieldSpec(
            name="reason",
            type=FieldType.STRING,
            description="Brief explanation of corrections and augmentations applied.",
        ),
    ),
)


class QueryContext(BaseModel):
    """Application context used to refine a query."""
    user_profile: str = ""
    current_location: str = ""
    history: list[dict[str, str]] = Field(default_factory=list)


async def classify_query(
    model: Any,
    query: str,
    validator: Optional[StructuredOutputValidator] = None
) -> Optional[dict[str, Any]]:
    """
    Classify a user query into one of ``QueryClassification``.

    Returns:
        ``{"queryClassification": ..., "reason": ...}`` or None
    """
    validator = validator or StructuredOutputValidator()
    details = "\n- ".join(
        f"{c.value}: {description} (Examples: {', '.join(examples)})"
        for c, (description, examples) in CLASSIFICATION_DESCRIPTIONS.items()
    )
    prompt = f"""Classify the following user query into the category that best describes it:
- {details}

User Query: "{query}"

Return a JSON object with a field "queryClassification" holding the category and a field "reason" explaining why it matches."""

    result = await validator.generate(model, prompt, CLASSIFICATION_CONTRACT, fallback=None)
    if result is not None:
        logger.info("Query classified", classification=result["queryClassification"])
    return result


async def rephrase_query(
    model: Any,
    query: str,
    context: QueryContext,
    validator: Optional[StructuredOutputValidator] = None
) -> Optional[dict[str, Any]]:
    """
    Correct and augment a user query using profile, history and location.

    Returns:
        ``{"rephrasedQuery": ..., "reason": ...}`` or None
    """
    validator = validator or StructuredOutputValidator()
    history = "\n".join(f"{m.get('role', 'user')}: {m.get('text', '')}" for m in context.history)
    prompt = f"""Refine the user query so it is precise and actionable, considering the user's profile, conversation history and location.

1. Correct errors that make the query unclear.
2. Resolve ambiguous references ("there", "it") using the conversation history.
3. Augment the query with relevant details from the context, especially accessibility needs from the profile.
4. Explain the changes.

[User Profile]
{context.user_profile}

[Conversation History]
{history}

[Current Location]
{context.current_location}

User Query to Refine: "{query}"

Return a JSON object with "rephrasedQuery" and "reason"."""

    result = await validator.generate(model, prompt, REPHRASE_CONTRACT, fallback=None)
    if result is not None and not result["rephrasedQuery"].strip():
        logger.warning("Rephrased query is empty")
        return None
    return result
