"""JSON Schema utilities and the structured output validator.

Model-produced JSON is a best-effort hint, never a guarantee. The validator
parses it, checks it against a declared contract and clamps ranged numeric
fields, falling back to a caller-supplied value whenever the payload is
unusable.
"""

import json
import math
from typing import TYPE_CHECKING, Any, Iterable, Optional, TypeVar

from jsonschema import Draft7Validator

from shared.errors import MalformedOutput, TransportError
from shared.logging import get_logger
from shared.models import FieldSpec, FieldType, StructuredOutputContract

if TYPE_CHECKING:
    from orchestrator.llm import StructuredModel

logger = get_logger(__name__)

T = TypeVar("T")


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = list(validator.iter_errors(data))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


def create_tool_schema(
    fields: Iterable[FieldSpec],
    include_ranges: bool = True
) -> dict[str, Any]:
    """
    Create a JSON Schema object from field declarations.

    Args:
        fields: Declared fields
        include_ranges: Emit minimum/maximum keywords for ranged fields

    Returns:
        JSON Schema dictionary
    """
    properties: dict[str, Any] = {}
    required: list[str] = []

    for spec in fields:
        field_schema: dict[str, Any] = {"type": spec.type.value}
        if spec.description:
            field_schema["description"] = spec.description

        if spec.enum is not None:
            field_schema["enum"] = list(spec.enum)

        if include_ranges and spec.is_ranged:
            if spec.minimum is not None:
                field_schema["minimum"] = spec.minimum
            if spec.maximum is not None:
                field_schema["maximum"] = spec.maximum

        properties[spec.name] = field_schema
        if spec.required:
            required.append(spec.name)

    return {
        "type": "object",
        "properties": properties,
        "required": required,
    }


def clamp(value: float, minimum: Optional[float], maximum: Optional[float]) -> float:
    """Force a number into the inclusive range [minimum, maximum]."""
    if minimum is not None and value < minimum:
        return minimum
    if maximum is not None and value > maximum:
        return maximum
    return value


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


class StructuredOutputValidator:
    """
    Parses and clamps single-shot structured responses.

    ``validate`` never raises: a malformed payload yields the caller's
    fallback unchanged and is recorded in ``failures``.
    """

    def __init__(self) -> None:
        self.failures = 0

    def validate(
        self,
        raw_text: Optional[str],
        contract: StructuredOutputContract,
        fallback: T
    ) -> dict[str, Any] | T:
        """
        Validate raw model output against a contract.

        Args:
            raw_text: Text produced by the model
            contract: Declared output contract
            fallback: Value returned unchanged when the output is unusable

        Returns:
            The validated, clamped mapping, or ``fallback``
        """
        try:
            return self._coerce(raw_text, contract)
        except MalformedOutput as e:
            self.failures += 1
            logger.warning(
                "Structured output malformed, using fallback",
                contract=contract.name,
                reason=str(e)
            )
            return fallback

    async def generate(
        self,
        model: "StructuredModel",
        prompt: str,
        contract: StructuredOutputContract,
        fallback: T
    ) -> dict[str, Any] | T:
        """Run a single-shot generation and validate its output."""
        try:
            raw_text = await model.generate(prompt, contract)
        except TransportError as e:
            logger.warning(
                "Single-shot generation failed, using fallback",
                contract=contract.name,
                error=str(e)
            )
            return fallback

        logger.debug("Raw structured output", contract=contract.name, raw=raw_text)
        return self.validate(raw_text, contract, fallback)

    def _coerce(
        self,
        raw_text: Optional[str],
        contract: StructuredOutputContract
    ) -> dict[str, Any]:
        if not raw_text or not raw_text.strip():
            raise MalformedOutput("empty response")

        try:
            parsed = json.loads(_strip_code_fence(raw_text))
        except json.JSONDecodeError as e:
            raise MalformedOutput(f"invalid JSON: {e}") from e

        if not isinstance(parsed, dict):
            raise MalformedOutput(f"expected an object, got {type(parsed).__name__}")

        result: dict[str, Any] = {}
        for spec in contract.fields:
            value = parsed.get(spec.name)
            if value is None:
                if spec.required:
                    raise MalformedOutput(f"missing required field '{spec.name}'")
                continue
            result[spec.name] = value

        # Ranges are clamped below rather than rejected here.
        schema = create_tool_schema(contract.fields, include_ranges=False)
        is_valid, errors = validate_schema(result, schema)
        if not is_valid:
            raise MalformedOutput("; ".join(errors))

        # json.loads accepts NaN and Infinity, which no range can hold.
        for spec in contract.fields:
            if spec.type in (FieldType.NUMBER, FieldType.INTEGER) and spec.name in result:
                if not math.isfinite(result[spec.name]):
                    raise MalformedOutput(f"non-finite value for field '{spec.name}'")

        for spec in contract.fields:
            if spec.name in result and spec.is_ranged:
                original = result[spec.name]
                clamped = clamp(original, spec.minimum, spec.maximum)
                if spec.type == FieldType.INTEGER:
                    clamped = int(clamped)
                if clamped != original:
                    logger.info(
                        "Clamped out-of-range value",
                        contract=contract.name,
                        field=spec.name,
                        value=original,
                        clamped=clamped
                    )
                result[spec.name] = clamped

        return result
