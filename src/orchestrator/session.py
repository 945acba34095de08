"""Conversation session for the orchestrator.

An ordered, append-only log of turns. A session may span several user
messages; it lives in memory only.
"""

import uuid
from typing import Any, Iterator, Optional

from shared.logging import get_logger
from shared.models import ConversationTurn, Role, ToolResponsePart

logger = get_logger(__name__)


class ConversationSession:
    """
    Append-only turn log exchanged with the model client.

    The session is threaded explicitly through every orchestrator call. A
    caller may keep it and append follow-up user messages, which the model
    then sees together with the earlier turns. No turn is ever removed or
    reordered.
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        turns: tuple[ConversationTurn, ...] = ()
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self._turns: list[ConversationTurn] = list(turns)

    def append(self, turn: ConversationTurn) -> None:
        """Add a turn to the end of the session."""
        if not isinstance(turn, ConversationTurn):
            raise TypeError(f"Expected ConversationTurn, got {type(turn).__name__}")
        self._turns.append(turn)
        logger.debug(
            "Turn appended",
            session_id=self.session_id,
            role=turn.role.value,
            position=len(self._turns)
        )

    def view(self) -> tuple[ConversationTurn, ...]:
        """Return the full ordered sequence for submission to the model."""
        return tuple(self._turns)

    def last_user_text(self) -> Optional[str]:
        """Text of the most recent user turn, if any."""
        for turn in reversed(self._turns):
            if turn.role == Role.USER and turn.text:
                return turn.text
        return None

    def to_transcript(self) -> list[dict[str, Any]]:
        """Flatten the session into role/content records for API responses."""
        transcript = []
        for turn in self._turns:
            record: dict[str, Any] = {"role": turn.role.value, "content": turn.text}
            if turn.tool_calls:
                record["tool_calls"] = [
                    {"name": c.name, "arguments": c.arguments} for c in turn.tool_calls
                ]
            responses = [p for p in turn.parts if isinstance(p, ToolResponsePart)]
            if turn.role == Role.TOOL and responses:
                record["name"] = responses[0].name
                record["content"] = responses[0].response
                record["is_error"] = responses[0].is_error
            transcript.append(record)
        return transcript

    def history(self) -> list[dict[str, str]]:
        """User and assistant text turns as role/text records, oldest first."""
        return [
            {"role": turn.role.value, "text": turn.text}
            for turn in self._turns
            if turn.role in (Role.USER, Role.ASSISTANT) and turn.text
        ]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(self.view())
