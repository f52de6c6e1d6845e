"""
Per-call conversation history.

One `ConversationStore` is created at startup and handed to the session
controller; each active call owns exactly one `ConversationHistory` keyed by its
call SID. A history always starts with the persona system turn and is deleted
when the call ends.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Literal, Optional

import structlog

logger = structlog.get_logger(__name__)

Role = Literal["system", "user", "assistant"]


class UnknownCall(KeyError):
    """Raised when a call SID has no conversation history."""

    def __init__(self, call_sid: str):
        super().__init__(call_sid)
        self.call_sid = call_sid

    def __str__(self) -> str:
        return f"No conversation history for call {self.call_sid!r}"


@dataclass(frozen=True)
class ConversationTurn:
    """A single turn in the conversation."""
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time, compare=False)


class ConversationHistory:
    """Ordered turns for one call; append-only after the system turn."""

    def __init__(self, system_prompt: str):
        self._turns: List[ConversationTurn] = [
            ConversationTurn(role="system", content=system_prompt)
        ]

    def append(self, role: Role, content: str) -> None:
        if role == "system":
            raise ValueError("The system turn is set once at creation")
        self._turns.append(ConversationTurn(role=role, content=content))

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [
            {"role": turn.role, "content": turn.content}
            for turn in self._turns
        ]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(self._turns)


class ConversationStore:
    """
    Mapping from call SID to conversation history.

    No eviction beyond call-scoped deletion: the controller deletes a call's
    history on every path that ends the call.
    """

    def __init__(self, system_prompt: Callable[[], str]):
        self._system_prompt = system_prompt
        self._histories: Dict[str, ConversationHistory] = {}

    def ensure(self, call_sid: str) -> ConversationHistory:
        """Create-or-return the history for a call, seeding the system turn."""
        history = self._histories.get(call_sid)
        if history is None:
            history = ConversationHistory(self._system_prompt())
            self._histories[call_sid] = history
            logger.debug("Conversation created", call_sid=call_sid)
        return history

    def get(self, call_sid: str) -> ConversationHistory:
        history = self._histories.get(call_sid)
        if history is None:
            raise UnknownCall(call_sid)
        return history

    def find(self, call_sid: str) -> Optional[ConversationHistory]:
        return self._histories.get(call_sid)

    def append(self, call_sid: str, role: Role, content: str) -> None:
        self.get(call_sid).append(role, content)

    def delete(self, call_sid: str) -> None:
        """Remove a call's history. Deleting an absent call is a no-op."""
        if self._histories.pop(call_sid, None) is not None:
            logger.debug("Conversation deleted", call_sid=call_sid)

    def __contains__(self, call_sid: object) -> bool:
        return call_sid in self._histories

    def __len__(self) -> int:
        return len(self._histories)
