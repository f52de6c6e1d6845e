from __future__ import annotations

from enum import Enum


class DialogState(str, Enum):
    """State of one call in the dialog state machine."""
    GREETING = "greeting"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ENDING = "ending"
    CLOSED = "closed"


class DialogOutcome(str, Enum):
    """What a handled event means for the call (derived, never stored)."""
    CONTINUE = "continue"
    END_BY_PHRASE = "end_by_phrase"
    END_BY_BOOKING_CONFIRMED = "end_by_booking_confirmed"
    END_BY_TIMEOUT = "end_by_timeout"
    END_BY_ERROR = "end_by_error"

    @property
    def ends_call(self) -> bool:
        return self is not DialogOutcome.CONTINUE
