"""
Dialog policy: phrase matching for end-of-call decisions.

Matching is deliberately simple (case-insensitive substring on normalized
text). Swap `DialogPolicy` for a smarter classifier without touching the
session controller.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Iterable, Optional, Tuple

from src.restobot.config import DEFAULT_BOOKING_MARKERS, DEFAULT_END_PHRASES


def _normalize_for_matching(text: str) -> str:
    text = (text or "").strip().casefold()
    # NFKD + dropping combining marks folds "ё" -> "е" and "й" -> "и" on both sides.
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[^\w\s]", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    return text


def _normalize_phrases(phrases: Iterable[str]) -> Tuple[str, ...]:
    normalized = (_normalize_for_matching(p) for p in phrases)
    return tuple(p for p in normalized if p)


class DialogPolicy:
    """Decides whether an utterance ends the call."""

    def __init__(
        self,
        end_phrases: Optional[Iterable[str]] = None,
        booking_markers: Optional[Iterable[str]] = None,
    ):
        self._end_phrases = _normalize_phrases(
            DEFAULT_END_PHRASES if end_phrases is None else end_phrases
        )
        self._booking_markers = _normalize_phrases(
            DEFAULT_BOOKING_MARKERS if booking_markers is None else booking_markers
        )

    @classmethod
    def from_config(cls, config) -> "DialogPolicy":
        return cls(end_phrases=config.end_phrases, booking_markers=config.booking_markers)

    @staticmethod
    def _contains_any(phrases: Tuple[str, ...], text: str) -> bool:
        normalized = _normalize_for_matching(text)
        if not normalized:
            return False
        return any(phrase in normalized for phrase in phrases)

    def is_end_phrase(self, text: str) -> bool:
        """True if the caller's utterance is a farewell or a refusal."""
        return self._contains_any(self._end_phrases, text)

    def is_booking_confirmed(self, text: str) -> bool:
        """True if the assistant's reply finalizes a reservation."""
        return self._contains_any(self._booking_markers, text)


_default_policy = DialogPolicy()


def is_end_phrase(text: str) -> bool:
    return _default_policy.is_end_phrase(text)


def is_booking_confirmed(text: str) -> bool:
    return _default_policy.is_booking_confirmed(text)
