"""
Speech delivery strategies.

Both strategies satisfy the same controller-facing contract:

- `configure(session)`: set up voice/recognizer for the call
- `speak_and_listen(session, text)`: say `text` and arrange for the caller's
  next utterance to come back as a `/speech` hook
- `speak_and_end(session, text)`: say a closing line and hang up once it has
  had time to be heard
- `on_empty_transcript(session, attempts)`: retry rule for unusable recognition
- `discard(session, msgid)`: answer a hook the controller chose to ignore

`batched`: every utterance is one declarative verb list (say + gather with a
timeout + give-up line + hangup) answered to the pending hook.

`streamed`: the session is configured once for streaming TTS with sticky
barge-in; utterances are pushed as tokens and flushed so playback starts
immediately and the caller can talk over it.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.restobot.config import DeliveryMode, get_config
from src.restobot.dialog_types import DialogOutcome
from src.restobot.jambonz_protocol import (
    config_verb,
    gather_verb,
    hangup_verb,
    pause_verb,
    say_verb,
    stream_say_verb,
)
from src.restobot.persona import Utterances, get_utterances
from src.restobot.session import JambonzSession

logger = structlog.get_logger(__name__)

# Rough speaking rate used to size the pre-hangup delay in streamed mode.
_SECONDS_PER_CHAR = 0.06

MAX_EMPTY_REPROMPTS = 1


class SpeechDelivery(ABC):
    mode: DeliveryMode

    def __init__(self, config: Optional[Any] = None, utterances: Optional[Utterances] = None):
        self.config = config or get_config()
        self.utterances = utterances or get_utterances(self.config)

    @abstractmethod
    async def configure(self, session: JambonzSession) -> None:
        raise NotImplementedError

    @abstractmethod
    async def speak_and_listen(
        self,
        session: JambonzSession,
        text: str,
        *,
        no_input_text: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def speak_and_end(
        self,
        session: JambonzSession,
        text: str,
        *,
        farewell: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def on_empty_transcript(self, session: JambonzSession, attempts: int) -> DialogOutcome:
        """
        Handle an unusable recognition result.

        `attempts` counts consecutive empty transcripts for the call, including
        this one.
        """
        raise NotImplementedError

    async def discard(self, session: JambonzSession, msgid: str) -> None:
        return None


class BatchedDelivery(SpeechDelivery):
    """Speak, then open a bounded listening window with a give-up fallback."""

    mode = DeliveryMode.BATCHED

    async def configure(self, session: JambonzSession) -> None:
        session.prepend([config_verb(self.config, streaming=False)])

    def _listen_verbs(self, text: str, no_input_text: str) -> list:
        return [
            say_verb(text),
            gather_verb(timeout=self.config.gather_timeout_seconds),
            say_verb(no_input_text),
            hangup_verb(),
        ]

    async def speak_and_listen(
        self,
        session: JambonzSession,
        text: str,
        *,
        no_input_text: Optional[str] = None,
    ) -> None:
        await session.reply(
            self._listen_verbs(text, no_input_text or self.utterances.lost_caller)
        )

    async def speak_and_end(
        self,
        session: JambonzSession,
        text: str,
        *,
        farewell: Optional[str] = None,
    ) -> None:
        verbs = [say_verb(text)]
        if farewell:
            verbs.extend([pause_verb(1), say_verb(farewell)])
        verbs.append(hangup_verb())
        await session.reply(verbs)

    async def on_empty_transcript(self, session: JambonzSession, attempts: int) -> DialogOutcome:
        if attempts <= MAX_EMPTY_REPROMPTS:
            session.log.info("Empty transcript, reprompting", attempts=attempts)
            await self.speak_and_listen(
                session,
                self.utterances.reprompt,
                no_input_text=self.utterances.no_input_give_up,
            )
            return DialogOutcome.CONTINUE

        session.log.info("Empty transcript again, giving up", attempts=attempts)
        await self.speak_and_end(session, self.utterances.no_input_give_up)
        return DialogOutcome.END_BY_TIMEOUT


class StreamedDelivery(SpeechDelivery):
    """Push tokens into an open TTS stream; the caller may barge in at any time."""

    mode = DeliveryMode.STREAMED

    def __init__(
        self,
        config: Optional[Any] = None,
        utterances: Optional[Utterances] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(config, utterances)
        self._sleep = sleep

    async def configure(self, session: JambonzSession) -> None:
        session.prepend([config_verb(self.config, streaming=True)])

    async def _push(self, session: JambonzSession, text: str) -> None:
        if session.has_pending_hook:
            await session.reply([stream_say_verb()])
        await session.send_tokens(text)
        await session.flush_tokens()

    async def speak_and_listen(
        self,
        session: JambonzSession,
        text: str,
        *,
        no_input_text: Optional[str] = None,
    ) -> None:
        # Recognition stays open (sticky barge-in); no listening window to arm.
        await self._push(session, text)

    def hangup_delay(self, text: str) -> float:
        delay = len(text) * _SECONDS_PER_CHAR
        return min(
            max(delay, self.config.hangup_delay_min_seconds),
            self.config.hangup_delay_max_seconds,
        )

    async def speak_and_end(
        self,
        session: JambonzSession,
        text: str,
        *,
        farewell: Optional[str] = None,
    ) -> None:
        spoken = f"{text} {farewell}" if farewell else text
        await self._push(session, spoken)

        # No playback-finished signal: wait roughly as long as the line takes to say.
        delay = self.hangup_delay(spoken)
        session.log.info("Waiting before hangup", delay_s=round(delay, 2))
        await self._sleep(delay)
        if session.is_closed:
            session.log.info("Call already over, skipping hangup")
            return
        await session.hangup()

    async def on_empty_transcript(self, session: JambonzSession, attempts: int) -> DialogOutcome:
        session.log.debug("Empty transcript, still listening", attempts=attempts)
        await session.ack()
        return DialogOutcome.CONTINUE

    async def discard(self, session: JambonzSession, msgid: str) -> None:
        await session.ack(msgid)


def create_delivery(
    mode: Optional[DeliveryMode] = None,
    config: Optional[Any] = None,
) -> SpeechDelivery:
    """Build the delivery strategy selected by configuration."""
    config = config or get_config()
    mode = mode or config.speech_delivery_mode

    if mode == DeliveryMode.BATCHED:
        return BatchedDelivery(config)
    if mode == DeliveryMode.STREAMED:
        return StreamedDelivery(config)

    raise ValueError(f"Unsupported SPEECH_DELIVERY_MODE: {mode}")
