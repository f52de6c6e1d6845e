"""
Call-session dialog controller.

Per-call state machine:

    GREETING -> LISTENING -> PROCESSING -> SPEAKING -> LISTENING ...
    LISTENING | PROCESSING -> ENDING -> CLOSED

CLOSED is reachable from every state (call status completed/failed, socket
close). Each event kind has exactly one handler; `dispatch` routes parsed
jambonz messages to them.

Concurrency: all calls share one event loop. Handling of an event suspends only
at the completion request and at the streamed pre-hangup delay. While a call is
PROCESSING, further recognition events for that call are ignored, and a reply
that arrives after the call closed is dropped.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

from src.restobot.conversation import ConversationStore, UnknownCall
from src.restobot.delivery import SpeechDelivery
from src.restobot.dialog_types import DialogOutcome, DialogState
from src.restobot.jambonz_protocol import (
    SPEECH_HOOK,
    CallStatusEvent,
    ErrorEvent,
    JambonzMessageType,
    SessionNewEvent,
    SpeechEvent,
)
from src.restobot.llm import ResponseGenerator
from src.restobot.persona import Utterances
from src.restobot.policy import DialogPolicy
from src.restobot.session import JambonzSession

logger = structlog.get_logger(__name__)


@dataclass
class CallContext:
    """Controller-side state for one active call."""
    call_sid: str
    session: JambonzSession
    state: DialogState = DialogState.GREETING
    empty_transcripts: int = 0
    turns: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def log(self):
        return logger.bind(call_sid=self.call_sid, state=self.state.value)


class SessionController:
    """Owns every active call's dialog state and conversation history."""

    def __init__(
        self,
        store: ConversationStore,
        policy: DialogPolicy,
        generator: ResponseGenerator,
        delivery: SpeechDelivery,
        utterances: Utterances,
    ):
        self._store = store
        self._policy = policy
        self._generator = generator
        self._delivery = delivery
        self._utterances = utterances
        self._calls: Dict[str, CallContext] = {}
        self.outcomes: Counter = Counter()

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def active_calls(self) -> int:
        return len(self._calls)

    def state_of(self, call_sid: str) -> Optional[DialogState]:
        ctx = self._calls.get(call_sid)
        return ctx.state if ctx else None

    # ------------------------------------------------------------------
    # Dispatch

    async def dispatch(
        self,
        session: JambonzSession,
        message_type: JambonzMessageType,
        event: Any,
    ) -> Optional[DialogOutcome]:
        """Route one parsed jambonz message to its handler."""
        if message_type in (JambonzMessageType.SESSION_NEW, JambonzMessageType.SESSION_RECONNECT):
            await self.handle_session_new(session, event)
        elif message_type == JambonzMessageType.VERB_HOOK:
            if event.hook and event.hook != SPEECH_HOOK:
                session.log.warning("Unexpected hook", hook=event.hook)
                await session.ack(event.msgid)
                return None
            return await self.handle_speech(session, event)
        elif message_type == JambonzMessageType.CALL_STATUS:
            await self.handle_call_status(session, event)
        elif message_type == JambonzMessageType.ERROR:
            self.handle_error(session, event)
        else:
            session.log.debug("Ignoring jambonz message", type=message_type.value)
        return None

    # ------------------------------------------------------------------
    # Event handlers

    async def handle_session_new(self, session: JambonzSession, event: SessionNewEvent) -> None:
        call_sid = event.call_sid or session.call_sid
        if not call_sid:
            session.log.error("session:new without call_sid")
            return

        session.call_sid = call_sid
        session.data = event.data
        session.expect_reply(event.msgid)

        if call_sid in self._calls:
            session.log.warning("Duplicate session:new for active call")
            self._calls[call_sid].session = session
            await session.ack()
            return

        ctx = CallContext(call_sid=call_sid, session=session)
        self._calls[call_sid] = ctx
        self._store.ensure(call_sid)

        ctx.log.info(
            "New call",
            from_=event.from_,
            to=event.to,
            direction=event.direction,
            delivery_mode=self._delivery.mode.value,
        )

        try:
            await self._delivery.configure(session)
            await self._delivery.speak_and_listen(
                session,
                self._utterances.greeting,
                no_input_text=self._utterances.greeting_no_input,
            )
        except Exception:
            ctx.log.exception("Failed to send greeting")
            self._close(ctx, reason="greeting_failed")
            return

        self._transition(ctx, DialogState.LISTENING)

    async def handle_speech(self, session: JambonzSession, event: SpeechEvent) -> DialogOutcome:
        call_sid = session.call_sid or event.call_sid
        ctx = self._calls.get(call_sid)

        if ctx is None:
            logger.warning("Speech for unknown call", call_sid=call_sid)
            await self._delivery.discard(session, event.msgid)
            return DialogOutcome.CONTINUE

        if ctx.session is not session:
            logger.warning("Speech from a socket that does not own the call", call_sid=call_sid)
            await self._delivery.discard(session, event.msgid)
            return DialogOutcome.CONTINUE

        if ctx.state != DialogState.LISTENING:
            ctx.log.info("Ignoring speech while busy", transcript=event.transcript)
            await self._delivery.discard(session, event.msgid)
            return DialogOutcome.CONTINUE

        session.expect_reply(event.msgid)
        transcript = event.transcript
        ctx.log.info("Transcript", transcript=transcript, confidence=event.confidence, reason=event.reason)

        try:
            outcome = await self._handle_transcript(ctx, transcript)
        except Exception as e:
            ctx.log.exception("Turn failed", error=str(e))
            outcome = await self._end_on_error(ctx)

        if outcome.ends_call:
            self.outcomes[outcome.value] += 1
        return outcome

    async def handle_call_status(self, session: JambonzSession, event: CallStatusEvent) -> None:
        call_sid = session.call_sid or event.call_sid
        logger.info("Call status", call_sid=call_sid, status=event.call_status, sip_status=event.sip_status)

        if not event.is_terminal:
            return

        ctx = self._calls.get(call_sid)
        if ctx is None:
            self._store.delete(call_sid)
        elif ctx.session is not session:
            logger.warning("Status from a socket that does not own the call", call_sid=call_sid)
        else:
            # Nothing more may be sent for a call jambonz already ended.
            session.mark_closed()
            self._close(ctx, reason=f"status_{event.call_status}")

    async def handle_close(self, session: JambonzSession) -> None:
        session.mark_closed()
        call_sid = session.call_sid
        if not call_sid:
            return

        ctx = self._calls.get(call_sid)
        if ctx is not None and ctx.session is session:
            self._close(ctx, reason="session_closed")
        elif ctx is None:
            self._store.delete(call_sid)

    def handle_error(self, session: JambonzSession, event: ErrorEvent) -> None:
        # The transport decides whether the call survives.
        session.log.error("Session error", error=event.error, data=event.data)

    # ------------------------------------------------------------------
    # Turn processing

    async def _handle_transcript(self, ctx: CallContext, transcript: str) -> DialogOutcome:
        if not transcript:
            ctx.empty_transcripts += 1
            outcome = await self._delivery.on_empty_transcript(ctx.session, ctx.empty_transcripts)
            if outcome.ends_call:
                self._finish(ctx)
            return outcome

        ctx.empty_transcripts = 0

        if self._policy.is_end_phrase(transcript):
            ctx.log.info("Caller ended the conversation")
            self._finish(ctx)
            await self._delivery.speak_and_end(ctx.session, self._utterances.closing)
            return DialogOutcome.END_BY_PHRASE

        if ctx.call_sid not in self._store:
            raise UnknownCall(ctx.call_sid)

        self._transition(ctx, DialogState.PROCESSING)
        ctx.turns += 1
        reply = await self._generator.reply(ctx.call_sid, transcript)

        if self._calls.get(ctx.call_sid) is not ctx or ctx.state != DialogState.PROCESSING:
            logger.info("Call ended while waiting for reply", call_sid=ctx.call_sid)
            return DialogOutcome.CONTINUE

        if self._policy.is_booking_confirmed(reply):
            ctx.log.info("Booking confirmed")
            self._finish(ctx)
            await self._delivery.speak_and_end(
                ctx.session,
                reply,
                farewell=self._utterances.booking_farewell,
            )
            return DialogOutcome.END_BY_BOOKING_CONFIRMED

        self._transition(ctx, DialogState.SPEAKING)
        await self._delivery.speak_and_listen(ctx.session, reply)
        if ctx.state == DialogState.SPEAKING:
            self._transition(ctx, DialogState.LISTENING)
        return DialogOutcome.CONTINUE

    async def _end_on_error(self, ctx: CallContext) -> DialogOutcome:
        if self._calls.get(ctx.call_sid) is not ctx:
            return DialogOutcome.END_BY_ERROR
        self._finish(ctx)
        try:
            await self._delivery.speak_and_end(ctx.session, self._utterances.technical_difficulty)
        except Exception as e:
            ctx.log.error("Failed to end call after error", error=str(e))
        return DialogOutcome.END_BY_ERROR

    # ------------------------------------------------------------------
    # Lifecycle

    def _transition(self, ctx: CallContext, state: DialogState) -> None:
        if ctx.state == state:
            return
        logger.debug("Dialog transition", call_sid=ctx.call_sid, from_state=ctx.state.value, to_state=state.value)
        ctx.state = state

    def _finish(self, ctx: CallContext) -> None:
        """Enter ENDING: the history goes now, the context when the call closes."""
        self._store.delete(ctx.call_sid)
        self._transition(ctx, DialogState.ENDING)

    def _close(self, ctx: CallContext, *, reason: str) -> None:
        self._store.delete(ctx.call_sid)
        self._transition(ctx, DialogState.CLOSED)
        self._calls.pop(ctx.call_sid, None)
        ctx.log.info(
            "Call closed",
            reason=reason,
            turns=ctx.turns,
            duration_seconds=round(time.time() - ctx.started_at, 2),
        )


def create_controller(
    config: Optional[Any] = None,
    client: Optional[Any] = None,
    delivery: Optional[SpeechDelivery] = None,
) -> SessionController:
    """
    Wire a controller for the configured deployment.

    `client` is the completion client (defaults to the OpenAI-compatible one);
    `delivery` defaults to the strategy named by SPEECH_DELIVERY_MODE.
    """
    from src.restobot.config import get_config
    from src.restobot.delivery import create_delivery
    from src.restobot.llm import OpenAICompletionClient
    from src.restobot.persona import get_system_prompt, get_utterances

    if config is None:
        config = get_config()

    utterances = get_utterances(config)
    store = ConversationStore(lambda: get_system_prompt(config))
    generator = ResponseGenerator(
        store,
        client or OpenAICompletionClient(config),
        fallback_message=utterances.technical_difficulty,
    )

    return SessionController(
        store=store,
        policy=DialogPolicy.from_config(config),
        generator=generator,
        delivery=delivery or create_delivery(config=config),
        utterances=utterances,
    )
