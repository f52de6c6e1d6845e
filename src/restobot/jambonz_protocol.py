"""
jambonz WebSocket application protocol handler.

jambonz sends JSON messages with a `type`:
- session:new: A call was handed to this application (carries call_sid)
- verb:hook: An actionHook fired (e.g. `/speech` after a gather)
- call:status: Call status changed (ringing, in-progress, completed, failed, ...)
- jambonz:error: jambonz reported an error for this session

Outbound messages:
- ack: Answer a session:new / verb:hook msgid with a list of verbs
- command: Out-of-band instruction (redirect, tts:tokens, tts:flush)

One WebSocket connection carries exactly one call. Payload fields are treated
as optional everywhere; anything missing degrades to an empty value.
"""

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

JAMBONZ_SUBPROTOCOL = "ws.jambonz.org"
SPEECH_HOOK = "/speech"

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class ProtocolError(ValueError):
    """Raised when a jambonz message cannot be parsed."""
    pass


class JambonzMessageType(str, Enum):
    """jambonz WebSocket message types."""
    SESSION_NEW = "session:new"
    SESSION_RECONNECT = "session:reconnect"
    SESSION_REDIRECT = "session:redirect"
    VERB_HOOK = "verb:hook"
    VERB_STATUS = "verb:status"
    CALL_STATUS = "call:status"
    TTS_STREAMING_EVENT = "tts:streaming-event"
    ERROR = "jambonz:error"


class CallStatus(str, Enum):
    """jambonz `call_status` values."""
    TRYING = "trying"
    RINGING = "ringing"
    EARLY_MEDIA = "early-media"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    QUEUED = "queued"


TERMINAL_CALL_STATUSES = frozenset({CallStatus.COMPLETED.value, CallStatus.FAILED.value})


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass
class SessionNewEvent:
    """Parsed session:new message."""
    msgid: str
    call_sid: str
    from_: str = ""
    to: str = ""
    direction: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "SessionNewEvent":
        data = _as_dict(message.get("data"))
        return cls(
            msgid=str(message.get("msgid") or ""),
            call_sid=str(message.get("call_sid") or data.get("call_sid") or ""),
            from_=str(data.get("from") or ""),
            to=str(data.get("to") or ""),
            direction=str(data.get("direction") or ""),
            data=data,
        )


@dataclass
class SpeechEvent:
    """Parsed verb:hook carrying a recognition result."""
    msgid: str
    call_sid: str
    hook: str
    transcript: str = ""
    confidence: Optional[float] = None
    reason: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "SpeechEvent":
        data = _as_dict(message.get("data"))
        transcript, confidence = extract_transcript(data)
        return cls(
            msgid=str(message.get("msgid") or ""),
            call_sid=str(message.get("call_sid") or data.get("call_sid") or ""),
            hook=str(message.get("hook") or ""),
            transcript=transcript,
            confidence=confidence,
            reason=str(data.get("reason") or ""),
        )


@dataclass
class CallStatusEvent:
    """Parsed call:status message."""
    call_sid: str
    call_status: str
    sip_status: Optional[int] = None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "CallStatusEvent":
        data = _as_dict(message.get("data"))
        sip_status = data.get("sip_status")
        return cls(
            call_sid=str(message.get("call_sid") or data.get("call_sid") or ""),
            call_status=str(data.get("call_status") or ""),
            sip_status=sip_status if isinstance(sip_status, int) else None,
        )

    @property
    def is_terminal(self) -> bool:
        return self.call_status in TERMINAL_CALL_STATUSES


@dataclass
class ErrorEvent:
    """Parsed jambonz:error message."""
    call_sid: str
    error: str
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "ErrorEvent":
        data = _as_dict(message.get("data"))
        return cls(
            call_sid=str(message.get("call_sid") or ""),
            error=str(data.get("error") or data.get("message") or message.get("error") or ""),
            data=data,
        )


def extract_transcript(data: Dict[str, Any]) -> tuple[str, Optional[float]]:
    """
    Pull the top transcript out of a gather result.

    Returns ("", None) when recognition produced no usable alternative.
    """
    speech = _as_dict(data.get("speech"))
    alternatives = speech.get("alternatives")
    if not isinstance(alternatives, list) or not alternatives:
        return "", None

    first = _as_dict(alternatives[0])
    transcript = first.get("transcript")
    if not isinstance(transcript, str):
        return "", None

    confidence = first.get("confidence")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        confidence = None
    return transcript.strip(), confidence


def parse_jambonz_message(raw_message: str | bytes) -> tuple[JambonzMessageType, Any]:
    """
    Parse a raw jambonz WebSocket message.

    Returns:
        Tuple of (message_type, parsed_event). Types without a dedicated event
        class are returned as the raw dict.

    Raises:
        ProtocolError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ProtocolError("Message is not a JSON object")

    type_str = message.get("type", "")
    try:
        message_type = JambonzMessageType(type_str)
    except ValueError:
        raise ProtocolError(f"Unknown message type: {type_str}")

    if message_type in (JambonzMessageType.SESSION_NEW, JambonzMessageType.SESSION_RECONNECT):
        return message_type, SessionNewEvent.from_message(message)
    elif message_type == JambonzMessageType.VERB_HOOK:
        return message_type, SpeechEvent.from_message(message)
    elif message_type == JambonzMessageType.CALL_STATUS:
        return message_type, CallStatusEvent.from_message(message)
    elif message_type == JambonzMessageType.ERROR:
        return message_type, ErrorEvent.from_message(message)
    else:
        return message_type, message


# ---------------------------------------------------------------------------
# Verbs


def say_verb(text: str) -> Dict[str, Any]:
    return {"verb": "say", "text": text}


def stream_say_verb() -> Dict[str, Any]:
    """A `say` that plays whatever is pushed through tts:tokens."""
    return {"verb": "say", "stream": True}


def gather_verb(timeout: int, action_hook: str = SPEECH_HOOK) -> Dict[str, Any]:
    return {
        "verb": "gather",
        "input": ["speech"],
        "actionHook": action_hook,
        "timeout": timeout,
    }


def pause_verb(length: float) -> Dict[str, Any]:
    return {"verb": "pause", "length": length}


def hangup_verb() -> Dict[str, Any]:
    return {"verb": "hangup"}


def config_verb(
    config: Any,
    *,
    streaming: bool = False,
    action_hook: str = SPEECH_HOOK,
) -> Dict[str, Any]:
    """
    Session configuration: voice and recognizer, plus (streaming only) TTS
    token streaming and sticky barge-in on continuous speech recognition.
    """
    verb: Dict[str, Any] = {
        "verb": "config",
        "synthesizer": {
            "vendor": config.synth_vendor,
            "language": config.synth_language,
            "voice": config.synth_voice,
        },
        "recognizer": {
            "vendor": config.recognizer_vendor,
            "language": config.recognizer_language,
        },
    }
    if streaming:
        verb["ttsStream"] = {"enable": True}
        verb["bargeIn"] = {
            "enable": True,
            "sticky": True,
            "input": ["speech"],
            "actionHook": action_hook,
        }
    return verb


# ---------------------------------------------------------------------------
# Messages


def create_ack_message(msgid: str, verbs: Optional[List[Dict[str, Any]]] = None) -> str:
    message: Dict[str, Any] = {"type": "ack", "msgid": msgid}
    if verbs:
        message["data"] = verbs
    return encoder.encode(message).decode("utf-8")


def create_command_message(
    command: str,
    data: Any = None,
    *,
    queue_command: bool = False,
) -> str:
    message: Dict[str, Any] = {
        "type": "command",
        "command": command,
        "queueCommand": queue_command,
    }
    if data is not None:
        message["data"] = data
    return encoder.encode(message).decode("utf-8")


_token_ids = itertools.count(1)


def create_tts_tokens_message(tokens: str) -> str:
    return create_command_message("tts:tokens", {"id": next(_token_ids), "tokens": tokens})


def create_tts_flush_message() -> str:
    return create_command_message("tts:flush")


def create_redirect_message(verbs: List[Dict[str, Any]]) -> str:
    return create_command_message("redirect", verbs)
