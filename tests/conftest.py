"""
Pytest configuration and fixtures.
"""

import json
import os
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "WS_PATH": "/restaurant",
        "SPEECH_DELIVERY_MODE": "batched",
        "LLM_PROVIDER": "openai",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o-mini",
        "LLM_VALIDATE_ON_STARTUP": "false",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.restobot.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class Wire:
    """Records everything a session sends to jambonz."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    def of_type(self, type_: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == type_]

    def commands(self, command: str) -> List[Dict[str, Any]]:
        return [m for m in self.of_type("command") if m.get("command") == command]

    def verb_lists(self) -> List[List[Dict[str, Any]]]:
        """Verb lists sent either as hook acks or redirect commands."""
        lists = []
        for m in self.sent:
            if m.get("type") == "ack" and m.get("data"):
                lists.append(m["data"])
            elif m.get("type") == "command" and m.get("command") == "redirect":
                lists.append(m["data"])
        return lists

    def last_verbs(self) -> List[Dict[str, Any]]:
        lists = self.verb_lists()
        return lists[-1] if lists else []

    def said(self) -> List[str]:
        """Every line spoken, in order, across verbs and streamed tokens."""
        lines = []
        for m in self.sent:
            if m.get("type") == "command" and m.get("command") == "tts:tokens":
                lines.append(m["data"]["tokens"])
            else:
                data = m.get("data")
                if m.get("type") == "ack" or m.get("command") == "redirect":
                    for verb in data or []:
                        if verb.get("verb") == "say" and "text" in verb:
                            lines.append(verb["text"])
        return lines

    def clear(self) -> None:
        self.sent.clear()


class FakeCompletionClient:
    """Completion client double: scripted replies, recorded requests."""

    def __init__(self, replies: Optional[list] = None):
        self.replies = list(replies or [])
        self.calls: List[List[Dict[str, str]]] = []
        self.gate = None

    async def complete(self, messages):
        from src.restobot.llm import LLMResponse

        self.calls.append([dict(m) for m in messages])
        reply = self.replies.pop(0) if self.replies else "Хорошо, на какую дату?"
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(text=reply)


@pytest.fixture
def make_wire():
    return Wire


@pytest.fixture
def wire(make_wire):
    return make_wire()


@pytest.fixture
def make_session():
    from src.restobot.session import JambonzSession

    def _make(wire: Wire) -> JambonzSession:
        return JambonzSession(wire.send)

    return _make


@pytest.fixture
def session(wire, make_session):
    return make_session(wire)


@pytest.fixture
def fake_llm():
    return FakeCompletionClient()


@pytest.fixture
def no_sleep():
    calls: List[float] = []

    async def _sleep(delay: float) -> None:
        calls.append(delay)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def make_controller(fake_llm, no_sleep):
    from src.restobot.config import DeliveryMode, get_config
    from src.restobot.controller import create_controller
    from src.restobot.delivery import BatchedDelivery, StreamedDelivery

    def _make(mode: DeliveryMode = DeliveryMode.BATCHED, client=None):
        config = get_config()
        delivery = (
            StreamedDelivery(config, sleep=no_sleep)
            if mode == DeliveryMode.STREAMED
            else BatchedDelivery(config)
        )
        return create_controller(config, client=client or fake_llm, delivery=delivery)

    return _make


@pytest.fixture
def controller(make_controller):
    return make_controller()


@pytest.fixture
def session_new_message():
    def _make(call_sid: str = "CA-1", msgid: str = "m-new") -> str:
        return json.dumps({
            "type": "session:new",
            "msgid": msgid,
            "call_sid": call_sid,
            "data": {
                "call_sid": call_sid,
                "from": "+79990000000",
                "to": "+74950000000",
                "direction": "outbound",
            },
        })

    return _make


@pytest.fixture
def speech_message():
    def _make(transcript: Optional[str], call_sid: str = "CA-1", msgid: str = "m-speech") -> str:
        data: Dict[str, Any] = {"reason": "speechDetected"}
        if transcript is not None:
            data["speech"] = {
                "alternatives": [{"transcript": transcript, "confidence": 0.9}],
            }
        else:
            data["reason"] = "timeout"
        return json.dumps({
            "type": "verb:hook",
            "msgid": msgid,
            "call_sid": call_sid,
            "hook": "/speech",
            "data": data,
        })

    return _make


@pytest.fixture
def status_message():
    def _make(status: str, call_sid: str = "CA-1") -> str:
        return json.dumps({
            "type": "call:status",
            "call_sid": call_sid,
            "data": {"call_sid": call_sid, "call_status": status, "sip_status": 200},
        })

    return _make


@pytest.fixture
def deliver():
    """Parse a raw jambonz message and dispatch it to the controller."""
    from src.restobot.jambonz_protocol import parse_jambonz_message

    async def _deliver(controller, session, raw: str):
        message_type, event = parse_jambonz_message(raw)
        return await controller.dispatch(session, message_type, event)

    return _deliver
