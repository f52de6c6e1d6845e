"""
One jambonz call session on one WebSocket connection.

The session is the controller's handle back to the transport: it answers the
outstanding hook with verbs, or issues commands when nothing is outstanding.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from src.restobot.jambonz_protocol import (
    create_ack_message,
    create_redirect_message,
    create_tts_flush_message,
    create_tts_tokens_message,
    hangup_verb,
)

logger = structlog.get_logger(__name__)

SendMessage = Callable[[str], Awaitable[None]]


class JambonzSession:
    """High-level handle for one call's WebSocket."""

    def __init__(self, send_message: SendMessage, call_sid: str = ""):
        self._send_message = send_message
        self.call_sid = call_sid
        self._pending_msgid: Optional[str] = None
        self._preamble: List[Dict[str, Any]] = []
        self.is_closed = False
        self.data: Dict[str, Any] = {}

    @property
    def log(self):
        return logger.bind(call_sid=self.call_sid)

    @property
    def has_pending_hook(self) -> bool:
        return self._pending_msgid is not None

    def expect_reply(self, msgid: str) -> None:
        """Remember the msgid that the next `reply` must acknowledge."""
        if msgid:
            self._pending_msgid = msgid

    def prepend(self, verbs: List[Dict[str, Any]]) -> None:
        """Queue verbs (e.g. session `config`) to lead the next verb list."""
        self._preamble.extend(verbs)

    async def reply(self, verbs: List[Dict[str, Any]]) -> None:
        """
        Hand a verb list to jambonz.

        Acknowledges the outstanding hook if there is one; otherwise the verbs
        replace whatever is running via a `redirect` command.
        """
        verbs = [*self._preamble, *verbs]
        self._preamble = []

        if self._pending_msgid is not None:
            msgid, self._pending_msgid = self._pending_msgid, None
            await self._send(create_ack_message(msgid, verbs))
        else:
            await self._send(create_redirect_message(verbs))

    async def ack(self, msgid: Optional[str] = None) -> None:
        """
        Acknowledge a hook without changing the verb stack.

        With no `msgid`, acknowledges the outstanding hook (if any).
        """
        if msgid is None:
            if self._pending_msgid is None:
                return
            msgid, self._pending_msgid = self._pending_msgid, None
        if msgid:
            await self._send(create_ack_message(msgid))

    async def send_tokens(self, text: str) -> None:
        await self._send(create_tts_tokens_message(text))

    async def flush_tokens(self) -> None:
        await self._send(create_tts_flush_message())

    async def hangup(self) -> None:
        await self.reply([hangup_verb()])

    def mark_closed(self) -> None:
        self.is_closed = True

    async def _send(self, message: str) -> None:
        if self.is_closed:
            self.log.debug("Dropping message for closed session")
            return
        await self._send_message(message)
