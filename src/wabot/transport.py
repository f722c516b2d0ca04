"""Transport contract and the relay that always points at the live session.

The chat transport is an external collaborator. The engine only relies on
the :class:`TransportSession` protocol below; :mod:`wabot.channels.whatsapp`
implements it on top of neonize.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Literal, Protocol

from wabot.logger import logger
from wabot.types import AuthState, InboundMessage, TransportEvent

Presence = Literal["composing", "paused"]


class TransportSession(Protocol):
    """One connected session. ``events()`` ends when the session is closed."""

    def events(self) -> AsyncIterator[TransportEvent]: ...

    async def send_text(
        self, chat_id: str, text: str, *, mentions: list[str] | None = None
    ) -> None: ...

    async def send_contact(self, chat_id: str, display_name: str, vcard: str) -> None: ...

    async def send_presence(self, chat_id: str, presence: Presence) -> None: ...

    async def mark_read(self, message: InboundMessage) -> None: ...

    async def fetch_contact_name(self, jid: str) -> str | None: ...

    async def fetch_group_subject(self, jid: str) -> str | None: ...

    async def forget_chat_keys(self, chat_id: str) -> None: ...

    async def close(self) -> None: ...


class TransportFactory(Protocol):
    async def __call__(self, auth: AuthState) -> TransportSession: ...


class TransportUnavailableError(Exception):
    """No live session to carry a request that cannot be queued."""


@dataclass
class _OutgoingMessage:
    chat_id: str
    text: str
    mentions: list[str] = field(default_factory=list)
    attempts: int = 0


class SessionRelay:
    """Outbound side of whichever session is currently open.

    Handlers keep a reference to the relay rather than to a session, so a
    reply finished after a reconnect goes out on the new connection. Text
    sent while disconnected is queued and flushed on the next ``attach``.
    Every call into the session is bounded by ``send_timeout``; a text that
    fails ``max_send_attempts`` times is dropped, and the queue holds at most
    ``max_queued`` messages (oldest dropped first).
    """

    def __init__(
        self,
        *,
        send_timeout: float = 20.0,
        max_queued: int = 100,
        max_send_attempts: int = 3,
    ) -> None:
        self._session: TransportSession | None = None
        self._send_timeout = send_timeout
        self._max_send_attempts = max_send_attempts
        self._outgoing_queue: deque[_OutgoingMessage] = deque(maxlen=max_queued)
        self._flushing = False

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def attach(self, session: TransportSession) -> None:
        self._session = session
        await self._flush_outgoing_queue()

    def detach(self) -> None:
        self._session = None

    async def send_text(
        self, chat_id: str, text: str, *, mentions: list[str] | None = None
    ) -> None:
        await self._deliver(_OutgoingMessage(chat_id, text, list(mentions or [])))

    async def _deliver(self, item: _OutgoingMessage) -> None:
        session = self._session
        if session is None:
            self._enqueue(item)
            logger.debug("Disconnected, message queued", chat=item.chat_id)
            return
        try:
            await asyncio.wait_for(
                session.send_text(item.chat_id, item.text, mentions=item.mentions or None),
                timeout=self._send_timeout,
            )
        except Exception as err:
            item.attempts += 1
            if item.attempts >= self._max_send_attempts:
                logger.error(
                    "Giving up on message after repeated failures",
                    chat=item.chat_id,
                    attempts=item.attempts,
                    error=repr(err),
                )
                return
            self._enqueue(item)
            logger.warning("Failed to send, message queued", chat=item.chat_id, error=repr(err))

    def _enqueue(self, item: _OutgoingMessage) -> None:
        if len(self._outgoing_queue) == self._outgoing_queue.maxlen:
            dropped = self._outgoing_queue[0]
            logger.warning("Outgoing queue full, dropping oldest message", chat=dropped.chat_id)
        self._outgoing_queue.append(item)

    async def send_contact(self, chat_id: str, display_name: str, vcard: str) -> None:
        await asyncio.wait_for(
            self._require().send_contact(chat_id, display_name, vcard),
            timeout=self._send_timeout,
        )

    async def send_presence(self, chat_id: str, presence: Presence) -> None:
        session = self._session
        if session is None:
            return
        try:
            await asyncio.wait_for(
                session.send_presence(chat_id, presence), timeout=self._send_timeout
            )
        except Exception as err:
            logger.debug("Failed to update presence", chat=chat_id, error=repr(err))

    async def mark_read(self, message: InboundMessage) -> None:
        session = self._session
        if session is None:
            return
        try:
            await asyncio.wait_for(session.mark_read(message), timeout=self._send_timeout)
        except Exception as err:
            logger.debug("Failed to mark message as read", chat=message.chat_id, error=repr(err))

    async def fetch_contact_name(self, jid: str) -> str | None:
        return await asyncio.wait_for(
            self._require().fetch_contact_name(jid), timeout=self._send_timeout
        )

    async def fetch_group_subject(self, jid: str) -> str | None:
        return await asyncio.wait_for(
            self._require().fetch_group_subject(jid), timeout=self._send_timeout
        )

    def _require(self) -> TransportSession:
        if self._session is None:
            raise TransportUnavailableError("not connected")
        return self._session

    @property
    def queued(self) -> int:
        return len(self._outgoing_queue)

    async def _flush_outgoing_queue(self) -> None:
        if self._flushing or not self._outgoing_queue:
            return
        self._flushing = True
        try:
            # One pass only: anything re-queued by a failed send waits for the next attach.
            for _ in range(len(self._outgoing_queue)):
                if self._session is None:
                    break
                await self._deliver(self._outgoing_queue.popleft())
        finally:
            self._flushing = False
