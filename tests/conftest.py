"""Shared test fixtures for wabot."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from wabot.types import (
    STUB_DECRYPT_FAILURE,
    CloseReason,
    ConnectionUpdate,
    InboundMessage,
    MessageKey,
    RawMessage,
    TransportEvent,
)

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures; importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "session_dir", "vcard_path", "premium_path"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (bot, ai, etc.) and cached property overrides
    (project_root, session_dir, vcard_path, premium_path).

    Usage::

        s = make_settings(session_dir=tmp_path / "sessions")
        s = make_settings(bot=BotConfig(owner="628111"))
    """
    from wabot.config import (
        AiConfig,
        BotConfig,
        ContactsConfig,
        DecryptGuardConfig,
        LoggingConfig,
        PremiumConfig,
        RateLimitConfig,
        ReconnectConfig,
        SessionConfig,
        Settings,
        TransportConfig,
        VcardConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "bot": BotConfig(),
        "session": SessionConfig(),
        "reconnect": ReconnectConfig(),
        "decrypt_guard": DecryptGuardConfig(),
        "rate_limit": RateLimitConfig(),
        "ai": AiConfig(),
        "vcard": VcardConfig(),
        "contacts": ContactsConfig(),
        "premium": PremiumConfig(),
        "transport": TransportConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def make_raw(
    *,
    chat: str | None = "628111@s.whatsapp.net",
    text: str | None = "hello",
    participant: str | None = None,
    from_me: bool = False,
    message: dict[str, Any] | None = None,
    stub_type: str | None = None,
    msg_id: str = "MSG1",
) -> RawMessage:
    """Raw transport message; ``text`` becomes a plain conversation payload."""
    if message is None and text is not None:
        message = {"conversation": text}
    return RawMessage(
        key=MessageKey(remote_jid=chat, from_me=from_me, id=msg_id, participant=participant),
        message=message,
        stub_type=stub_type,
        timestamp=1_700_000_000.0,
    )


def make_decrypt_failure(chat: str = "628111@s.whatsapp.net") -> RawMessage:
    return make_raw(chat=chat, text=None, stub_type=STUB_DECRYPT_FAILURE)


def make_inbound(
    text: str,
    *,
    chat_id: str = "628111@s.whatsapp.net",
    sender_id: str | None = None,
) -> InboundMessage:
    group = chat_id.endswith("@g.us")
    return InboundMessage(
        chat_id=chat_id,
        sender_id=sender_id or chat_id,
        is_group=group,
        text=text,
        raw_kind="conversation",
        timestamp=1_700_000_000.0,
        message_id="MSG1",
    )


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSession:
    """In-memory transport session driven by a script of events.

    Events are fed through an asyncio.Queue; ``None`` ends the stream. Every
    outbound call is recorded for assertions.
    """

    def __init__(self, events: list[TransportEvent] | None = None) -> None:
        self._queue: asyncio.Queue[TransportEvent | None] = asyncio.Queue()
        for event in events or []:
            self._queue.put_nowait(event)
        self.sent: list[tuple[str, str, list[str] | None]] = []
        self.contacts: list[tuple[str, str, str]] = []
        self.presence: list[tuple[str, str]] = []
        self.read: list[str] = []
        self.forgotten: list[str] = []
        self.names: dict[str, str] = {}
        self.closed = False
        self.fail_sends = False

    def push(self, event: TransportEvent | None) -> None:
        self._queue.put_nowait(event)

    def close_with(self, status_code: int | None, detail: str = "") -> None:
        self.push(ConnectionUpdate(state="close", reason=CloseReason(status_code, detail)))

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def send_text(self, chat_id, text, *, mentions=None):
        if self.fail_sends:
            raise ConnectionError("socket closed")
        self.sent.append((chat_id, text, mentions))

    async def send_contact(self, chat_id, display_name, vcard):
        self.contacts.append((chat_id, display_name, vcard))

    async def send_presence(self, chat_id, presence):
        self.presence.append((chat_id, presence))

    async def mark_read(self, message):
        self.read.append(message.message_id)

    async def fetch_contact_name(self, jid):
        return self.names.get(jid)

    async def fetch_group_subject(self, jid):
        return self.names.get(jid)

    async def forget_chat_keys(self, chat_id):
        self.forgotten.append(chat_id)

    async def close(self):
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)


class FakeTransport:
    """Factory handing out prepared sessions in order."""

    def __init__(self, *sessions: FakeSession) -> None:
        self.sessions = list(sessions)
        self.opened: list[FakeSession] = []
        self.auth_seen: list[dict[str, Any]] = []

    async def __call__(self, auth):
        self.auth_seen.append(dict(auth.creds))
        session = self.sessions.pop(0)
        self.opened.append(session)
        return session


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no config.toml,
    no .env, no file I/O.
    """
    safe = make_settings()
    monkeypatch.setattr("wabot.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return ManualClock()
