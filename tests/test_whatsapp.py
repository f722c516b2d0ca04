"""Tests for the neonize-backed WhatsApp session, with the client mocked out."""

from __future__ import annotations

from dataclasses import dataclass
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import aiosqlite
import pytest

pytest.importorskip("neonize")

from wabot.channels import whatsapp  # noqa: E402
from wabot.channels.whatsapp import WhatsAppSession, WhatsAppTransport  # noqa: E402
from wabot.types import (  # noqa: E402
    STUB_DECRYPT_FAILURE,
    AuthState,
    CloseReason,
    ConnectionUpdate,
    CredsUpdate,
    MessagesUpsert,
)

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class FakeJid:
    User: str
    Server: str = "s.whatsapp.net"
    Device: int = 0


def fake_jid2string(jid: FakeJid) -> str:
    if jid.Device:
        return f"{jid.User}:{jid.Device}@{jid.Server}"
    return f"{jid.User}@{jid.Server}"


def fake_build_jid(user: str, server: str = "s.whatsapp.net") -> FakeJid:
    return FakeJid(user, server)


class EventRegistry:
    """Stands in for ``client.event``: remembers each decorated callback."""

    def __init__(self) -> None:
        self.handlers: dict[object, object] = {}

    def __call__(self, event_type):
        def register(fn):
            self.handlers[event_type] = fn
            return fn

        return register

    def qr(self, fn):
        self.handlers["qr"] = fn
        return fn


def make_client() -> MagicMock:
    client = MagicMock()
    client.event = EventRegistry()
    client.me = None
    client.connect = AsyncMock()
    client.idle = AsyncMock()
    client.disconnect = AsyncMock()
    client.send_message = AsyncMock()
    client.send_chat_presence = AsyncMock()
    client.mark_read = AsyncMock()
    client.get_group_info = AsyncMock()
    client.contact.get_contact = AsyncMock()
    return client


def make_info(
    chat: FakeJid,
    *,
    sender: FakeJid | None = None,
    is_group: bool = False,
    from_me: bool = False,
    msg_id: str = "ID1",
    timestamp: float = 1_700_000_000,
    pushname: str = "Budi",
):
    return SimpleNamespace(
        MessageSource=SimpleNamespace(
            Chat=chat,
            Sender=sender or chat,
            IsFromMe=from_me,
            IsGroup=is_group,
        ),
        ID=msg_id,
        Timestamp=timestamp,
        Pushname=pushname,
    )


@pytest.fixture
def client(monkeypatch):
    fake = make_client()
    monkeypatch.setattr(whatsapp, "NewAClient", lambda path: fake)
    monkeypatch.setattr(whatsapp, "Jid2String", fake_jid2string)
    monkeypatch.setattr(whatsapp, "build_jid", fake_build_jid)
    monkeypatch.setattr(whatsapp, "MessageToDict", lambda message, **kwargs: message)
    monkeypatch.setattr(whatsapp.neonize_events, "event_global_loop", None, raising=False)
    monkeypatch.setattr(whatsapp.neonize_client, "event_global_loop", None, raising=False)
    return fake


@pytest.fixture
async def session(client, tmp_path):
    s = WhatsAppSession(tmp_path / "sessions" / "neonize.db", AuthState(creds={}, keys=None))
    yield s
    await s.close()


async def fire(client, event_type, event) -> None:
    await client.event.handlers[event_type](client, event)


def drain(session: WhatsAppSession) -> list:
    items = []
    while not session._queue.empty():
        items.append(session._queue.get_nowait())
    return items


def only_message(session: WhatsAppSession):
    (event,) = drain(session)
    assert isinstance(event, MessagesUpsert)
    (raw,) = event.messages
    return raw


# ---------------------------------------------------------------------------
# Connection events
# ---------------------------------------------------------------------------


class TestCloseEvents:
    @pytest.mark.parametrize(
        ("event_name", "event", "status"),
        [
            ("LoggedOutEv", SimpleNamespace(), 401),
            ("StreamReplacedEv", SimpleNamespace(), 440),
            ("DisconnectedEv", SimpleNamespace(), 428),
            ("ConnectFailureEv", SimpleNamespace(Reason=411, Message="bad mac"), 411),
            ("ConnectFailureEv", SimpleNamespace(Reason=0, Message=""), None),
        ],
    )
    async def test_status_codes(self, client, session, event_name, event, status):
        await fire(client, getattr(whatsapp, event_name), event)
        (update,) = drain(session)
        assert isinstance(update, ConnectionUpdate)
        assert update.state == "close"
        assert update.reason.status_code == status

    async def test_connect_failure_keeps_message(self, client, session):
        event = SimpleNamespace(Reason=500, Message="internal error")
        await fire(client, whatsapp.ConnectFailureEv, event)
        assert drain(session) == [
            ConnectionUpdate(state="close", reason=CloseReason(500, "internal error"))
        ]


class TestConnected:
    async def test_emits_identity_then_open(self, client, session):
        client.me = SimpleNamespace(
            JID=FakeJid("628999"), LID=FakeJid("777", "lid"), PushName="Helper"
        )
        await fire(client, whatsapp.ConnectedEv, SimpleNamespace())

        assert drain(session) == [
            CredsUpdate(
                creds={
                    "me": {"id": "628999@s.whatsapp.net", "lid": "777@lid", "name": "Helper"},
                    "registered": True,
                }
            ),
            ConnectionUpdate(state="open"),
        ]

    async def test_without_device_identity(self, client, session):
        await fire(client, whatsapp.ConnectedEv, SimpleNamespace())
        creds, opened = drain(session)
        assert creds == CredsUpdate(creds={"me": {}, "registered": True})
        assert opened == ConnectionUpdate(state="open")

    async def test_qr_code_is_logged_not_emitted(self, client, session):
        await fire(client, "qr", b"2@abc,def")
        assert drain(session) == []


# ---------------------------------------------------------------------------
# Inbound messages
# ---------------------------------------------------------------------------


class TestMessages:
    async def test_direct_message(self, client, session):
        event = SimpleNamespace(
            Info=make_info(FakeJid("628111")), Message={"conversation": "hi"}
        )
        await fire(client, whatsapp.MessageEv, event)

        raw = only_message(session)
        assert raw.key.remote_jid == "628111@s.whatsapp.net"
        assert raw.key.participant is None
        assert raw.key.from_me is False
        assert raw.key.id == "ID1"
        assert raw.message == {"conversation": "hi"}
        assert raw.push_name == "Budi"
        assert raw.timestamp == 1_700_000_000.0

    async def test_group_message_carries_participant(self, client, session):
        info = make_info(FakeJid("120363", "g.us"), sender=FakeJid("628222"), is_group=True)
        await fire(client, whatsapp.MessageEv, SimpleNamespace(Info=info, Message={"x": 1}))

        raw = only_message(session)
        assert raw.key.remote_jid == "120363@g.us"
        assert raw.key.participant == "628222@s.whatsapp.net"

    async def test_own_message_flagged(self, client, session):
        info = make_info(FakeJid("628111"), from_me=True)
        await fire(client, whatsapp.MessageEv, SimpleNamespace(Info=info, Message={"x": 1}))
        assert only_message(session).key.from_me is True

    async def test_millisecond_timestamps_are_scaled(self, client, session):
        info = make_info(FakeJid("628111"), timestamp=1_700_000_000_000)
        await fire(client, whatsapp.MessageEv, SimpleNamespace(Info=info, Message={"x": 1}))
        assert only_message(session).timestamp == 1_700_000_000.0

    async def test_empty_payload_becomes_none(self, client, session):
        info = make_info(FakeJid("628111"))
        await fire(client, whatsapp.MessageEv, SimpleNamespace(Info=info, Message={}))
        assert only_message(session).message is None

    async def test_lid_chat_translated_after_connect(self, client, session):
        client.me = SimpleNamespace(JID=FakeJid("628999"), LID=FakeJid("777", "lid"), PushName="")
        await fire(client, whatsapp.ConnectedEv, SimpleNamespace())
        drain(session)

        info = make_info(FakeJid("777", "lid"))
        await fire(client, whatsapp.MessageEv, SimpleNamespace(Info=info, Message={"x": 1}))
        assert only_message(session).key.remote_jid == "628999@s.whatsapp.net"

    async def test_unknown_lid_kept(self, client, session):
        info = make_info(FakeJid("555", "lid"))
        await fire(client, whatsapp.MessageEv, SimpleNamespace(Info=info, Message={"x": 1}))
        assert only_message(session).key.remote_jid == "555@lid"

    async def test_undecryptable_becomes_stub(self, client, session):
        info = make_info(FakeJid("628111"))
        await fire(client, whatsapp.UndecryptableMessageEv, SimpleNamespace(Info=info))

        raw = only_message(session)
        assert raw.stub_type == STUB_DECRYPT_FAILURE
        assert raw.message is None
        assert raw.key.remote_jid == "628111@s.whatsapp.net"

    async def test_conversion_error_is_not_raised(self, client, session, monkeypatch):
        def explode(message, **kwargs):
            raise ValueError("bad proto")

        monkeypatch.setattr(whatsapp, "MessageToDict", explode)
        info = make_info(FakeJid("628111"))
        await fire(client, whatsapp.MessageEv, SimpleNamespace(Info=info, Message={"x": 1}))
        assert drain(session) == []


# ---------------------------------------------------------------------------
# Outbound and lifecycle
# ---------------------------------------------------------------------------


class TestOutbound:
    async def test_plain_text(self, client, session):
        await session.send_text("628111@s.whatsapp.net", "hello")
        client.send_message.assert_awaited_once_with(FakeJid("628111"), "hello")

    async def test_text_with_mentions(self, client, session):
        await session.send_text(
            "120363@g.us", "hi @628222", mentions=["628222@s.whatsapp.net"]
        )
        target, message = client.send_message.await_args.args
        assert target == FakeJid("120363", "g.us")
        assert message.extendedTextMessage.text == "hi @628222"
        assert list(message.extendedTextMessage.contextInfo.mentionedJID) == [
            "628222@s.whatsapp.net"
        ]

    async def test_contact_card(self, client, session):
        await session.send_contact("628111@s.whatsapp.net", "Budi", "BEGIN:VCARD\nEND:VCARD")
        _target, message = client.send_message.await_args.args
        assert message.contactMessage.displayName == "Budi"
        assert message.contactMessage.vcard == "BEGIN:VCARD\nEND:VCARD"

    async def test_group_subject(self, client, session):
        client.get_group_info.return_value = SimpleNamespace(
            GroupName=SimpleNamespace(Name="Family")
        )
        assert await session.fetch_group_subject("120363@g.us") == "Family"

    async def test_contact_name_not_found(self, client, session):
        client.contact.get_contact.return_value = SimpleNamespace(Found=False)
        assert await session.fetch_contact_name("628111@s.whatsapp.net") is None


class TestLifecycle:
    async def test_close_is_idempotent_and_ends_stream(self, client, session):
        await session.close()
        await session.close()
        client.disconnect.assert_awaited_once()
        assert [event async for event in session.events()] == []

    async def test_events_after_close_are_dropped(self, client, session):
        await session.close()
        await fire(client, whatsapp.LoggedOutEv, SimpleNamespace())
        assert [event async for event in session.events()] == []

    async def test_transport_factory_connects(self, client, tmp_path):
        transport = WhatsAppTransport(tmp_path / "sessions")
        opened = await transport(AuthState(creds={"registered": True}, keys=None))
        try:
            client.connect.assert_awaited_once()
            assert (tmp_path / "sessions").is_dir()
        finally:
            await opened.close()


# ---------------------------------------------------------------------------
# Key invalidation in whatsmeow's store
# ---------------------------------------------------------------------------


async def seed_store(path) -> None:
    async with aiosqlite.connect(path) as db:
        await db.execute("CREATE TABLE whatsmeow_sessions (our_jid TEXT, their_id TEXT)")
        await db.execute(
            "CREATE TABLE whatsmeow_sender_keys (our_jid TEXT, chat_id TEXT, sender_id TEXT)"
        )
        await db.executemany(
            "INSERT INTO whatsmeow_sessions VALUES ('me', ?)",
            [("628111:0",), ("628111:3",), ("628111_1:0",), ("6281110:0",), ("628222:0",)],
        )
        await db.executemany(
            "INSERT INTO whatsmeow_sender_keys VALUES ('me', ?, ?)",
            [("120363@g.us", "628111:0"), ("120999@g.us", "628111:0")],
        )
        await db.commit()


async def remaining(path, sql) -> list[str]:
    async with aiosqlite.connect(path) as db:
        async with db.execute(sql) as cursor:
            return sorted(row[0] for row in await cursor.fetchall())


class TestForgetChatKeys:
    async def test_direct_chat_drops_only_that_user(self, session, tmp_path):
        db_path = tmp_path / "sessions" / "neonize.db"
        await seed_store(db_path)

        await session.forget_chat_keys("628111@s.whatsapp.net")

        assert await remaining(db_path, "SELECT their_id FROM whatsmeow_sessions") == [
            "6281110:0",
            "628222:0",
        ]
        assert len(await remaining(db_path, "SELECT chat_id FROM whatsmeow_sender_keys")) == 2

    async def test_group_drops_only_its_sender_keys(self, session, tmp_path):
        db_path = tmp_path / "sessions" / "neonize.db"
        await seed_store(db_path)

        await session.forget_chat_keys("120363@g.us")

        assert await remaining(db_path, "SELECT chat_id FROM whatsmeow_sender_keys") == [
            "120999@g.us"
        ]
        assert len(await remaining(db_path, "SELECT their_id FROM whatsmeow_sessions")) == 5
