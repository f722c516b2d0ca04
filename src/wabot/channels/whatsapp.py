"""WhatsApp transport using neonize (whatsmeow Python bindings).

whatsmeow keeps its signal sessions and sender keys in its own SQLite
store, ``neonize.db`` inside the session directory. This adapter turns
neonize callbacks into the engine's transport events and mirrors the device
identity into the master credentials record through ``CredsUpdate``.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import aiosqlite
from google.protobuf.json_format import MessageToDict
from neonize.aioze import client as neonize_client
from neonize.aioze import events as neonize_events
from neonize.aioze.client import NewAClient
from neonize.events import (
    ConnectedEv,
    ConnectFailureEv,
    DisconnectedEv,
    LoggedOutEv,
    MessageEv,
    PairStatusEv,
    StreamReplacedEv,
    UndecryptableMessageEv,
)
from neonize.proto.Neonize_pb2 import JID
from neonize.proto.waE2E.WAWebProtobufsE2E_pb2 import (
    ContactMessage,
    ContextInfo,
    ExtendedTextMessage,
    Message,
)
from neonize.utils.jid import Jid2String, build_jid

from wabot.logger import logger
from wabot.transport import Presence
from wabot.types import (
    STUB_DECRYPT_FAILURE,
    AuthState,
    CloseReason,
    ConnectionUpdate,
    CredsUpdate,
    InboundMessage,
    MessageKey,
    MessagesUpsert,
    RawMessage,
    TransportEvent,
)
from wabot.utils import is_group_jid, jid_user

AUTH_DB_NAME = "neonize.db"

STATUS_LOGGED_OUT = 401
STATUS_CONNECTION_CLOSED = 428
STATUS_CONNECTION_REPLACED = 440

_CLOSED = object()


class WhatsAppSession:
    """One neonize client; its event stream ends on close."""

    def __init__(self, auth_db: Path, auth: AuthState) -> None:
        self._auth_db = auth_db
        self._auth = auth
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._lid_to_phone: dict[str, str] = {}
        self._idle_task: asyncio.Task[None] | None = None
        self._closed = False

        # Neonize keeps module-level loop references; patch both modules so
        # events and internal tasks bind to the running loop.
        loop = asyncio.get_running_loop()
        neonize_events.event_global_loop = loop
        neonize_client.event_global_loop = loop

        auth_db.parent.mkdir(parents=True, exist_ok=True)
        self._client = NewAClient(str(auth_db))
        self._register_events()

    def _emit(self, event: TransportEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def _register_events(self) -> None:
        @self._client.event.qr
        async def on_qr(_client: NewAClient, qr_data: bytes) -> None:
            logger.warning(
                "Device link required: open WhatsApp > Linked Devices and scan this code",
                code=qr_data.decode(errors="replace"),
            )

        @self._client.event(ConnectedEv)
        async def on_connected(_client: NewAClient, _ev: ConnectedEv) -> None:
            me: dict[str, str] = {}
            device = self._client.me
            if device:
                jid = getattr(device, "JID", None)
                lid = getattr(device, "LID", None)
                if jid and jid.User:
                    me["id"] = Jid2String(jid)
                if lid and lid.User:
                    me["lid"] = Jid2String(lid)
                    if jid and jid.User:
                        self._lid_to_phone[lid.User] = f"{jid.User}@s.whatsapp.net"
                pushname = getattr(device, "PushName", "")
                if pushname:
                    me["name"] = pushname
            self._emit(CredsUpdate(creds={"me": me, "registered": True}))
            self._emit(ConnectionUpdate(state="open"))

        @self._client.event(PairStatusEv)
        async def on_pair_status(_client: NewAClient, ev: PairStatusEv) -> None:
            logger.info("WhatsApp paired", user=ev.ID.User)
            self._emit(CredsUpdate(creds={"me": {"id": Jid2String(ev.ID)}}))

        @self._client.event(LoggedOutEv)
        async def on_logged_out(_client: NewAClient, _ev: LoggedOutEv) -> None:
            self._emit(_close(STATUS_LOGGED_OUT, "logged out"))

        @self._client.event(ConnectFailureEv)
        async def on_connect_failure(_client: NewAClient, ev: ConnectFailureEv) -> None:
            code = int(getattr(ev, "Reason", 0) or 0) or None
            self._emit(_close(code, getattr(ev, "Message", "") or "connect failure"))

        @self._client.event(StreamReplacedEv)
        async def on_stream_replaced(_client: NewAClient, _ev: StreamReplacedEv) -> None:
            self._emit(_close(STATUS_CONNECTION_REPLACED, "connection replaced"))

        @self._client.event(DisconnectedEv)
        async def on_disconnected(_client: NewAClient, _ev: DisconnectedEv) -> None:
            self._emit(_close(STATUS_CONNECTION_CLOSED, "connection closed"))

        @self._client.event(UndecryptableMessageEv)
        async def on_undecryptable(_client: NewAClient, ev: UndecryptableMessageEv) -> None:
            self._emit(MessagesUpsert([self._raw_message(ev.Info, None, STUB_DECRYPT_FAILURE)]))

        @self._client.event(MessageEv)
        async def on_message(_client: NewAClient, message: MessageEv) -> None:
            try:
                payload = MessageToDict(message.Message, preserving_proto_field_name=True)
                self._emit(MessagesUpsert([self._raw_message(message.Info, payload or None)]))
            except Exception:
                logger.exception(
                    "Unhandled error converting message",
                    message_id=getattr(getattr(message, "Info", None), "ID", "unknown"),
                )

    def _raw_message(
        self, info: Any, payload: dict[str, Any] | None, stub_type: str | None = None
    ) -> RawMessage:
        source = info.MessageSource
        chat = self._translate_jid(Jid2String(source.Chat), source.Chat)
        ts = info.Timestamp
        if ts > 1e10:
            ts = ts / 1000
        return RawMessage(
            key=MessageKey(
                remote_jid=chat or None,
                from_me=bool(source.IsFromMe),
                id=info.ID,
                participant=Jid2String(source.Sender) if source.IsGroup else None,
            ),
            message=payload,
            stub_type=stub_type,
            timestamp=float(ts),
            push_name=info.Pushname or None,
        )

    async def start(self) -> None:
        if not self._auth.creds.get("registered"):
            logger.info("No linked device yet, waiting for pairing")
        await self._client.connect()
        self._idle_task = asyncio.ensure_future(self._client.idle())

    async def events(self) -> AsyncIterator[TransportEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def send_text(
        self, chat_id: str, text: str, *, mentions: list[str] | None = None
    ) -> None:
        target = self._parse_jid(chat_id)
        if mentions:
            message = Message(
                extendedTextMessage=ExtendedTextMessage(
                    text=text, contextInfo=ContextInfo(mentionedJID=mentions)
                )
            )
            await self._client.send_message(target, message)
        else:
            await self._client.send_message(target, text)

    async def send_contact(self, chat_id: str, display_name: str, vcard: str) -> None:
        message = Message(contactMessage=ContactMessage(displayName=display_name, vcard=vcard))
        await self._client.send_message(self._parse_jid(chat_id), message)

    async def send_presence(self, chat_id: str, presence: Presence) -> None:
        from neonize.utils.enum import ChatPresence, ChatPresenceMedia

        state = (
            ChatPresence.CHAT_PRESENCE_COMPOSING
            if presence == "composing"
            else ChatPresence.CHAT_PRESENCE_PAUSED
        )
        await self._client.send_chat_presence(
            self._parse_jid(chat_id), state, ChatPresenceMedia.CHAT_PRESENCE_MEDIA_TEXT
        )

    async def mark_read(self, message: InboundMessage) -> None:
        from neonize.utils.enum import ReceiptType

        await self._client.mark_read(
            message.message_id,
            chat=self._parse_jid(message.chat_id),
            sender=self._parse_jid(message.sender_id),
            receipt=ReceiptType.READ,
        )

    async def fetch_contact_name(self, jid: str) -> str | None:
        info = await self._client.contact.get_contact(self._parse_jid(jid))
        if not getattr(info, "Found", False):
            return None
        return info.FullName or info.PushName or info.FirstName or None

    async def fetch_group_subject(self, jid: str) -> str | None:
        info = await self._client.get_group_info(self._parse_jid(jid))
        return info.GroupName.Name or None

    async def forget_chat_keys(self, chat_id: str) -> None:
        """Drop whatsmeow's session / sender-key rows for one chat."""
        async with aiosqlite.connect(self._auth_db) as db:
            if is_group_jid(chat_id):
                await db.execute("DELETE FROM whatsmeow_sender_keys WHERE chat_id = ?", (chat_id,))
            else:
                user = jid_user(chat_id)
                await db.execute(
                    "DELETE FROM whatsmeow_sessions"
                    " WHERE their_id LIKE ? ESCAPE '\\' OR their_id LIKE ? ESCAPE '\\'",
                    (f"{user}:%", f"{user}\\_%"),
                )
            await db.commit()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        if self._idle_task:
            self._idle_task.cancel()
        with contextlib.suppress(Exception):
            await self._client.disconnect()

    def _translate_jid(self, jid_str: str, jid: JID) -> str:
        if jid.Server != "lid":
            return jid_str
        lid_user = jid.User.split(":")[0]
        return self._lid_to_phone.get(lid_user, jid_str)

    @staticmethod
    def _parse_jid(jid_str: str) -> JID:
        if "@" not in jid_str:
            return build_jid(jid_str)
        user, server = jid_str.split("@", 1)
        return build_jid(user, server)


def _close(status_code: int | None, detail: str) -> ConnectionUpdate:
    return ConnectionUpdate(
        state="close", reason=CloseReason(status_code=status_code, detail=detail)
    )


class WhatsAppTransport:
    """Transport factory: one fresh neonize client per connection attempt."""

    def __init__(self, session_dir: Path) -> None:
        self._auth_db = session_dir / AUTH_DB_NAME

    async def __call__(self, auth: AuthState) -> WhatsAppSession:
        session = WhatsAppSession(self._auth_db, auth)
        await session.start()
        return session
