"""Turns raw transport events into canonical inbound messages."""

from __future__ import annotations

from typing import Any

from wabot.session.guard import CorruptionGuard
from wabot.types import (
    STUB_DECRYPT_FAILURE,
    Drop,
    DropReason,
    InboundMessage,
    RawMessage,
)
from wabot.utils import BROADCAST_JID, is_group_jid


def extract_text(message: dict[str, Any]) -> tuple[str, str] | None:
    """Return ``(text, kind)`` from plain or extended text, first non-empty wins."""
    conversation = message.get("conversation")
    if isinstance(conversation, str) and conversation:
        return conversation, "conversation"
    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict):
        text = extended.get("text")
        if isinstance(text, str) and text:
            return text, "extendedTextMessage"
    return None


class MessageNormalizer:
    def __init__(self, guard: CorruptionGuard) -> None:
        self._guard = guard

    def normalize(self, raw: RawMessage) -> InboundMessage | Drop:
        chat_id = raw.key.remote_jid

        if raw.stub_type == STUB_DECRYPT_FAILURE:
            if not chat_id:
                return Drop(DropReason.MALFORMED)
            loop = self._guard.record_decrypt_failure(chat_id)
            return Drop(DropReason.DECRYPT_FAILURE, chat_id=chat_id, desync_detected=loop)

        if not raw.message:
            return Drop(DropReason.NO_PAYLOAD, chat_id=chat_id)
        if not chat_id:
            return Drop(DropReason.MALFORMED)
        if raw.key.from_me:
            return Drop(DropReason.SELF_SENT, chat_id=chat_id)
        if chat_id == BROADCAST_JID:
            return Drop(DropReason.BROADCAST, chat_id=chat_id)

        extracted = extract_text(raw.message)
        if extracted is None:
            return Drop(DropReason.NOT_TEXT, chat_id=chat_id)
        text, kind = extracted

        is_group = is_group_jid(chat_id)
        sender = raw.key.participant if is_group and raw.key.participant else chat_id
        return InboundMessage(
            chat_id=chat_id,
            sender_id=sender,
            is_group=is_group,
            text=text,
            raw_kind=kind,
            timestamp=raw.timestamp,
            message_id=raw.key.id,
            push_name=raw.push_name,
        )
