"""Memoized display-name lookup for chat identifiers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

from wabot.logger import logger
from wabot.utils import is_group_jid, jid_user

UNKNOWN_GROUP = "Unknown Group"


class MetadataSource(Protocol):
    async def fetch_contact_name(self, jid: str) -> str | None: ...

    async def fetch_group_subject(self, jid: str) -> str | None: ...


class ContactResolver:
    """Resolves chat ids to names, caching every answer for the process lifetime.

    Fallback values are cached as well, so each id costs at most one
    external lookup. Lookups never raise: a transport blip degrades to the
    bare number (direct chats) or ``Unknown Group``.
    """

    def __init__(self, source: MetadataSource, *, lookup_timeout: float = 10.0) -> None:
        self._source = source
        self._timeout = lookup_timeout
        self._cache: dict[str, str] = {}

    async def resolve(self, chat_id: str) -> str:
        cached = self._cache.get(chat_id)
        if cached is not None:
            return cached

        if is_group_jid(chat_id):
            name = await self._lookup(self._source.fetch_group_subject, chat_id) or UNKNOWN_GROUP
        else:
            name = await self._lookup(self._source.fetch_contact_name, chat_id) or jid_user(
                chat_id
            )
        self._cache[chat_id] = name
        return name

    async def _lookup(self, fetch: Callable[[str], Awaitable[str | None]], jid: str) -> str | None:
        try:
            name = await asyncio.wait_for(fetch(jid), timeout=self._timeout)
        except Exception as err:
            logger.debug("Contact lookup failed", jid=jid, error=str(err) or type(err).__name__)
            return None
        return name.strip() if isinstance(name, str) and name.strip() else None

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
