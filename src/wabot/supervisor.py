"""Connection lifecycle: connect, serve, classify closures, back off, reconnect.

A single loop drives ``Disconnected → Connecting → Open → Closed(reason)``.
Transient closures go back to ``Connecting`` after a linear backoff; a
logout is terminal and surfaces as :class:`TerminalAuthError`. Every
connection attempt starts with a corruption scan of the session store.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Sequence
from typing import Any, Protocol

from wabot.config import ReconnectConfig
from wabot.logger import logger
from wabot.normalizer import MessageNormalizer
from wabot.session.guard import CorruptionGuard
from wabot.session.store import CredentialsNotFoundError, CredentialStore
from wabot.stats import BotStats
from wabot.transport import SessionRelay, TransportFactory, TransportSession
from wabot.types import (
    AuthState,
    CloseReason,
    ConnectionState,
    ConnectionUpdate,
    Credential,
    CredsUpdate,
    Drop,
    DropReason,
    InboundMessage,
    MessagesUpsert,
    RawMessage,
    RepairReport,
)


class TerminalAuthError(Exception):
    """The session was logged out; only a fresh device link can recover it."""

    def __init__(self, reason: CloseReason) -> None:
        super().__init__(f"logged out (status {reason.status_code}): {reason.detail}")
        self.reason = reason


class Dispatcher(Protocol):
    async def dispatch(self, message: InboundMessage) -> Any: ...


class ConnectionSupervisor:
    def __init__(
        self,
        *,
        store: CredentialStore,
        guard: CorruptionGuard,
        normalizer: MessageNormalizer,
        dispatcher: Dispatcher,
        relay: SessionRelay,
        transport_factory: TransportFactory,
        stats: BotStats,
        reconnect: ReconnectConfig,
        auto_read: bool = True,
    ) -> None:
        self._store = store
        self._guard = guard
        self._normalizer = normalizer
        self._dispatcher = dispatcher
        self._relay = relay
        self._factory = transport_factory
        self._stats = stats
        self._reconnect = reconnect
        self._auto_read = auto_read

        self._state = ConnectionState.DISCONNECTED
        self._last_close: CloseReason | None = None
        self._session: TransportSession | None = None
        self._creds: dict[str, Any] = {}
        self._attempt = 0
        self._stopping = asyncio.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def last_close(self) -> CloseReason | None:
        return self._last_close

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug("Connection state", previous=self._state, state=state)
        self._state = state

    def backoff_delay(self, attempt: int) -> float:
        """Linear backoff for the ``attempt``-th consecutive reconnect (1-based)."""
        cfg = self._reconnect
        delay = cfg.base_delay_seconds + cfg.step_seconds * max(attempt - 1, 0)
        return min(delay, cfg.max_delay_seconds)

    def is_terminal(self, reason: CloseReason) -> bool:
        return reason.status_code in self._reconnect.terminal_status_codes

    def is_desync(self, reason: CloseReason) -> bool:
        return reason.status_code in self._reconnect.desync_status_codes

    # --- main loop ---

    async def run(self) -> None:
        """Serve until stopped. Raises TerminalAuthError on logout."""
        try:
            while not self._stopping.is_set():
                reason = await self._serve()
                if reason is None or self._stopping.is_set():
                    break
                self._last_close = reason
                self._set_state(ConnectionState.CLOSED)

                if self.is_terminal(reason):
                    logger.error(
                        "Session logged out, not reconnecting",
                        status=reason.status_code,
                        detail=reason.detail,
                    )
                    self._set_state(ConnectionState.DISCONNECTED)
                    raise TerminalAuthError(reason)

                if self.is_desync(reason):
                    logger.warning(
                        "Closure points at stale session keys, scanning store",
                        status=reason.status_code,
                    )
                    await self._run_scan("desync-close")

                self._attempt += 1
                delay = self.backoff_delay(self._attempt)
                self._stats.reconnects += 1
                logger.warning(
                    "Connection closed, reconnecting",
                    status=reason.status_code,
                    detail=reason.detail,
                    attempt=self._attempt,
                    delay=delay,
                )
                if await self._wait_or_stop(delay):
                    break
        finally:
            self._set_state(ConnectionState.DISCONNECTED)

    def request_stop(self) -> None:
        """Stop reconnecting and dispatching new commands.

        The current session stays attached until :meth:`stop` closes it, so
        replies from commands that are still running can go out.
        """
        self._stopping.set()

    async def stop(self) -> None:
        self._stopping.set()
        session = self._session
        if session is not None:
            with contextlib.suppress(Exception):
                await session.close()

    async def _wait_or_stop(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True

    # --- one connection ---

    async def _serve(self) -> CloseReason | None:
        """Open one session and consume its events. None means we were stopped."""
        self._set_state(ConnectionState.CONNECTING)
        await self._run_scan("pre-connect")
        self._creds = dict(self._load_credential().creds)

        try:
            session = await self._factory(AuthState(creds=self._creds, keys=self._store))
        except Exception as err:
            logger.warning("Transport session failed to open", error=str(err))
            return CloseReason(detail=f"open failed: {err}")

        if self._stopping.is_set():
            with contextlib.suppress(Exception):
                await session.close()
            return None

        self._session = session
        try:
            async for event in session.events():
                match event:
                    case ConnectionUpdate(state="open"):
                        self._set_state(ConnectionState.OPEN)
                        self._attempt = 0
                        await self._relay.attach(session)
                        logger.info("Connection open")
                    case ConnectionUpdate(state="close", reason=reason):
                        return reason or CloseReason(detail="closed")
                    case CredsUpdate():
                        self._apply_creds(event)
                    case MessagesUpsert(messages=messages):
                        await self._process_batch(messages)
        finally:
            self._relay.detach()
            self._session = None
            with contextlib.suppress(Exception):
                await session.close()

        if self._stopping.is_set():
            return None
        return CloseReason(detail="event stream ended")

    def _load_credential(self) -> Credential:
        try:
            return self._store.load()
        except CredentialsNotFoundError:
            logger.info("No saved session, a new device link is required")
            return Credential.fresh()

    async def _run_scan(self, trigger: str) -> RepairReport:
        report = self._guard.scan(self._store)
        report.merge(await self._guard.check_databases(self._store))
        self._stats.corrupt_entries_removed += report.deleted_count
        logger.debug("Session store scanned", trigger=trigger, removed=report.deleted_count)
        return report

    def _apply_creds(self, update: CredsUpdate) -> None:
        # CredentialStoreError propagates: a store we cannot write is fatal.
        if update.creds:
            self._creds.update(update.creds)
            self._store.save(Credential(creds=dict(self._creds)))
        if update.keys:
            self._store.set_keys(update.keys)

    # --- inbound messages ---

    async def _process_batch(self, messages: Sequence[RawMessage]) -> None:
        for raw in messages:
            result = self._normalizer.normalize(raw)
            if isinstance(result, Drop):
                if result.desync_detected and result.chat_id:
                    await self._invalidate_chat(result.chat_id)
                elif result.reason == DropReason.DECRYPT_FAILURE:
                    logger.debug("Undecryptable message dropped", chat=result.chat_id)
                continue

            if self._stopping.is_set():
                logger.debug("Shutting down, message not dispatched", chat=result.chat_id)
                continue

            self._stats.messages_seen += 1
            logger.debug(
                "Inbound message",
                chat=result.chat_id,
                sender=result.sender_id,
                group=result.is_group,
                text=result.text[:100],
            )
            if self._auto_read:
                await self._relay.mark_read(result)
            try:
                await self._dispatcher.dispatch(result)
            except Exception:
                logger.exception("Dispatch failed", chat=result.chat_id)

    async def _invalidate_chat(self, chat_id: str) -> None:
        """Reset only this chat's key material after a decrypt-failure loop."""
        try:
            deleted = self._store.invalidate_chat_keys(chat_id)
        except OSError as err:
            logger.error("Failed to delete chat key records", chat=chat_id, error=str(err))
            deleted = []
        session = self._session
        if session is not None:
            try:
                await session.forget_chat_keys(chat_id)
            except Exception as err:
                logger.warning("Transport could not reset chat keys", chat=chat_id, error=str(err))
        self._guard.clear_decrypt_failures(chat_id)
        self._stats.key_invalidations += 1
        logger.warning("Decrypt failure loop, chat keys reset", chat=chat_id, deleted=deleted)
