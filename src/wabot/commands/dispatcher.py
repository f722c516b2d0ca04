"""Command parsing, throttling and handler execution.

Per message: Received → Parsed → RateChecked → CooldownChecked → Executing →
Replied | Rejected | Dropped. Everything up to Executing runs inline, in
arrival order, so the cooldown check-and-set cannot race. The handler itself
runs as a background task: a slow AI answer for one chat must not hold up
ingestion for the others.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from wabot.contacts import ContactResolver
from wabot.logger import logger
from wabot.rate_limit import RateGuard
from wabot.stats import BotStats
from wabot.types import InboundMessage, Reply
from wabot.utils import create_background_task, same_user

PERMISSION_DENIED_TEXT = "⛔ Only the bot owner can use this command."
HANDLER_FAILED_TEXT = "❌ Something went wrong while running that command. Please try again."


class Outbound(Protocol):
    async def send_text(
        self, chat_id: str, text: str, *, mentions: list[str] | None = None
    ) -> None: ...


class CommandHandler(Protocol):
    name: str
    description: str
    admin_only: bool

    async def handle(
        self, chat_id: str, sender_id: str, args: str, is_group: bool
    ) -> Reply | None: ...


class DispatchOutcome(StrEnum):
    IGNORED = "ignored"  # not a command, or an unknown one
    DROPPED = "dropped"  # global rate ceiling hit, no reply
    REJECTED = "rejected"  # cooldown or permission, user was told
    EXECUTING = "executing"


@dataclass(frozen=True)
class ParsedCommand:
    name: str
    args: str


def parse_command(text: str, prefix: str) -> ParsedCommand | None:
    """``.AI  what is AI? `` → ``ParsedCommand("ai", "what is AI?")``."""
    if not text.startswith(prefix):
        return None
    body = text[len(prefix) :]
    if not body or body[0].isspace():
        return None
    parts = body.split(None, 1)
    args = parts[1].strip() if len(parts) > 1 else ""
    return ParsedCommand(name=parts[0].lower(), args=args)


def cooldown_text(remaining_seconds: float) -> str:
    wait = max(1, math.ceil(remaining_seconds))
    unit = "second" if wait == 1 else "seconds"
    return f"⏳ Please wait {wait} {unit} before sending another command."


class CommandDispatcher:
    def __init__(
        self,
        *,
        handlers: Mapping[str, CommandHandler],
        rate_guard: RateGuard,
        outbound: Outbound,
        resolver: ContactResolver,
        stats: BotStats,
        prefix: str = ".",
        owner: str | None = None,
        cooldown_seconds: float = 5.0,
        trusted_cooldown_seconds: float = 1.0,
        is_premium: Callable[[str], bool] | None = None,
    ) -> None:
        self._handlers = dict(handlers)
        self._rate_guard = rate_guard
        self._outbound = outbound
        self._resolver = resolver
        self._stats = stats
        self.prefix = prefix
        self._owner = owner
        self._cooldown = cooldown_seconds
        self._trusted_cooldown = trusted_cooldown_seconds
        self._is_premium = is_premium or (lambda _sender: False)
        self._in_flight: set[asyncio.Task[None]] = set()

    @property
    def handlers(self) -> Mapping[str, CommandHandler]:
        return self._handlers

    def is_owner(self, sender_id: str) -> bool:
        return self._owner is not None and same_user(sender_id, self._owner)

    def _cooldown_for(self, sender_id: str) -> float:
        if self.is_owner(sender_id) or self._is_premium(sender_id):
            return self._trusted_cooldown
        return self._cooldown

    async def dispatch(self, message: InboundMessage) -> DispatchOutcome:
        parsed = parse_command(message.text, self.prefix)
        if parsed is None:
            return DispatchOutcome.IGNORED
        handler = self._handlers.get(parsed.name)
        if handler is None:
            logger.debug("Unknown command ignored", command=parsed.name, chat=message.chat_id)
            return DispatchOutcome.IGNORED

        if not self._rate_guard.check_global_rate():
            self._stats.rate_limited += 1
            logger.warning("Global rate limit hit, command dropped", command=parsed.name)
            return DispatchOutcome.DROPPED

        decision = self._rate_guard.check_cooldown(
            message.sender_id, self._cooldown_for(message.sender_id)
        )
        if not decision.allowed:
            self._stats.cooldown_rejected += 1
            await self._outbound.send_text(
                message.chat_id, cooldown_text(decision.remaining_seconds)
            )
            return DispatchOutcome.REJECTED

        if handler.admin_only and not self.is_owner(message.sender_id):
            logger.warning(
                "Admin command refused", command=parsed.name, sender=message.sender_id
            )
            await self._outbound.send_text(message.chat_id, PERMISSION_DENIED_TEXT)
            return DispatchOutcome.REJECTED

        task = create_background_task(
            self._run(handler, parsed, message), name=f"command-{parsed.name}"
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return DispatchOutcome.EXECUTING

    async def _run(
        self, handler: CommandHandler, parsed: ParsedCommand, message: InboundMessage
    ) -> None:
        chat_name = await self._resolver.resolve(message.chat_id)
        logger.info(
            "Command received",
            command=parsed.name,
            chat=chat_name,
            chat_id=message.chat_id,
            sender=message.sender_id,
            group=message.is_group,
        )
        try:
            reply = await handler.handle(
                message.chat_id, message.sender_id, parsed.args, message.is_group
            )
        except Exception:
            self._stats.commands_failed += 1
            logger.exception("Command handler failed", command=parsed.name, chat=message.chat_id)
            reply = Reply(HANDLER_FAILED_TEXT)
        else:
            self._stats.commands_executed += 1

        if reply is not None:
            await self._outbound.send_text(message.chat_id, reply.text, mentions=reply.mentions)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def wait_idle(self) -> None:
        """Wait until every running handler has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def shutdown(self, grace: float) -> None:
        """Give running handlers ``grace`` seconds to finish, then cancel the rest."""
        if not self._in_flight:
            return
        pending = list(self._in_flight)
        _done, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.info("Cancelled in-flight commands at shutdown", count=len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
