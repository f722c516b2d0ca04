"""Built-in commands: ai, vcf, stats, help, premium.

The registry is a fixed name → handler mapping assembled once at startup;
any name not in it is ignored by the dispatcher.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol

from wabot.contacts import ContactResolver
from wabot.premium import PremiumRegistry
from wabot.stats import BotStats, format_duration
from wabot.task_executor import TaskExecutor
from wabot.transport import Presence
from wabot.types import Reply, TaskErrorKind
from wabot.utils import jid_user, to_user_jid
from wabot.vcard import EXAMPLE_VCARD, VCardError, load_vcard

from .dispatcher import CommandHandler


class Messenger(Protocol):
    async def send_text(
        self, chat_id: str, text: str, *, mentions: list[str] | None = None
    ) -> None: ...

    async def send_contact(self, chat_id: str, display_name: str, vcard: str) -> None: ...

    async def send_presence(self, chat_id: str, presence: Presence) -> None: ...


def _format_limit(seconds: float) -> str:
    if seconds >= 60:
        minutes = math.ceil(seconds / 60)
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{int(seconds)} seconds"


class AiCommand:
    """Ask the local model a question.

    The reply arrives in three steps (typing indicator, acknowledgement, then
    the answer with its elapsed time) because an answer can take minutes.
    """

    name = "ai"
    description = "Ask the AI a question (`ai status` checks the model)"
    admin_only = False

    def __init__(
        self,
        messenger: Messenger,
        executor: TaskExecutor,
        stats: BotStats,
        *,
        prefix: str,
        label: str,
    ) -> None:
        self._messenger = messenger
        self._executor = executor
        self._stats = stats
        self._prefix = prefix
        self._label = label

    async def handle(self, chat_id: str, sender_id: str, args: str, is_group: bool) -> Reply | None:
        if not args:
            return Reply(f"❌ Please include a question, e.g. {self._prefix}ai what is AI?")

        if args.lower() == "status":
            model = self._executor.model
            if await self._executor.check_model():
                return Reply(f"✅ Model {model} is ready")
            return Reply(f"❌ Model {model} is not available")

        await self._messenger.send_presence(chat_id, "composing")
        await self._messenger.send_text(
            chat_id, f"⏳ Processing (max {_format_limit(self._executor.timeout_seconds)})..."
        )
        try:
            outcome = await self._executor.run(args)
        finally:
            await self._messenger.send_presence(chat_id, "paused")

        if outcome.succeeded:
            self._stats.ai_succeeded += 1
        elif outcome.error_kind == TaskErrorKind.TIMEOUT:
            self._stats.ai_timeouts += 1
        else:
            self._stats.ai_failures += 1
        return Reply(f"*🧠 {self._label}* ({outcome.elapsed_seconds:.1f}s)\n\n{outcome.text}")


class VcardCommand:
    name = "vcf"
    description = "Send the configured contact card"
    admin_only = False

    def __init__(self, messenger: Messenger, path: Path) -> None:
        self._messenger = messenger
        self._path = path

    async def handle(self, chat_id: str, sender_id: str, args: str, is_group: bool) -> Reply | None:
        try:
            card = load_vcard(self._path)
        except VCardError:
            return Reply(
                "❌ Could not read the vCard file. Make sure it exists and looks like this:\n\n"
                + EXAMPLE_VCARD
            )
        await self._messenger.send_contact(chat_id, card.display_name, card.content)
        return Reply(f"✅ Contact *{card.display_name}* sent!")


class StatsCommand:
    name = "stats"
    description = "Show bot statistics"
    admin_only = False

    def __init__(
        self, stats: BotStats, resolver: ContactResolver, premium: PremiumRegistry
    ) -> None:
        self._stats = stats
        self._resolver = resolver
        self._premium = premium

    async def handle(self, chat_id: str, sender_id: str, args: str, is_group: bool) -> Reply | None:
        s = self._stats
        lines = [
            "📊 *Bot stats*",
            f"⏱️ Uptime: {format_duration(s.uptime_seconds)}",
            f"💬 Messages seen: {s.messages_seen}",
            f"✅ Commands run: {s.commands_executed} (failed: {s.commands_failed})",
            f"🚦 Rate-limited: {s.rate_limited}, cooldown rejections: {s.cooldown_rejected}",
            f"🧠 AI answers: {s.ai_succeeded}, timeouts: {s.ai_timeouts}, "
            f"failures: {s.ai_failures}",
            f"🔌 Reconnects: {s.reconnects}",
            f"🧹 Corrupt records removed: {s.corrupt_entries_removed}, "
            f"key resets: {s.key_invalidations}",
            f"📇 Cached contacts: {len(self._resolver)}, "
            f"premium users: {self._premium.active_count()}",
        ]
        return Reply("\n".join(lines))


class HelpCommand:
    name = "help"
    description = "List available commands"
    admin_only = False

    def __init__(
        self, registry: Callable[[], Mapping[str, CommandHandler]], *, prefix: str
    ) -> None:
        self._registry = registry
        self._prefix = prefix

    async def handle(self, chat_id: str, sender_id: str, args: str, is_group: bool) -> Reply | None:
        lines = ["🤖 *Commands*"]
        for name, handler in sorted(self._registry().items()):
            suffix = " (owner only)" if handler.admin_only else ""
            lines.append(f"{self._prefix}{name}: {handler.description}{suffix}")
        return Reply("\n".join(lines))


class PremiumCommand:
    name = "premium"
    description = "Grant premium: premium <number> <days>"
    admin_only = True

    def __init__(self, premium: PremiumRegistry, *, prefix: str, max_days: int) -> None:
        self._premium = premium
        self._prefix = prefix
        self._max_days = max_days

    async def handle(self, chat_id: str, sender_id: str, args: str, is_group: bool) -> Reply | None:
        usage = Reply(f"Usage: {self._prefix}premium <number> <days>")
        parts = args.split()
        if len(parts) != 2:
            return usage
        target = to_user_jid(parts[0])
        if target is None or not parts[1].isdigit():
            return usage
        days = int(parts[1])
        if not 1 <= days <= self._max_days:
            return Reply(f"❌ Days must be between 1 and {self._max_days}.")

        expiry = self._premium.grant(target, days)
        unit = "day" if days == 1 else "days"
        return Reply(
            f"✅ @{jid_user(target)} is premium for {days} {unit} "
            f"(until {expiry:%Y-%m-%d %H:%M} UTC).",
            mentions=[target],
        )


def build_registry(
    *,
    messenger: Messenger,
    executor: TaskExecutor,
    stats: BotStats,
    resolver: ContactResolver,
    premium: PremiumRegistry,
    vcard_path: Path,
    prefix: str,
    ai_label: str,
    premium_max_days: int,
) -> dict[str, CommandHandler]:
    registry: dict[str, CommandHandler] = {}
    handlers: list[CommandHandler] = [
        AiCommand(messenger, executor, stats, prefix=prefix, label=ai_label),
        VcardCommand(messenger, vcard_path),
        StatsCommand(stats, resolver, premium),
        HelpCommand(lambda: registry, prefix=prefix),
        PremiumCommand(premium, prefix=prefix, max_days=premium_max_days),
    ]
    for handler in handlers:
        registry[handler.name] = handler
    return registry
