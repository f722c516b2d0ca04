"""Process wiring: builds every component from settings and runs the supervisor."""

from __future__ import annotations

import asyncio
import os
import signal

from wabot.commands import CommandDispatcher, build_registry
from wabot.config import Settings, get_settings
from wabot.contacts import ContactResolver
from wabot.logger import logger, set_level
from wabot.normalizer import MessageNormalizer
from wabot.premium import PremiumRegistry
from wabot.rate_limit import RateGuard
from wabot.session import CorruptionGuard, CredentialStore
from wabot.stats import BotStats
from wabot.supervisor import ConnectionSupervisor, TerminalAuthError
from wabot.task_executor import TaskExecutor
from wabot.transport import SessionRelay, TransportFactory
from wabot.types import RepairReport
from wabot.vcard import VCardError, load_vcard

# Hard-exit watchdog after a shutdown signal, on top of the drain grace.
_FORCE_EXIT_AFTER = 12.0


class WabotApp:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        s = settings or get_settings()
        self.settings = s
        set_level(s.logging.level)

        self.stats = BotStats()
        self.store = CredentialStore(s.session_dir)
        self.guard = CorruptionGuard(
            min_entry_bytes=s.session.min_entry_bytes,
            max_entry_bytes=s.session.max_entry_bytes,
            window_seconds=s.decrypt_guard.window_seconds,
            threshold=s.decrypt_guard.threshold,
        )
        self.relay = SessionRelay(
            send_timeout=s.transport.send_timeout_seconds,
            max_queued=s.transport.outgoing_queue_limit,
            max_send_attempts=s.transport.max_send_attempts,
        )
        self.resolver = ContactResolver(
            self.relay, lookup_timeout=s.contacts.lookup_timeout_seconds
        )
        self.rate_guard = RateGuard(
            max_commands=s.rate_limit.max_commands,
            window_seconds=s.rate_limit.window_seconds,
            cooldown_seconds=s.rate_limit.cooldown_seconds,
        )
        self.executor = TaskExecutor(
            command=s.ai.command,
            model=s.ai.model,
            timeout_seconds=s.ai.timeout_seconds,
            status_timeout_seconds=s.ai.status_timeout_seconds,
            error_excerpt_chars=s.ai.error_excerpt_chars,
        )
        self.premium = PremiumRegistry(s.premium_path)

        handlers = build_registry(
            messenger=self.relay,
            executor=self.executor,
            stats=self.stats,
            resolver=self.resolver,
            premium=self.premium,
            vcard_path=s.vcard_path,
            prefix=s.bot.prefix,
            ai_label=s.ai.label,
            premium_max_days=s.premium.max_days,
        )
        self.dispatcher = CommandDispatcher(
            handlers=handlers,
            rate_guard=self.rate_guard,
            outbound=self.relay,
            resolver=self.resolver,
            stats=self.stats,
            prefix=s.bot.prefix,
            owner=s.bot.owner,
            cooldown_seconds=s.rate_limit.cooldown_seconds,
            trusted_cooldown_seconds=s.rate_limit.trusted_cooldown_seconds,
            is_premium=self.premium.is_active,
        )

        if transport_factory is None:
            from wabot.channels.whatsapp import WhatsAppTransport

            transport_factory = WhatsAppTransport(s.session_dir)

        self.supervisor = ConnectionSupervisor(
            store=self.store,
            guard=self.guard,
            normalizer=MessageNormalizer(self.guard),
            dispatcher=self.dispatcher,
            relay=self.relay,
            transport_factory=transport_factory,
            stats=self.stats,
            reconnect=s.reconnect,
            auto_read=s.bot.auto_read,
        )
        self._shutting_down = False
        self._watchdog: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def startup_check(self) -> bool:
        """Log whether the AI model is installed and what the vCard holds.

        Returns True when both are usable. Never fatal: the bot still runs and
        the affected commands answer with an explanation.
        """
        ok = True
        if await self.executor.check_model():
            logger.info("AI model available", model=self.executor.model)
        else:
            ok = False
            logger.warning(
                "AI model not found, .ai will fail until it is pulled",
                model=self.executor.model,
                command=self.executor.command,
            )

        try:
            card = load_vcard(self.settings.vcard_path)
        except VCardError as err:
            ok = False
            logger.warning("vCard not usable", path=str(self.settings.vcard_path), error=str(err))
        else:
            logger.info(
                "vCard loaded",
                name=card.display_name,
                preview=card.content.splitlines()[:3],
            )
        return ok

    async def check_session(self) -> RepairReport:
        report = self.guard.scan(self.store)
        report.merge(await self.guard.check_databases(self.store))
        logger.info(
            "Session store checked",
            path=str(self.store.directory),
            removed=report.deleted_count,
        )
        return report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        loop = asyncio.get_running_loop()
        self._watchdog = loop.call_later(
            self.settings.transport.shutdown_grace_seconds + _FORCE_EXIT_AFTER,
            lambda: os._exit(1),
        )

        self.supervisor.request_stop()
        await self.dispatcher.shutdown(self.settings.transport.shutdown_grace_seconds)
        await self.supervisor.stop()

    async def run(self) -> int:
        """Run until stopped. Returns the process exit code."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
            )

        logger.info(
            "Starting bot",
            name=self.settings.bot.name,
            prefix=self.settings.bot.prefix,
            session_dir=str(self.store.directory),
        )
        await self.startup_check()

        try:
            await self.supervisor.run()
        except TerminalAuthError as err:
            logger.error(
                "WhatsApp session logged out. Delete the session directory and link the"
                " device again.",
                session_dir=str(self.store.directory),
                status=err.reason.status_code,
            )
            return 1
        finally:
            await self.dispatcher.shutdown(self.settings.transport.shutdown_grace_seconds)
            if self._watchdog is not None:
                self._watchdog.cancel()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

        logger.info("Bot stopped", **_stats_fields(self.stats))
        return 0


def _stats_fields(stats: BotStats) -> dict[str, int]:
    return {
        "messages": stats.messages_seen,
        "commands": stats.commands_executed,
        "failed": stats.commands_failed,
        "reconnects": stats.reconnects,
    }
