"""Command throttling: a global per-window ceiling plus per-sender cooldowns."""

from __future__ import annotations

import time
from collections.abc import Callable

from wabot.types import CooldownDecision


class RateGuard:
    """Global command ceiling per window and minimum interval per sender.

    Both checks record the attempt when they allow it, inside the same
    synchronous call, so two commands from one sender in the same loop tick
    cannot both pass.
    """

    def __init__(
        self,
        *,
        max_commands: int = 30,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_commands = max_commands
        self._window = window_seconds
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._count = 0
        self._window_start = clock()
        self._last_command: dict[str, float] = {}

    def check_global_rate(self) -> bool:
        now = self._clock()
        if now > self._window_start + self._window:
            self._window_start = now
            self._count = 0
        if self._count >= self._max_commands:
            return False
        self._count += 1
        return True

    def check_cooldown(self, sender_id: str, interval: float | None = None) -> CooldownDecision:
        interval = self._cooldown if interval is None else interval
        now = self._clock()
        last = self._last_command.get(sender_id)
        if last is not None:
            remaining = interval - (now - last)
            if remaining > 0:
                return CooldownDecision(allowed=False, remaining_seconds=remaining)
        self._last_command[sender_id] = now
        return CooldownDecision(allowed=True)

    @property
    def window_count(self) -> int:
        return self._count
