"""Process-wide counters reported by the stats command."""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class BotStats:
    started_at: float = field(default_factory=time.monotonic)
    messages_seen: int = 0
    commands_executed: int = 0
    commands_failed: int = 0
    rate_limited: int = 0
    cooldown_rejected: int = 0
    ai_succeeded: int = 0
    ai_timeouts: int = 0
    ai_failures: int = 0
    reconnects: int = 0
    corrupt_entries_removed: int = 0
    key_invalidations: int = 0

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at


def format_duration(seconds: float) -> str:
    """``3725`` → ``1h 2m 5s``."""
    total = int(seconds)
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    parts = [f"{days}d"] if days else []
    if days or hours:
        parts.append(f"{hours}h")
    if days or hours or minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)
