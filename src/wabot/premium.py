"""Premium grants: who gets the relaxed cooldown, and until when."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from wabot.logger import logger
from wabot.utils import jid_user, write_json_atomic


def _now() -> datetime:
    return datetime.now(UTC)


class PremiumRegistry:
    """JSON-backed map of user → expiry (UTC ISO timestamp).

    The file is loaded lazily and rewritten atomically on every grant.
    """

    def __init__(self, path: Path, *, now: Callable[[], datetime] = _now) -> None:
        self._path = path
        self._now = now
        self._grants: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._grants is not None:
            return self._grants
        grants: dict[str, str] = {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            data = {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Premium file unreadable, starting empty", error=str(exc))
            data = {}
        if isinstance(data, dict):
            grants = {str(k): str(v) for k, v in data.items()}
        self._grants = grants
        return grants

    def grant(self, jid: str, days: int) -> datetime:
        """Extend (or start) a grant by ``days``. Returns the new expiry."""
        grants = self._load()
        user = jid_user(jid)
        now = self._now()
        current = self.expires_at(jid)
        base = current if current and current > now else now
        expiry = base + timedelta(days=days)
        updated = {**grants, user: expiry.isoformat()}
        write_json_atomic(self._path, updated, indent=2)
        self._grants = updated
        logger.info("Premium granted", user=user, days=days, expires=updated[user])
        return expiry

    def expires_at(self, jid: str) -> datetime | None:
        value = self._load().get(jid_user(jid))
        if value is None:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None

    def is_active(self, jid: str) -> bool:
        expiry = self.expires_at(jid)
        return expiry is not None and expiry > self._now()

    def active_count(self) -> int:
        now = self._now()
        return sum(
            1 for user in self._load() if (exp := self.expires_at(user)) is not None and exp > now
        )
