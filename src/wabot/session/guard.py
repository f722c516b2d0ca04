"""Credential-store integrity checks and decrypt-failure loop detection."""

from __future__ import annotations

import json
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path

import aiosqlite

from wabot.logger import logger
from wabot.session.store import CredentialStore
from wabot.types import RepairReport


class CorruptionGuard:
    """Finds and removes malformed session records; spots desynchronized chats.

    ``scan`` is always safe to call: it never raises, it only deletes what it
    cannot parse. ``check_databases`` does the same for the SQLite stores the
    transport keeps its signal sessions in, moving a damaged file aside.
    ``record_decrypt_failure`` keeps a rolling window of failure timestamps per
    chat and reports when a chat crosses the threshold.
    """

    def __init__(
        self,
        *,
        min_entry_bytes: int,
        max_entry_bytes: int,
        window_seconds: float = 300.0,
        threshold: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_bytes = min_entry_bytes
        self._max_bytes = max_entry_bytes
        self._window = window_seconds
        self._threshold = threshold
        self._clock = clock
        self._failures: dict[str, deque[float]] = {}

    # --- store scan ---

    def scan(self, store: CredentialStore) -> RepairReport:
        report = RepairReport()
        try:
            entries = store.entries()
        except OSError as exc:
            logger.warning("Session scan could not list records", error=str(exc))
            report.details.append(f"listing failed: {exc}")
            return report

        for path in entries:
            problem = self._inspect(path)
            if problem is None:
                continue
            try:
                store.delete(path)
            except OSError as exc:
                logger.warning("Failed to delete corrupt record", file=path.name, error=str(exc))
                report.details.append(f"{path.name}: {problem} (delete failed: {exc})")
                continue
            report.add(path.name, problem)

        if report.deleted_count:
            logger.warning(
                "Removed corrupt session records",
                count=report.deleted_count,
                details=report.details,
            )
        return report

    def _inspect(self, path: Path) -> str | None:
        """Describe what is wrong with a record, or None if it is well-formed."""
        if path.suffix == ".tmp":
            return "incomplete write"
        try:
            size = path.stat().st_size
            if size < self._min_bytes:
                return f"too small ({size} bytes)"
            if size > self._max_bytes:
                return f"too large ({size} bytes)"
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            return f"unreadable: {exc}"
        except json.JSONDecodeError as exc:
            return f"invalid JSON: {exc.msg}"
        if not isinstance(data, dict):
            return "not a JSON object"
        return None

    async def check_databases(self, store: CredentialStore) -> RepairReport:
        """Integrity-check the transport's SQLite stores; quarantine damaged ones.

        A quarantined store means the device has to be linked again.
        """
        report = RepairReport()
        try:
            databases = store.databases()
        except OSError as exc:
            logger.warning("Session scan could not list databases", error=str(exc))
            report.details.append(f"listing failed: {exc}")
            return report

        for path in databases:
            problem = await _quick_check(path)
            if problem is None:
                continue
            try:
                moved = store.quarantine(path)
            except OSError as exc:
                logger.warning("Failed to quarantine database", file=path.name, error=str(exc))
                report.details.append(f"{path.name}: {problem} (quarantine failed: {exc})")
                continue
            report.add(path.name, f"{problem} (moved to {moved.name})")

        if report.deleted_count:
            logger.warning(
                "Quarantined corrupt session database, a new device link is required",
                details=report.details,
            )
        return report

    # --- decrypt failure tracking ---

    def record_decrypt_failure(self, chat_id: str) -> bool:
        """Record one decrypt failure; True once the chat looks desynchronized."""
        now = self._clock()
        failures = self._failures.setdefault(chat_id, deque())
        failures.append(now)
        cutoff = now - self._window
        while failures and failures[0] < cutoff:
            failures.popleft()
        return len(failures) >= self._threshold

    def clear_decrypt_failures(self, chat_id: str) -> None:
        self._failures.pop(chat_id, None)

    def decrypt_failure_count(self, chat_id: str) -> int:
        return len(self._failures.get(chat_id, ()))


async def _quick_check(path: Path) -> str | None:
    """Run ``PRAGMA quick_check``; describe the damage, or None if the file is sound."""
    try:
        async with aiosqlite.connect(path) as db:
            async with db.execute("PRAGMA quick_check") as cursor:
                rows = await cursor.fetchall()
    except aiosqlite.DatabaseError as exc:
        return f"unreadable database: {exc}"
    problems = [str(row[0]) for row in rows if row[0] != "ok"]
    if problems:
        return "integrity check failed: " + "; ".join(problems[:3])
    return None
