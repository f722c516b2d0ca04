"""Shared utility functions.

Small helpers used across multiple modules: atomic JSON writes, logged
background tasks, JID parsing and async subprocess execution.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
from asyncio.subprocess import PIPE
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from wabot.logger import logger

GROUP_SUFFIX = "@g.us"
USER_SUFFIX = "@s.whatsapp.net"
BROADCAST_JID = "status@broadcast"


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Write JSON data to a file using atomic rename (tmp, then final).

    Readers either see the old content or the complete new content. A crash
    mid-write leaves at most a stray ``*.tmp`` file next to the target.

    Creates parent directories if they don't exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        fh.write(json.dumps(data, indent=indent))
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, path)


def is_group_jid(jid: str) -> bool:
    return jid.endswith(GROUP_SUFFIX)


def jid_user(jid: str) -> str:
    """Bare user part of a JID: ``628123:4@s.whatsapp.net`` → ``628123``."""
    return jid.split("@", 1)[0].split(":", 1)[0]


def to_user_jid(target: str) -> str | None:
    """Normalize a number, ``@mention`` or JID into a user JID.

    Returns None when the input does not contain a plausible phone number.
    """
    value = target.strip().lstrip("@")
    if "@" in value:
        user = jid_user(value)
    else:
        user = "".join(ch for ch in value if ch.isdigit() or ch == "+").lstrip("+")
    if not user.isdigit() or not 5 <= len(user) <= 20:
        return None
    return f"{user}{USER_SUFFIX}"


def same_user(a: str, b: str) -> bool:
    return bool(a) and bool(b) and jid_user(a) == jid_user(b)


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work where the result is not awaited but failures must appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks; logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here: this is a done-callback, not
        # an except handler, so the exception is passed explicitly.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


@dataclass
class CommandResult:
    """Result of an async subprocess execution."""

    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    start_error: str | None = None


async def run_command(
    argv: Sequence[str],
    *,
    timeout_seconds: float,
    cwd: str | None = None,
) -> CommandResult:
    """Run a program asynchronously with timeout and structured result.

    No shell is involved, so arguments (user prompts included) are passed
    verbatim. On timeout or cancellation the process is killed and reaped.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=PIPE,
            stderr=PIPE,
        )
    except OSError as exc:
        return CommandResult(returncode=None, stdout="", stderr="", start_error=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        await _kill(process)
        return CommandResult(returncode=None, stdout="", stderr="", timed_out=True)
    except asyncio.CancelledError:
        await _kill(process)
        raise

    return CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace").strip(),
        stderr=stderr.decode(errors="replace").strip(),
    )


async def _kill(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    with contextlib.suppress(Exception):
        await process.wait()
