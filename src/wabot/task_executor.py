"""Runs the external AI process and classifies what came back."""

from __future__ import annotations

import time

from wabot.logger import logger
from wabot.types import TaskErrorKind, TaskOutcome
from wabot.utils import CommandResult, run_command

TIMEOUT_TEXT = "⏱️ That question took too long to answer. Try something simpler."
NO_RESPONSE_TEXT = "✅ Done (no response text)."
FAILURE_PREFIX = "❌ The AI request failed"


def _excerpt(raw: str, limit: int) -> str:
    text = " ".join(raw.split())
    if len(text) <= limit:
        return text
    return text[: max(limit - 1, 0)].rstrip() + "…"


class TaskExecutor:
    """One external AI invocation per call: ``<command> run <model> <prompt>``.

    Outcomes are data, never exceptions. There is no retry; the user decides
    whether to ask again.
    """

    def __init__(
        self,
        *,
        command: str,
        model: str,
        timeout_seconds: float,
        status_timeout_seconds: float = 15.0,
        error_excerpt_chars: int = 200,
    ) -> None:
        self.command = command
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._status_timeout = status_timeout_seconds
        self._excerpt_chars = error_excerpt_chars

    async def run(self, prompt: str, timeout: float | None = None) -> TaskOutcome:
        timeout = self.timeout_seconds if timeout is None else timeout
        logger.info("AI task started", model=self.model, prompt=prompt[:50])
        start = time.monotonic()
        result = await run_command(
            [self.command, "run", self.model, prompt], timeout_seconds=timeout
        )
        elapsed = time.monotonic() - start
        outcome = self._classify(result, elapsed)
        logger.info(
            "AI task finished",
            succeeded=outcome.succeeded,
            error_kind=outcome.error_kind,
            elapsed=round(elapsed, 1),
        )
        return outcome

    def _classify(self, result: CommandResult, elapsed: float) -> TaskOutcome:
        if result.timed_out:
            return TaskOutcome(
                succeeded=False,
                text=TIMEOUT_TEXT,
                elapsed_seconds=elapsed,
                error_kind=TaskErrorKind.TIMEOUT,
            )
        if result.start_error is not None or result.returncode != 0:
            raw = (
                result.start_error or result.stderr or result.stdout or f"exit {result.returncode}"
            )
            logger.error("AI task failed", exit_code=result.returncode, error=raw[-500:])
            return TaskOutcome(
                succeeded=False,
                text=f"{FAILURE_PREFIX}: {_excerpt(raw, self._excerpt_chars)}",
                elapsed_seconds=elapsed,
                error_kind=TaskErrorKind.EXTERNAL_FAILURE,
            )
        return TaskOutcome(
            succeeded=True,
            text=result.stdout.strip() or NO_RESPONSE_TEXT,
            elapsed_seconds=elapsed,
        )

    async def check_model(self) -> bool:
        """Whether the configured model shows up in ``<command> list``."""
        result = await run_command([self.command, "list"], timeout_seconds=self._status_timeout)
        if result.returncode != 0 or result.timed_out:
            logger.debug(
                "Model listing failed",
                error=result.start_error or result.stderr[-200:],
                timed_out=result.timed_out,
            )
            return False
        return self.model.lower() in result.stdout.lower()
