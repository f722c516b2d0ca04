"""Prefixed chat commands."""

from wabot.commands.dispatcher import (
    CommandDispatcher,
    CommandHandler,
    DispatchOutcome,
    parse_command,
)
from wabot.commands.handlers import build_registry

__all__ = [
    "CommandDispatcher",
    "CommandHandler",
    "DispatchOutcome",
    "build_registry",
    "parse_command",
]
