"""Entry point for `python -m wabot` / `wabot`.

Subcommands:
    wabot              Run the bot (default)
    wabot check        Check the AI model, the vCard and the session store, then exit
"""

from __future__ import annotations

import argparse
import asyncio
import sys


def _run() -> None:
    from wabot.app import WabotApp

    app = WabotApp()
    sys.exit(asyncio.run(app.run()))


def _check() -> None:
    from wabot.app import WabotApp

    async def _go() -> bool:
        # No transport is opened; the factory is never called.
        app = WabotApp(transport_factory=_no_transport)
        await app.check_session()
        return await app.startup_check()

    sys.exit(0 if asyncio.run(_go()) else 1)


async def _no_transport(_auth):
    raise RuntimeError("transport not available in check mode")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="wabot",
        description="WhatsApp command bot",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("check", help="Run startup checks and scan the session store")

    args = parser.parse_args()

    match args.command:
        case "check":
            _check()
        case _:
            _run()


if __name__ == "__main__":
    main()
