# src/invoice_harvester/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from typing import TYPE_CHECKING

from ..harvest.models import SessionState

if TYPE_CHECKING:
    from ..core.state import AppState

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


class ConsoleChannel:
    """
    UI push channel that prints to the terminal.

    State pushes are frequent (every poll tick), so only changes of the
    compact summary line are printed.
    """

    def __init__(self, stream=None) -> None:
        self._stream = stream or sys.stdout
        self._last_summary: str | None = None

    @staticmethod
    def summarize(state: SessionState) -> str:
        pdf = sum(1 for r in state.done.values() if r.pdf)
        isdoc = sum(1 for r in state.done.values() if r.isdoc)
        active = f"{state.active.item_id}/{state.active.mode.value}" if state.active else "-"
        return (
            f"rows={len(state.rows)} pdf={pdf} isdoc={isdoc} "
            f"queue={len(state.queue)} active={active} running={'yes' if state.running else 'no'}"
        )

    async def push_state(self, state: SessionState) -> None:
        summary = self.summarize(state)
        if summary == self._last_summary:
            return
        self._last_summary = summary
        self._stream.write(f"[{_ts_local()}] [STATE] {summary}\n")
        self._stream.flush()

    async def push_status(self, text: str) -> None:
        self._stream.write(f"[{_ts_local()}] [STATUS] {text}\n")
        self._stream.flush()


async def run_console_loop(state: AppState) -> None:
    # Late import: the command module pulls in the composition root.
    from ..cli.commands import registry as command_registry

    logger.info("Console connector started.")
    _print_ts("[CONSOLE] Use /attach, then /start. Use /help for commands. Use /exit to quit.\n")

    while True:
        try:
            user_input = (await asyncio.to_thread(input, ">>> ")).strip()
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not user_input:
            continue

        if user_input.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        try:
            reply = await command_registry.handle(state, user_input)
        except Exception:
            logger.exception("Command handler crashed.")
            reply = "Internal error while handling a command."

        if reply is None:
            reply = "Not a command. Use /help to list available commands."
        _print_ts(reply)

    logger.info("Console connector finished.")
