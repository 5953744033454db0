# src/invoice_harvester/cli/commands.py

from __future__ import annotations

import inspect
import logging
import socket
from collections.abc import Awaitable, Callable

from ..core.state import AppState
from ..harvest.models import ClientRef, Mode, SessionState, WorkItem
from ..harvest.service import CommandResult
from .bootstrap import load_rows_file, parse_rows_arg

CommandHandler = Callable[[AppState, list[str]], "str | Awaitable[str]"]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /start, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(self, state: AppState, line: str) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command. Handlers may be coroutines.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        reply = handler(state, args)
        if inspect.isawaitable(reply):
            reply = await reply
        return reply

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def default_client_ref() -> ClientRef:
    return ClientRef(client_id=f"console@{socket.gethostname()}", window_id=None)


def format_state(st: SessionState) -> str:
    active = f"{st.active.item_id} ({st.active.mode.value}, {st.active.run_id})" if st.active else "-"
    lines = [
        "State:",
        f"  Client: {st.client_ref.client_id if st.client_ref else '-'}",
        f"  Running: {'yes' if st.running else 'no'}",
        f"  Active: {active}",
        f"  Queue: {len(st.queue)} task(s)",
        f"  Rows: {len(st.rows)}",
    ]
    for row in st.rows:
        rec = st.done.get(row.item_id)
        pdf = "PDF" if rec and rec.pdf else "pdf?"
        isdoc = "ISDOC" if rec and rec.isdoc else "isdoc?"
        extra = ""
        if rec and rec.exhausted:
            extra += f" failed[{','.join(m.value for m in rec.exhausted)}]"
        if rec and rec.last_error:
            extra += f" ({rec.last_error})"
        lines.append(f"    {row.item_id} / {row.group_id}: {pdf} {isdoc}{extra}")
    return "\n".join(lines)


def _reply(result: CommandResult, ok_text: str) -> str:
    if result.ok:
        return ok_text
    return f"Error: {result.error}"


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


async def cmd_attach(state: AppState, args: list[str]) -> str:
    """
    /attach                  -> attach this console, keep known rows
    /attach 100:55 101:55    -> attach with inline item:group rows
    /attach rows.json        -> attach with rows loaded from a JSON file
    """
    rows: list[WorkItem] | None = None
    if len(args) == 1 and args[0].lower().endswith(".json"):
        try:
            rows = load_rows_file(args[0])
        except (OSError, ValueError) as e:
            logger.warning("Cannot load rows from %s: %s", args[0], e)
            return f"Cannot load rows: {e}"
    elif args:
        rows = []
        for token in args:
            row = parse_rows_arg(token)
            if row is None:
                return f"Bad row {token!r}. Use item:group, e.g. 100:55."
            rows.append(row)

    result = await state.service.attach(default_client_ref(), rows)
    n = len(result.state.rows) if result.state else 0
    return _reply(result, f"Attached. {n} row(s) known.")


def cmd_state(state: AppState, args: list[str]) -> str:
    result = state.service.get_state()
    return format_state(result.state or SessionState())


async def cmd_start(state: AppState, args: list[str]) -> str:
    result = await state.service.start_all()
    return _reply(result, "Started (PDF + ISDOC).")


async def cmd_start_isdoc(state: AppState, args: list[str]) -> str:
    result = await state.service.start_subset(Mode.ISDOC)
    return _reply(result, "Started (ISDOC only).")


async def cmd_start_pdf(state: AppState, args: list[str]) -> str:
    result = await state.service.start_subset(Mode.PDF)
    return _reply(result, "Started (PDF only).")


async def cmd_stop(state: AppState, args: list[str]) -> str:
    result = await state.service.stop()
    return _reply(result, "Stopped.")


async def cmd_clear(state: AppState, args: list[str]) -> str:
    result = await state.service.clear_data()
    return _reply(result, "All session data cleared.")


async def cmd_retry(state: AppState, args: list[str]) -> str:
    """
    /retry <item_id>            -> retry both formats
    /retry <item_id> pdf|isdoc  -> retry one format
    """
    if not args:
        return "Usage: /retry <item_id> [pdf|isdoc|both]"

    mode = Mode.parse(args[1]) if len(args) > 1 else Mode.BOTH
    if mode is None:
        return "Usage: /retry <item_id> [pdf|isdoc|both]"

    result = await state.service.retry(args[0], mode)
    return _reply(result, f"Retry queued: {args[0]} ({mode.value}).")


def cmd_suggest(state: AppState, args: list[str]) -> str:
    """/suggest <filename> [mime] -> where the in-flight task would save that download"""
    if not args:
        return "Usage: /suggest <filename> [mime]"
    target = state.service.suggest_filename(filename=args[0], mime=args[1] if len(args) > 1 else "")
    if target is None:
        return "No target (nothing in flight, or not a PDF/ISDOC file)."
    return f"Save as: {target}"


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("attach", cmd_attach, help_text="Attach this console: /attach [item:group ... | rows.json].")
registry.register("state", cmd_state, help_text="Show queue, active task and per-item progress.", aliases=["status"])
registry.register("start", cmd_start, help_text="Download everything missing (PDF + ISDOC).", aliases=["start-all"])
registry.register("start-isdoc", cmd_start_isdoc, help_text="Download missing ISDOC files only.")
registry.register("start-pdf", cmd_start_pdf, help_text="Download missing PDF files only.")
registry.register("stop", cmd_stop, help_text="Stop the queue (running downloads are not killed).")
registry.register("clear", cmd_clear, help_text="Wipe all session data (keeps this console attached).")
registry.register("retry", cmd_retry, help_text="Force a retry: /retry <item_id> [pdf|isdoc|both].")
registry.register("suggest", cmd_suggest, help_text="Show the target path for a download: /suggest <filename> [mime].")
