# src/invoice_harvester/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs the console connector on the
event loop. The queue runner is started by /start (or by a persisted running
session, which also recovers an orphaned in-flight task).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from ..cli.bootstrap import create_app
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _shutdown(state) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    try:
        await state.runner.shutdown()
    except Exception:
        logger.debug("Runner shutdown failed.", exc_info=True)
    try:
        await state.executor.shutdown()
    except Exception:
        logger.debug("Executor shutdown failed.", exc_info=True)
    # SessionStore uses short-lived sqlite connections per call; no explicit close required.


async def _run(settings) -> None:
    state = create_app(settings=settings)

    # A session left running by a previous process resumes here; a stale
    # `active` entry is requeued by the runner's orphan recovery.
    st = state.store.read()
    if st.running and st.client_ref is not None:
        logger.info("Resuming running session (queue=%d, active=%s)", len(st.queue), bool(st.active))
        state.runner.kick()

    stop_main = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Some platforms do not support add_signal_handler (e.g. Windows).
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_main.set)

    try:
        if settings.console_enabled:
            console = asyncio.create_task(run_console_loop(state))
            waiter = asyncio.create_task(stop_main.wait())
            await asyncio.wait({console, waiter}, return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()
        else:
            logger.info("Console disabled. Draining the persisted queue only. Press Ctrl+C to stop.")
            await stop_main.wait()
    finally:
        await _shutdown(state)


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s...", settings.app_name)
    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        pass
    logger.info("Bye.")


if __name__ == "__main__":
    main()
