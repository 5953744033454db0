# src/invoice_harvester/harvest/acks.py

from __future__ import annotations

import asyncio
import logging

from .models import AckResult

logger = logging.getLogger(__name__)

ACK_TIMEOUT_ERROR = "ack timeout"


class AckRegistry:
    """
    Outstanding dispatches waiting for the executor's acknowledgment, keyed by run id.

    Process-lifetime only: nothing here is persisted, which is why an `active`
    task found in persisted state after a restart is treated as orphaned.
    """

    def __init__(self) -> None:
        self._waiters: dict[str, asyncio.Future[AckResult]] = {}

    def __len__(self) -> int:
        return len(self._waiters)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._waiters

    def await_ack(self, run_id: str, timeout: float) -> asyncio.Future[AckResult]:
        """
        Register a waiter for run_id and start its deadline now.

        The returned future resolves with the executor's report, with a forced
        result (stop / clear), or with "ack timeout" once `timeout` elapses,
        whichever comes first. The clock runs from registration, so a dispatch
        that never returns cannot keep it from firing.
        """
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[AckResult] = loop.create_future()
        prev = self._waiters.get(run_id)
        if prev is not None and not prev.done():
            prev.set_result(AckResult(ok=False, error="superseded"))
        self._waiters[run_id] = fut

        timer = loop.call_later(max(0.0, timeout), self._expire, run_id, fut, timeout)
        fut.add_done_callback(lambda f: self._forget(run_id, f, timer))
        return fut

    def _expire(self, run_id: str, fut: asyncio.Future[AckResult], timeout: float) -> None:
        if fut.done():
            return
        logger.info("Ack timeout run_id=%s after %.1fs", run_id, timeout)
        fut.set_result(AckResult(ok=False, error=ACK_TIMEOUT_ERROR))

    def _forget(self, run_id: str, fut: asyncio.Future[AckResult], timer: asyncio.TimerHandle) -> None:
        timer.cancel()
        if self._waiters.get(run_id) is fut:
            del self._waiters[run_id]

    def resolve(self, run_id: str, result: AckResult) -> bool:
        """Resolve the waiter for run_id. Unknown or already-resolved ids are a no-op."""
        fut = self._waiters.pop(run_id, None)
        if fut is None or fut.done():
            return False
        fut.set_result(result)
        return True

    def resolve_all(self, error: str) -> int:
        """Force-resolve every outstanding waiter (stop / clear) so nobody blocks forever."""
        waiters, self._waiters = self._waiters, {}
        n = 0
        for fut in waiters.values():
            if not fut.done():
                fut.set_result(AckResult(ok=False, error=error))
                n += 1
        if n:
            logger.info("Force-resolved %d ack waiter(s): %s", n, error)
        return n
