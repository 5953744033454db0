# src/invoice_harvester/harvest/runner.py

"""
Queue runner.

A single-flight loop that:
- recovers an orphaned active task (left behind by a crash or abnormal exit),
- pops the next task, dedups it against already-downloaded files,
- dispatches it to the executor and waits for a bounded acknowledgment,
- polls the download history until the expected file appears,
- requeues or abandons failed tasks according to the retry policy.

Every step re-reads the persisted state: commands (stop/clear/retry) may run
while the loop is suspended, so nothing read before an await is trusted after it.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ..core.ports import ClientChannel, DispatchRequest, Executor
from .acks import ACK_TIMEOUT_ERROR, AckRegistry
from .detector import CompletionDetector, Detection
from .models import (
    AckResult,
    ActiveTask,
    FailureKind,
    Mode,
    QueuedTask,
    WorkItem,
    expand,
    is_satisfied,
)
from .naming import PredictionCache
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class RunnerPhase(StrEnum):
    IDLE = "idle"
    DRAINING = "draining"


class Step(StrEnum):
    CHECK = "check"
    DEQUEUE = "dequeue"
    DISPATCH = "dispatch"
    POLL = "poll"
    SETTLE = "settle"
    EXIT = "exit"


@dataclass(slots=True, frozen=True)
class RunnerConfig:
    max_retries: int = 3
    ack_timeout_seconds: float = 30.0
    poll_timeout_seconds: float = 180.0
    poll_interval_seconds: float = 1.0
    settle_delay_seconds: float = 0.25
    retry_delay_seconds: float = 0.0

    @classmethod
    def from_settings(cls, settings: Any) -> RunnerConfig:
        d = cls()
        return cls(
            max_retries=max(1, int(getattr(settings, "max_retries", d.max_retries))),
            ack_timeout_seconds=float(getattr(settings, "ack_timeout_seconds", d.ack_timeout_seconds)),
            poll_timeout_seconds=float(getattr(settings, "poll_timeout_seconds", d.poll_timeout_seconds)),
            poll_interval_seconds=float(getattr(settings, "poll_interval_seconds", d.poll_interval_seconds)),
            settle_delay_seconds=float(getattr(settings, "settle_delay_seconds", d.settle_delay_seconds)),
            retry_delay_seconds=max(0.0, float(getattr(settings, "retry_delay_seconds", d.retry_delay_seconds))),
        )


@dataclass(slots=True, frozen=True)
class PollResult:
    ok: bool = False
    aborted: bool = False
    timeout: bool = False
    detection: Detection | None = None


@dataclass(slots=True)
class _Cycle:
    """What the current loop iteration is working on."""

    task: QueuedTask | None = None
    row: WorkItem | None = None
    active: ActiveTask | None = None


class QueueRunner:
    """
    Drains the persisted queue one task at a time.

    kick() starts the loop unless one is already draining; the guard is an
    in-process flag on purpose, it must not survive a restart.
    """

    def __init__(
        self,
        store: SessionStore,
        detector: CompletionDetector,
        executor: Executor,
        channel: ClientChannel,
        *,
        config: RunnerConfig | None = None,
        acks: AckRegistry | None = None,
        prediction: PredictionCache | None = None,
    ) -> None:
        self.store = store
        self.detector = detector
        self.executor = executor
        self.channel = channel
        self.config = config or RunnerConfig()
        self.acks = acks if acks is not None else AckRegistry()
        self.prediction = prediction if prediction is not None else PredictionCache()

        self._draining = False
        self._task: asyncio.Task[None] | None = None
        self._seq = itertools.count(1)
        self._handoffs: set[asyncio.Task[None]] = set()
        self._steps: dict[Step, Callable[[_Cycle], Awaitable[Step]]] = {
            Step.CHECK: self._on_check,
            Step.DEQUEUE: self._on_dequeue,
            Step.DISPATCH: self._on_dispatch,
            Step.POLL: self._on_poll,
            Step.SETTLE: self._on_settle,
        }

    # ---- lifecycle ----

    @property
    def phase(self) -> RunnerPhase:
        return RunnerPhase.DRAINING if self._draining else RunnerPhase.IDLE

    def kick(self) -> bool:
        """Start draining if idle. Re-entrant calls while a loop is active are no-ops."""
        if self._draining:
            return False
        self._draining = True
        self._task = asyncio.get_running_loop().create_task(self._drain(), name="harvest-runner")
        return True

    async def wait_idle(self) -> None:
        task = self._task
        if task is not None:
            await asyncio.shield(task)

    def halt(self, reason: str) -> None:
        """Release in-memory holds: prediction slot and every pending ack waiter."""
        self.prediction.clear()
        self.acks.resolve_all(reason)

    def clear_all(self) -> None:
        self.store.clear()
        self.halt("cleared")

    async def shutdown(self) -> None:
        """Cancel executor hand-offs that are still in flight."""
        pending = list(self._handoffs)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _drain(self) -> None:
        logger.info("Runner started")
        step = Step.CHECK
        cycle = _Cycle()
        try:
            while step != Step.EXIT:
                logger.debug("Runner step=%s", step.value)
                step = await self._steps[step](cycle)
                if step == Step.EXIT and self._has_pending_work():
                    # A start/retry landed while the last step was suspended.
                    step = Step.CHECK
        except Exception:
            # An active task left behind here is picked up by orphan recovery on the next kick.
            logger.exception("Runner crashed at step=%s", step.value)
        finally:
            self._draining = False
            self._task = None
            logger.info("Runner idle")

    # ---- steps ----

    async def _on_check(self, cycle: _Cycle) -> Step:
        cycle.task = cycle.row = cycle.active = None

        st = self.store.read()
        if not st.running or st.client_ref is None:
            return Step.EXIT

        if st.active is not None:
            orphan = st.active
            self.store.write(active=None, queue=[orphan.to_task(), *st.queue])
            logger.warning(
                "Recovered orphaned task item=%s mode=%s attempts=%s run_id=%s",
                orphan.item_id,
                orphan.mode.value,
                orphan.attempts,
                orphan.run_id,
            )
            await self.push_status(f"Recovering stuck item: {orphan.item_id} ({orphan.mode.value})")
            await self.push_state()
            return Step.CHECK

        return Step.DEQUEUE

    async def _on_dequeue(self, cycle: _Cycle) -> Step:
        st = self.store.read()
        if not st.queue:
            await self.push_status("Queue empty.")
            await self.push_state()
            return Step.EXIT

        now = time.time()
        due = next((i for i, t in enumerate(st.queue) if t.not_before is None or t.not_before <= now), None)
        if due is None:
            # Everything is backing off; wake up for the earliest one.
            earliest = min(t.not_before for t in st.queue if t.not_before is not None)
            delay = min(earliest - now, self.config.poll_interval_seconds)
            await asyncio.sleep(max(0.0, delay))
            return Step.CHECK

        head = st.queue[due]
        self.store.write(queue=[*st.queue[:due], *st.queue[due + 1 :]])

        row = st.find_row(head.item_id)
        if row is None:
            logger.warning("%s: item=%s dropped", FailureKind.ITEM_NOT_FOUND.value, head.item_id)
            await self.push_status(f"Item not found: {head.item_id}")
            await self.push_state()
            return Step.CHECK

        try:
            record = await self.detector.reconcile(row)
        except Exception:
            logger.exception("Reconcile failed item=%s; using stored record", row.item_id)
            record = self.store.read().done.get(row.item_id)

        if not self.store.read().running:
            return Step.CHECK

        if is_satisfied(record, head.mode):
            await self.push_status(f"Skipping (already downloaded): {row.item_id} ({head.mode.value})")
            await self.push_state()
            return Step.CHECK

        if head.mode == Mode.BOTH:
            expanded = expand(head.item_id, head.mode, head.attempts)
            self.store.write(queue=[*expanded, *self.store.read().queue])
            return Step.CHECK

        cycle.task = head
        cycle.row = row
        return Step.DISPATCH

    async def _on_dispatch(self, cycle: _Cycle) -> Step:
        task, row = cycle.task, cycle.row
        if task is None or row is None:
            raise RuntimeError("dispatch step without a dequeued task")

        run_id = self._next_run_id()
        active = ActiveTask(
            item_id=row.item_id,
            group_id=row.group_id,
            mode=task.mode,
            run_id=run_id,
            attempts=task.attempts,
            started_at=time.time(),
        )
        self.store.write(active=active)
        self.prediction.set(row.item_id, row.group_id)
        self.store.update_done(row.item_id, group_id=row.group_id, last_error=None)

        logger.info("Dispatch item=%s mode=%s run_id=%s attempts=%s", row.item_id, task.mode.value, run_id, task.attempts)
        await self.push_status(f"Starting: {row.item_id} ({task.mode.value})")
        await self.push_state()

        # The ack deadline runs from here, however long the hand-off itself takes.
        ack_wait = self.acks.await_ack(run_id, self.config.ack_timeout_seconds)
        request = DispatchRequest(item_id=row.item_id, group_id=row.group_id, mode=task.mode, run_id=run_id)
        handoff = asyncio.get_running_loop().create_task(self._hand_off(request), name=f"harvest-dispatch-{run_id}")
        self._handoffs.add(handoff)
        handoff.add_done_callback(self._handoffs.discard)
        ack = await ack_wait

        if not self._still_current(run_id):
            logger.info("Run %s abandoned after ack wait (stopped or superseded)", run_id)
            return Step.CHECK

        if not ack.ok:
            self._release_active()
            reason = ack.error or "execution failed"
            kind = FailureKind.ACK_TIMEOUT if reason == ACK_TIMEOUT_ERROR else FailureKind.EXECUTION_FAILED
            await self._apply_retry(task, reason, kind)
            return Step.CHECK

        cycle.active = active
        return Step.POLL

    async def _on_poll(self, cycle: _Cycle) -> Step:
        task, active = cycle.task, cycle.active
        if task is None or active is None:
            raise RuntimeError("poll step without an acknowledged task")

        result = await self.poll_for_completion(active)
        if result.aborted or not self._still_current(active.run_id):
            logger.info("Run %s abandoned during poll", active.run_id)
            return Step.CHECK

        if result.timeout:
            self._release_active()
            await self._apply_retry(task, f"timeout ({active.mode.value})", FailureKind.POLL_TIMEOUT)
            return Step.CHECK

        return Step.SETTLE

    async def _on_settle(self, cycle: _Cycle) -> Step:
        active = cycle.active
        if active is None:
            raise RuntimeError("settle step without an active task")

        self._release_active()
        logger.info("Done item=%s mode=%s run_id=%s", active.item_id, active.mode.value, active.run_id)
        await self.push_status(f"Done: {active.item_id} ({active.mode.value})")
        await self.push_state()
        await asyncio.sleep(self.config.settle_delay_seconds)
        return Step.CHECK

    # ---- polling / retry ----

    async def poll_for_completion(self, active: ActiveTask) -> PollResult:
        """
        Poll the download history until the active task's file(s) show up.

        Aborts as soon as the session is stopped or the run is superseded;
        returns timeout=True when poll_timeout_seconds elapse unsatisfied.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.poll_timeout_seconds

        while loop.time() < deadline:
            if not self._still_current(active.run_id):
                return PollResult(aborted=True)

            try:
                found = await self.detector.scan_recent(active.group_id, active.item_id)
            except Exception:
                logger.warning("Download history scan failed run_id=%s", active.run_id, exc_info=True)
                found = Detection()

            record = self.store.update_done(
                active.item_id,
                group_id=active.group_id,
                pdf=found.pdf,
                isdoc=found.isdoc,
                last_error=None,
            )
            await self.push_state()

            if is_satisfied(record, active.mode):
                return PollResult(ok=True, detection=Detection(pdf=record.pdf, isdoc=record.isdoc))

            await asyncio.sleep(self.config.poll_interval_seconds)

        return PollResult(timeout=True)

    async def _apply_retry(self, task: QueuedTask, reason: str, kind: FailureKind) -> None:
        attempts = task.attempts + 1
        cap = self.config.max_retries

        if attempts >= cap:
            prev = self.store.read().done.get(task.item_id)
            exhausted = tuple(prev.exhausted) if prev else ()
            if task.mode not in exhausted:
                exhausted = (*exhausted, task.mode)
            self.store.update_done(task.item_id, last_error=reason, exhausted=exhausted)
            logger.warning(
                "%s: item=%s mode=%s after %s attempts (last: %s: %s)",
                FailureKind.RETRY_EXHAUSTED.value,
                task.item_id,
                task.mode.value,
                attempts,
                kind.value,
                reason,
            )
            await self.push_status(f"Failed: {task.item_id} ({task.mode.value}) - {reason}")
            await self.push_state()
            return

        self.store.update_done(task.item_id, last_error=reason)

        not_before = None
        if self.config.retry_delay_seconds > 0:
            not_before = time.time() + self.config.retry_delay_seconds * 2 ** (attempts - 1)
        requeued = dataclasses.replace(task, attempts=attempts, not_before=not_before)
        self.store.write(queue=[*self.store.read().queue, requeued])

        logger.info("%s: item=%s mode=%s attempt %s/%s", kind.value, task.item_id, task.mode.value, attempts, cap - 1)
        await self.push_status(f"Retry {attempts}/{cap - 1}: {task.item_id} ({task.mode.value})")
        await self.push_state()

    # ---- executor callback ----

    async def _hand_off(self, request: DispatchRequest) -> None:
        try:
            await self.executor.dispatch(request, self.report_execution_result)
        except Exception as e:
            logger.exception("Executor dispatch failed run_id=%s", request.run_id)
            self.acks.resolve(request.run_id, AckResult(ok=False, error=f"dispatch failed: {e}"))

    async def report_execution_result(self, run_id: str, ok: bool, error: str | None = None) -> bool:
        """
        Executor callback. Accepted only for the currently active run;
        stale or duplicate reports are rejected.
        """
        if not self._still_active(run_id):
            logger.info("Rejected execution result for stale run_id=%s", run_id)
            return False
        return self.acks.resolve(run_id, AckResult(ok=bool(ok), error=None if ok else error))

    # ---- helpers ----

    def _next_run_id(self) -> str:
        return f"run-{int(time.time() * 1000)}-{next(self._seq)}"

    def _has_pending_work(self) -> bool:
        st = self.store.read()
        return st.running and st.client_ref is not None and bool(st.queue or st.active)

    def _still_active(self, run_id: str) -> bool:
        active = self.store.read().active
        return active is not None and active.run_id == run_id

    def _still_current(self, run_id: str) -> bool:
        st = self.store.read()
        return st.running and st.active is not None and st.active.run_id == run_id

    def _release_active(self) -> None:
        self.store.write(active=None)
        self.prediction.clear()

    async def push_state(self) -> None:
        st = self.store.read()
        if st.client_ref is None:
            return
        try:
            await self.channel.push_state(st)
        except Exception:
            logger.debug("push_state failed (client detached?)", exc_info=True)

    async def push_status(self, text: str) -> None:
        logger.info("status: %s", text)
        if self.store.read().client_ref is None:
            return
        try:
            await self.channel.push_status(text)
        except Exception:
            logger.debug("push_status failed (client detached?)", exc_info=True)
