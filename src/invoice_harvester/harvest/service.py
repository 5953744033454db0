# src/invoice_harvester/harvest/service.py

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from . import naming
from .models import ClientRef, Mode, QueuedTask, SessionState, WorkItem, dedupe_rows, expand, is_satisfied
from .runner import QueueRunner

logger = logging.getLogger(__name__)

NO_CLIENT = "no client attached"


@dataclass(slots=True, frozen=True)
class CommandResult:
    ok: bool
    error: str | None = None
    state: SessionState | None = None


class HarvestService:
    """
    Entry points for the attached UI / collaborators.

    Commands own `running`, `rows` and `client_ref`; the runner owns `active`,
    `queue` progress and completion records. Every command re-reads state before
    writing so it never clobbers the runner with a stale copy.
    """

    def __init__(self, runner: QueueRunner) -> None:
        self.runner = runner
        self.store = runner.store
        self.detector = runner.detector

    async def attach(self, client_ref: ClientRef, rows: Iterable[WorkItem] | None = None) -> CommandResult:
        st = self.store.read()
        new_rows = dedupe_rows(list(rows)) if rows is not None else st.rows
        st = self.store.write(client_ref=client_ref, rows=new_rows)
        logger.info("Attached client=%s rows=%d", client_ref.client_id, len(new_rows))
        await self.runner.push_state()
        return CommandResult(ok=True, state=st)

    def get_state(self) -> CommandResult:
        return CommandResult(ok=True, state=self.store.read())

    def suggest_filename(self, *, filename: str = "", mime: str = "", url: str = "") -> str | None:
        """
        Download-manager filename hook for the in-flight task.

        Must not await: the download manager needs the answer before the download starts.
        """
        return naming.suggest_filename(
            self.runner.prediction.get(),
            filename=filename,
            mime=mime,
            url=url,
            root=self.detector.root,
        )

    async def build_queue(self, rows: Iterable[WorkItem], mode: Mode) -> list[QueuedTask]:
        """Tasks for every (row, mode) not already satisfied on disk or in the records."""
        queue: list[QueuedTask] = []
        for row in rows:
            try:
                record = await self.detector.reconcile(row)
            except Exception:
                logger.exception("Reconcile failed item=%s; using stored record", row.item_id)
                record = self.store.read().done.get(row.item_id)
            for task in expand(row.item_id, mode, 0):
                if not is_satisfied(record, task.mode):
                    queue.append(task)
        return queue

    async def start_all(self) -> CommandResult:
        return await self.start_subset(Mode.BOTH)

    async def start_subset(self, mode: Mode) -> CommandResult:
        st = self.store.read()
        if st.client_ref is None:
            return CommandResult(ok=False, error=NO_CLIENT)

        queue = await self.build_queue(st.rows, mode)
        st = self.store.write(running=True, queue=queue)

        label = "all" if mode == Mode.BOTH else mode.value.upper()
        await self.runner.push_status(f"Start {label}: {len(queue)} tasks")
        await self.runner.push_state()
        self.runner.kick()
        return CommandResult(ok=True, state=st)

    async def stop(self) -> CommandResult:
        self.runner.halt("stopped")
        st = self.store.write(running=False, active=None, queue=[])
        await self.runner.push_status("Stop.")
        await self.runner.push_state()
        return CommandResult(ok=True, state=st)

    async def clear_data(self, client_ref: ClientRef | None = None) -> CommandResult:
        ref = client_ref or self.store.read().client_ref
        self.runner.clear_all()
        st = self.store.replace(SessionState(client_ref=ref)) if ref is not None else self.store.read()
        await self.runner.push_status("Data cleared.")
        await self.runner.push_state()
        return CommandResult(ok=True, state=st)

    async def retry(self, item_id: str, mode: Mode) -> CommandResult:
        """Manual retry: fresh attempts=0 tasks at the front, bypassing the retry cap."""
        st = self.store.read()
        if st.client_ref is None:
            return CommandResult(ok=False, error=NO_CLIENT)
        if not item_id:
            return CommandResult(ok=False, error="item_id is required")

        tasks = expand(item_id, mode, 0)
        record = st.done.get(item_id)
        if record is not None and record.exhausted:
            modes = {t.mode for t in tasks}
            self.store.update_done(item_id, exhausted=tuple(m for m in record.exhausted if m not in modes))

        st = self.store.write(running=True, queue=[*tasks, *self.store.read().queue])
        await self.runner.push_status(f"Retry queued: {item_id} ({mode.value})")
        await self.runner.push_state()
        self.runner.kick()
        return CommandResult(ok=True, state=st)

    async def report_execution_result(self, run_id: str, ok: bool, error: str | None = None) -> CommandResult:
        accepted = await self.runner.report_execution_result(run_id, ok, error)
        if not accepted:
            return CommandResult(ok=False, error="stale run id")
        return CommandResult(ok=True)
