# src/invoice_harvester/executors/shell_executor.py

"""Subprocess-based executor: one external command per dispatched task."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
from pathlib import Path

from ..core.ports import DispatchRequest, ReportCallback
from ..harvest.models import ExecutorError
from ..harvest.naming import PredictionCache, target_dir, target_stem

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 400


class ShellCommandExecutor:
    """
    Run a configured command template for every dispatch.

    The template is formatted with {item_id}, {group_id}, {mode}, {run_id} and
    {target_dir}; the same values (plus the predicted target stem) are exported
    as HARVEST_* environment variables. Exit code 0 is reported as success;
    anything else is reported with the exit code and the tail of stderr.

    dispatch() only starts the process; the report happens from a background
    task when the process exits, so the command has to finish within the ack
    timeout. With ack_on_start=True success is reported as soon as the process
    is running and the download poll decides the outcome; a non-zero exit is
    then only logged.
    """

    def __init__(
        self,
        command_template: str,
        *,
        downloads_dir: str | Path,
        root: str = "faktury",
        prediction: PredictionCache | None = None,
        ack_on_start: bool = False,
    ) -> None:
        self.command_template = command_template
        self.downloads_dir = Path(downloads_dir)
        self.root = root
        self.prediction = prediction
        self.ack_on_start = ack_on_start
        self._running: set[asyncio.Task[None]] = set()

    def _build_args(self, request: DispatchRequest) -> list[str]:
        stripped = (self.command_template or "").strip()
        if not stripped:
            raise ExecutorError("executor command template is empty (set HARVEST_EXECUTOR_COMMAND)")
        values = {
            "item_id": request.item_id,
            "group_id": request.group_id,
            "mode": request.mode.value,
            "run_id": request.run_id,
            "target_dir": str(self.downloads_dir / target_dir(self.root, request.mode, request.group_id)),
        }
        try:
            return [part.format(**values) for part in shlex.split(stripped)]
        except (KeyError, ValueError) as e:
            raise ExecutorError(f"bad executor command template: {e}") from e

    def _build_env(self, request: DispatchRequest) -> dict[str, str]:
        # The naming hook reads the prediction slot; fall back to the request when it is empty.
        predicted = self.prediction.get() if self.prediction is not None else None
        item_id = predicted.item_id if predicted else request.item_id
        group_id = predicted.group_id if predicted else request.group_id

        env = os.environ.copy()
        env["HARVEST_ITEM_ID"] = request.item_id
        env["HARVEST_GROUP_ID"] = request.group_id
        env["HARVEST_MODE"] = request.mode.value
        env["HARVEST_RUN_ID"] = request.run_id
        env["HARVEST_TARGET_STEM"] = str(self.downloads_dir / target_stem(self.root, request.mode, group_id, item_id))
        return env

    async def dispatch(self, request: DispatchRequest, report: ReportCallback) -> None:
        args = self._build_args(request)
        env = self._build_env(request)
        Path(env["HARVEST_TARGET_STEM"]).parent.mkdir(parents=True, exist_ok=True)

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                env=env,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ExecutorError(f"executor command not found: {args[0]}") from e
        except OSError as e:
            raise ExecutorError(f"executor failed to start: {e}") from e

        logger.info("Executor started pid=%s run_id=%s", proc.pid, request.run_id)
        if self.ack_on_start:
            await self._report(request, report, True, None)
        task = asyncio.get_running_loop().create_task(self._wait_and_report(proc, request, report))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _wait_and_report(
        self,
        proc: asyncio.subprocess.Process,
        request: DispatchRequest,
        report: ReportCallback,
    ) -> None:
        _stdout, stderr = await proc.communicate()
        code = proc.returncode
        if code == 0:
            ok, error = True, None
        else:
            tail = (stderr or b"").decode("utf-8", errors="replace").strip()[-STDERR_TAIL_CHARS:]
            ok, error = False, f"exit code {code}" + (f": {tail}" if tail else "")
        logger.info("Executor finished run_id=%s code=%s", request.run_id, code)

        if self.ack_on_start:
            if not ok:
                logger.warning("Executor exited after ack run_id=%s: %s", request.run_id, error)
            return
        await self._report(request, report, ok, error)

    async def _report(self, request: DispatchRequest, report: ReportCallback, ok: bool, error: str | None) -> None:
        try:
            accepted = await report(request.run_id, ok, error)
        except Exception:
            logger.exception("Reporting execution result failed run_id=%s", request.run_id)
            return
        if not accepted:
            logger.debug("Execution result ignored (stale) run_id=%s", request.run_id)

    async def shutdown(self) -> None:
        """Stop waiting on in-flight processes; their results would be stale after exit anyway."""
        tasks = list(self._running)
        for task in tasks:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*tasks, return_exceptions=True)
