# tests/test_shell_executor.py

from __future__ import annotations

import asyncio
import shlex
import sys
from pathlib import Path

import pytest

from invoice_harvester.core.ports import DispatchRequest
from invoice_harvester.executors.shell_executor import ShellCommandExecutor
from invoice_harvester.harvest.models import ExecutorError, Mode
from invoice_harvester.harvest.naming import PredictionCache

SCRIPT = """\
import os
import sys
import time
from pathlib import Path

stem = Path(os.environ["HARVEST_TARGET_STEM"])
if sys.argv[2] == "fail":
    sys.stderr.write("login required")
    sys.exit(3)
if sys.argv[2] == "slow":
    time.sleep(1)
stem.with_name(stem.name + "." + sys.argv[1]).write_text(os.environ["HARVEST_RUN_ID"])
"""


def _executor(
    tmp_path: Path,
    outcome: str,
    prediction: PredictionCache | None = None,
    *,
    ack_on_start: bool = False,
) -> ShellCommandExecutor:
    script = tmp_path / "fake_download.py"
    script.write_text(SCRIPT, "utf-8")
    template = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{mode}} {outcome}"
    return ShellCommandExecutor(
        template,
        downloads_dir=tmp_path / "dl",
        root="faktury",
        prediction=prediction,
        ack_on_start=ack_on_start,
    )


class Reports:
    def __init__(self) -> None:
        self.items: list[tuple[str, bool, str | None]] = []
        self.event = asyncio.Event()

    async def __call__(self, run_id: str, ok: bool, error: str | None) -> bool:
        self.items.append((run_id, ok, error))
        self.event.set()
        return True


@pytest.mark.asyncio
async def test_successful_command_reports_ok_and_writes_target(tmp_path: Path) -> None:
    executor = _executor(tmp_path, "ok")
    reports = Reports()
    request = DispatchRequest(item_id="100", group_id="55", mode=Mode.PDF, run_id="run-1")

    await executor.dispatch(request, reports)
    await asyncio.wait_for(reports.event.wait(), timeout=10.0)

    assert reports.items == [("run-1", True, None)]
    target = tmp_path / "dl" / "faktury" / "invoice" / "55" / "100.pdf"
    assert target.read_text() == "run-1"


@pytest.mark.asyncio
async def test_prediction_slot_drives_target_stem(tmp_path: Path) -> None:
    prediction = PredictionCache()
    prediction.set("777", "88")
    executor = _executor(tmp_path, "ok", prediction)
    reports = Reports()

    await executor.dispatch(DispatchRequest("100", "55", Mode.ISDOC, "run-2"), reports)
    await asyncio.wait_for(reports.event.wait(), timeout=10.0)

    assert (tmp_path / "dl" / "faktury" / "isdoc" / "88" / "777.isdoc").exists()


@pytest.mark.asyncio
async def test_failing_command_reports_exit_code_and_stderr(tmp_path: Path) -> None:
    executor = _executor(tmp_path, "fail")
    reports = Reports()

    await executor.dispatch(DispatchRequest("100", "55", Mode.PDF, "run-3"), reports)
    await asyncio.wait_for(reports.event.wait(), timeout=10.0)

    assert reports.items == [("run-3", False, "exit code 3: login required")]


@pytest.mark.asyncio
async def test_empty_template_is_rejected(tmp_path: Path) -> None:
    executor = ShellCommandExecutor("  ", downloads_dir=tmp_path)
    with pytest.raises(ExecutorError):
        await executor.dispatch(DispatchRequest("1", "g", Mode.PDF, "run-4"), Reports())


@pytest.mark.asyncio
async def test_missing_program_is_rejected(tmp_path: Path) -> None:
    executor = ShellCommandExecutor(str(tmp_path / "no-such-binary"), downloads_dir=tmp_path)
    with pytest.raises(ExecutorError):
        await executor.dispatch(DispatchRequest("1", "g", Mode.PDF, "run-5"), Reports())



async def _wait_for_exit(executor: ShellCommandExecutor) -> None:
    for _ in range(1000):
        if not executor._running:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("executor process never exited")


@pytest.mark.asyncio
async def test_ack_on_start_reports_before_a_slow_command_finishes(tmp_path: Path) -> None:
    executor = _executor(tmp_path, "slow", ack_on_start=True)
    reports = Reports()

    await executor.dispatch(DispatchRequest("100", "55", Mode.PDF, "run-6"), reports)

    assert reports.items == [("run-6", True, None)]
    target = tmp_path / "dl" / "faktury" / "invoice" / "55" / "100.pdf"
    assert not target.exists()

    await _wait_for_exit(executor)
    assert target.read_text() == "run-6"
    assert reports.items == [("run-6", True, None)]


@pytest.mark.asyncio
async def test_ack_on_start_only_logs_a_later_failure(tmp_path: Path) -> None:
    executor = _executor(tmp_path, "fail", ack_on_start=True)
    reports = Reports()

    await executor.dispatch(DispatchRequest("100", "55", Mode.PDF, "run-7"), reports)
    await _wait_for_exit(executor)

    assert reports.items == [("run-7", True, None)]
