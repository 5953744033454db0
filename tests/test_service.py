# tests/test_service.py

from __future__ import annotations

import asyncio

import pytest

from invoice_harvester.harvest.models import AckResult, ClientRef, Mode, QueuedTask, SessionState, WorkItem
from invoice_harvester.harvest.service import NO_CLIENT, CommandResult
from invoice_harvester.harvest.session_store import SessionStore

from .fakes import FakeChannel, FakeDownloadHistory, FakeExecutor

CLIENT = ClientRef(client_id="tab-1", window_id="win-1")


@pytest.mark.asyncio
async def test_commands_require_an_attached_client(make_service) -> None:
    svc = make_service()
    assert await svc.start_all() == CommandResult(ok=False, error=NO_CLIENT)
    assert await svc.start_subset(Mode.PDF) == CommandResult(ok=False, error=NO_CLIENT)
    assert await svc.retry("100", Mode.PDF) == CommandResult(ok=False, error=NO_CLIENT)


@pytest.mark.asyncio
async def test_attach_dedups_rows_and_keeps_them_when_omitted(make_service, store: SessionStore) -> None:
    svc = make_service()
    await svc.attach(CLIENT, [WorkItem("1", "a"), WorkItem("1", "b"), WorkItem("2", "a")])

    other = ClientRef(client_id="tab-2")
    result = await svc.attach(other)

    assert result.state.client_ref == other
    assert result.state.rows == [WorkItem("1", "a"), WorkItem("2", "a")]
    assert svc.get_state().state == store.read()


@pytest.mark.asyncio
async def test_start_skips_what_is_already_on_disk(make_service, history: FakeDownloadHistory, store: SessionStore) -> None:
    history.add("faktury/invoice/55/100.pdf")
    history.add("faktury/isdoc/55/200.isdoc")
    history.add("faktury/invoice/55/200.pdf")
    svc = make_service()
    await svc.attach(CLIENT, [WorkItem("100", "55"), WorkItem("200", "55")])

    result = await svc.start_all()

    assert result.state.queue == [QueuedTask("100", Mode.ISDOC)]
    assert store.read().done["200"].pdf is True
    await asyncio.wait_for(svc.runner.wait_idle(), timeout=2.0)


@pytest.mark.asyncio
async def test_second_start_after_completion_enqueues_nothing(
    make_service, history: FakeDownloadHistory, channel: FakeChannel
) -> None:
    svc = make_service(FakeExecutor(history))
    await svc.attach(CLIENT, [WorkItem("100", "55")])

    await svc.start_all()
    await asyncio.wait_for(svc.runner.wait_idle(), timeout=2.0)

    result = await svc.start_all()
    assert result.state.queue == []
    assert channel.statuses[-1] == "Start all: 0 tasks"
    await asyncio.wait_for(svc.runner.wait_idle(), timeout=2.0)


@pytest.mark.asyncio
async def test_stop_clears_queue_and_active(make_service, store: SessionStore, channel: FakeChannel) -> None:
    svc = make_service()
    store.write(client_ref=CLIENT, running=True, queue=[QueuedTask("1", Mode.PDF)])

    result = await svc.stop()

    assert result.ok
    assert (result.state.running, result.state.active, result.state.queue) == (False, None, [])
    assert channel.statuses == ["Stop."]


@pytest.mark.asyncio
async def test_clear_data_keeps_client_and_releases_waiters(make_service, store: SessionStore) -> None:
    svc = make_service()
    await svc.attach(CLIENT, [WorkItem("100", "55")])
    store.update_done("100", pdf=True)
    svc.runner.prediction.set("100", "55")
    wait = svc.runner.acks.await_ack("run-1", timeout=5.0)

    result = await svc.clear_data()

    assert result.state == SessionState(client_ref=CLIENT)
    assert store.read() == SessionState(client_ref=CLIENT)
    assert svc.runner.prediction.get() is None
    assert await asyncio.wait_for(wait, timeout=1.0) == AckResult(ok=False, error="cleared")


@pytest.mark.asyncio
async def test_clear_data_with_explicit_client(make_service, store: SessionStore) -> None:
    svc = make_service()
    other = ClientRef(client_id="tab-9")
    result = await svc.clear_data(other)
    assert result.state.client_ref == other


@pytest.mark.asyncio
async def test_retry_prepends_fresh_tasks_and_lifts_exhaustion(
    make_service, history: FakeDownloadHistory, store: SessionStore
) -> None:
    svc = make_service(FakeExecutor(history))
    await svc.attach(CLIENT, [WorkItem("100", "55"), WorkItem("200", "55")])
    store.update_done("100", group_id="55", last_error="button missing", exhausted=(Mode.PDF, Mode.ISDOC))
    store.write(queue=[QueuedTask("200", Mode.ISDOC, attempts=1)])

    result = await svc.retry("100", Mode.PDF)

    assert result.state.running is True
    assert result.state.queue == [QueuedTask("100", Mode.PDF), QueuedTask("200", Mode.ISDOC, attempts=1)]
    assert store.read().done["100"].exhausted == (Mode.ISDOC,)

    await asyncio.wait_for(svc.runner.wait_idle(), timeout=2.0)
    rec = store.read().done["100"]
    assert rec.pdf is True
    assert rec.exhausted == (Mode.ISDOC,)


@pytest.mark.asyncio
async def test_manual_retry_after_exhaustion_downloads(
    make_service, history: FakeDownloadHistory, store: SessionStore
) -> None:
    executor = FakeExecutor(history, ack="fail", produce=False)
    svc = make_service(executor, max_retries=1)
    await svc.attach(CLIENT, [WorkItem("100", "55")])
    await svc.start_subset(Mode.PDF)
    await asyncio.wait_for(svc.runner.wait_idle(), timeout=2.0)
    assert store.read().done["100"].exhausted == (Mode.PDF,)

    executor.ack, executor.produce = "ok", True
    await svc.retry("100", Mode.PDF)
    await asyncio.wait_for(svc.runner.wait_idle(), timeout=2.0)

    rec = store.read().done["100"]
    assert rec.pdf is True
    assert rec.exhausted == ()
    assert rec.last_error is None


@pytest.mark.asyncio
async def test_stale_execution_report_is_rejected(make_service) -> None:
    svc = make_service()
    assert await svc.report_execution_result("run-old", True) == CommandResult(ok=False, error="stale run id")


def test_suggest_filename_follows_the_prediction_slot(make_service) -> None:
    svc = make_service()
    assert svc.suggest_filename(filename="a.pdf") is None

    svc.runner.prediction.set("100", "55")
    assert svc.suggest_filename(filename="a.pdf") == "faktury/invoice/55/100.pdf"
    assert svc.suggest_filename(url="https://x/doc.isdocx") == "faktury/isdoc/55/100.isdocx"


@pytest.mark.asyncio
async def test_start_falls_back_to_stored_records_when_history_is_down(
    make_service, history: FakeDownloadHistory, store: SessionStore
) -> None:
    history.fail_pattern_queries = True
    history.fail_recent_queries = 1000
    svc = make_service()
    await svc.attach(CLIENT, [WorkItem("100", "55")])
    store.update_done("100", group_id="55", pdf=True)

    result = await svc.start_all()

    assert result.ok
    assert result.state.queue == [QueuedTask("100", Mode.ISDOC)]
    assert store.read().done["100"].pdf is True

    await svc.stop()
    await asyncio.wait_for(svc.runner.wait_idle(), timeout=2.0)
    await svc.runner.shutdown()
