# tests/conftest.py

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace

import pytest

from invoice_harvester.cli.bootstrap import create_app
from invoice_harvester.core.state import AppState
from invoice_harvester.harvest.detector import CompletionDetector
from invoice_harvester.harvest.models import ClientRef
from invoice_harvester.harvest.runner import QueueRunner, RunnerConfig
from invoice_harvester.harvest.service import HarvestService
from invoice_harvester.harvest.session_store import SessionStore

from .fakes import FakeChannel, FakeDownloadHistory, FakeExecutor

CLIENT = ClientRef(client_id="tab-1", window_id="win-1")


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with create_app and the runner.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic. Timings are tiny so the
    queue drains in milliseconds.
    """
    downloads = tmp_path / "downloads"
    downloads.mkdir()
    return SimpleNamespace(
        app_name="invoice-harvester-test",
        log_level="DEBUG",
        console_enabled=False,
        # Paths (tmp per test run)
        data_dir=tmp_path / "data",
        state_db_path=tmp_path / "data" / "session.sqlite3",
        session_key="test_session",
        downloads_dir=downloads,
        download_root="faktury",
        executor_command="",
        executor_ack_on_start=False,
        # Queue tuning
        max_retries=3,
        ack_timeout_seconds=0.05,
        poll_timeout_seconds=0.3,
        poll_interval_seconds=0.01,
        settle_delay_seconds=0.0,
        retry_delay_seconds=0.0,
        recent_window=80,
        fallback_scan_limit=500,
    )


@pytest.fixture()
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "session.sqlite3", key="test_session")


@pytest.fixture()
def history() -> FakeDownloadHistory:
    return FakeDownloadHistory()


@pytest.fixture()
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture()
def make_runner(
    settings: SimpleNamespace,
    store: SessionStore,
    history: FakeDownloadHistory,
    channel: FakeChannel,
) -> Callable[..., QueueRunner]:
    """
    Build a QueueRunner over the real SQLite store and fake collaborators.

    Keyword overrides are applied on top of the test settings.
    """

    def _make(executor: FakeExecutor | None = None, *, root: str = "faktury", **overrides) -> QueueRunner:
        cfg = SimpleNamespace(**{**vars(settings), **overrides})
        detector = CompletionDetector(
            history,
            store,
            root=root,
            recent_window=cfg.recent_window,
            fallback_scan_limit=cfg.fallback_scan_limit,
        )
        return QueueRunner(
            store,
            detector,
            executor or FakeExecutor(history, root=root),
            channel,
            config=RunnerConfig.from_settings(cfg),
        )

    return _make


@pytest.fixture()
def make_service(make_runner) -> Callable[..., HarvestService]:
    def _make(executor: FakeExecutor | None = None, **kwargs) -> HarvestService:
        return HarvestService(make_runner(executor, **kwargs))

    return _make


@pytest.fixture()
def app(settings: SimpleNamespace, channel: FakeChannel) -> AppState:
    """AppState wired by the real composition root, with a recording channel."""
    return create_app(settings=settings, channel=channel)
