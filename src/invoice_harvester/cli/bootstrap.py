# src/invoice_harvester/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations (store/history/executor/console) into AppState,
- loads work items from a JSON rows file for /attach.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from ..config import get_settings
from ..connectors.console_connector import ConsoleChannel
from ..core.state import AppState
from ..executors.shell_executor import ShellCommandExecutor
from ..harvest.detector import CompletionDetector
from ..harvest.models import WorkItem
from ..harvest.naming import PredictionCache
from ..harvest.runner import QueueRunner, RunnerConfig
from ..harvest.service import HarvestService
from ..harvest.session_store import SessionStore
from ..history.download_history import DirectoryDownloadHistory

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.state_db_path.parent.mkdir(parents=True, exist_ok=True)


def create_app(*, settings=None, channel=None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    store = SessionStore(settings.state_db_path, key=settings.session_key)
    history = DirectoryDownloadHistory(settings.downloads_dir)
    prediction = PredictionCache()
    executor = ShellCommandExecutor(
        settings.executor_command,
        downloads_dir=settings.downloads_dir,
        root=settings.download_root,
        prediction=prediction,
        ack_on_start=settings.executor_ack_on_start,
    )
    if channel is None:
        channel = ConsoleChannel()

    detector = CompletionDetector(
        history,
        store,
        root=settings.download_root,
        recent_window=settings.recent_window,
        fallback_scan_limit=settings.fallback_scan_limit,
    )
    runner = QueueRunner(
        store,
        detector,
        executor,
        channel,
        config=RunnerConfig.from_settings(settings),
        prediction=prediction,
    )

    return AppState(
        settings=settings,
        store=store,
        history=history,
        executor=executor,
        channel=channel,
        runner=runner,
        service=HarvestService(runner),
    )


def parse_rows_arg(token: str) -> WorkItem | None:
    """'100:55' -> WorkItem(item_id='100', group_id='55')"""
    item, sep, group = token.partition(":")
    item, group = item.strip(), group.strip()
    if not sep or not item or not group:
        return None
    return WorkItem(item_id=item, group_id=group)


def load_rows_file(path: str | Path) -> list[WorkItem]:
    """
    Load rows from JSON: a list of {"item_id": ..., "group_id": ...} objects.

    Entries without both ids are skipped.
    """
    p = Path(path).expanduser()
    data = json.loads(p.read_text("utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{p}: expected a JSON list of rows")

    out: list[WorkItem] = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        item = str(raw.get("item_id") or "").strip()
        group = str(raw.get("group_id") or "").strip()
        if item and group:
            out.append(WorkItem(item_id=item, group_id=group))
    logger.info("Loaded %d rows from %s", len(out), p)
    return out
