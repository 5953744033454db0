# src/invoice_harvester/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..harvest.runner import QueueRunner
from ..harvest.service import HarvestService
from ..harvest.session_store import SessionStore
from .ports import ClientChannel, DownloadHistory, Executor


@dataclass
class AppState:
    """Everything wired together by the composition root (cli/bootstrap.py)."""

    # Store Settings on the state for easy access in other modules later.
    settings: Any

    store: SessionStore
    history: DownloadHistory
    executor: Executor
    channel: ClientChannel
    runner: QueueRunner
    service: HarvestService
