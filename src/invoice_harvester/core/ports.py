# src/invoice_harvester/core/ports.py

"""
Ports (interfaces) used by the queue runner.

The runner depends on Protocols instead of concrete implementations.
This keeps the download store / executor / UI swappable and makes testing easier.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from ..harvest.models import Mode, SessionState


@dataclass(slots=True, frozen=True)
class DownloadEntry:
    """One row of the download history: where the file landed and whether it finished."""

    path: str
    state: str = "complete"
    started_at: float = 0.0

    @property
    def complete(self) -> bool:
        return self.state == "complete"


@dataclass(slots=True, frozen=True)
class DispatchRequest:
    item_id: str
    group_id: str
    mode: Mode
    run_id: str


ReportCallback = Callable[[str, bool, "str | None"], Awaitable[bool]]
# report(run_id, ok, error) -> accepted


class DownloadHistory(Protocol):
    """
    External, eventually-consistent record of finished downloads.

    Implementations raise DownloadHistoryError when a query cannot be served.
    """

    def query_completed(self, pattern: str, *, limit: int = 1) -> Awaitable[list[DownloadEntry]]: ...

    def query_recent(self, limit: int) -> Awaitable[list[DownloadEntry]]: ...


class Executor(Protocol):
    """
    Performs a dispatched task out-of-process.

    dispatch() only hands the task off; the executor later calls report(...)
    with the outcome, or never does (covered by the ack timeout).
    """

    def dispatch(self, request: DispatchRequest, report: ReportCallback) -> Awaitable[None]: ...


class ClientChannel(Protocol):
    """UI push channel of the attached client. Best-effort: callers swallow failures."""

    def push_state(self, state: SessionState) -> Awaitable[None]: ...

    def push_status(self, text: str) -> Awaitable[None]: ...
