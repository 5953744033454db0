# src/invoice_harvester/harvest/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

STATE_VERSION = 2


class Mode(StrEnum):
    """
    Which artifact(s) a task targets.

    BOTH is a convenience value only: it is expanded into PDF + ISDOC before
    dispatch and never reaches the executor.
    """

    PDF = "pdf"
    ISDOC = "isdoc"
    BOTH = "both"

    @classmethod
    def parse(cls, raw: str | None) -> Mode | None:
        if not raw:
            return None
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return None


class FailureKind(StrEnum):
    ACK_TIMEOUT = "ack_timeout"
    EXECUTION_FAILED = "execution_failed"
    POLL_TIMEOUT = "poll_timeout"
    ITEM_NOT_FOUND = "item_not_found"
    RETRY_EXHAUSTED = "retry_exhausted"


class HarvestError(Exception):
    """Base class for errors raised by harvest adapters."""


class DownloadHistoryError(HarvestError):
    """The download history could not serve a query."""


class ExecutorError(HarvestError):
    """A dispatch could not be handed to the executor."""


@dataclass(slots=True, frozen=True)
class ClientRef:
    """Opaque identity of the attached UI context (and its parent window)."""

    client_id: str
    window_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"client_id": self.client_id, "window_id": self.window_id}

    @classmethod
    def from_dict(cls, raw: Any) -> ClientRef | None:
        if not isinstance(raw, dict) or not raw.get("client_id"):
            return None
        window = raw.get("window_id")
        return cls(client_id=str(raw["client_id"]), window_id=None if window is None else str(window))


@dataclass(slots=True, frozen=True)
class WorkItem:
    item_id: str
    group_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"item_id": self.item_id, "group_id": self.group_id}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkItem:
        return cls(item_id=str(raw["item_id"]), group_id=str(raw["group_id"]))


@dataclass(slots=True, frozen=True)
class QueuedTask:
    item_id: str
    mode: Mode
    attempts: int = 0
    not_before: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "mode": self.mode.value,
            "attempts": self.attempts,
            "not_before": self.not_before,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QueuedTask:
        nb = raw.get("not_before")
        return cls(
            item_id=str(raw["item_id"]),
            mode=Mode(raw["mode"]),
            attempts=int(raw.get("attempts") or 0),
            not_before=float(nb) if nb is not None else None,
        )


@dataclass(slots=True, frozen=True)
class ActiveTask:
    """The single task currently dispatched; its presence marks a dispatch in progress."""

    item_id: str
    group_id: str
    mode: Mode
    run_id: str
    attempts: int
    started_at: float

    def to_task(self) -> QueuedTask:
        return QueuedTask(item_id=self.item_id, mode=self.mode, attempts=self.attempts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "group_id": self.group_id,
            "mode": self.mode.value,
            "run_id": self.run_id,
            "attempts": self.attempts,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> ActiveTask | None:
        if not isinstance(raw, dict):
            return None
        return cls(
            item_id=str(raw["item_id"]),
            group_id=str(raw.get("group_id") or ""),
            mode=Mode(raw["mode"]),
            run_id=str(raw.get("run_id") or ""),
            attempts=int(raw.get("attempts") or 0),
            started_at=float(raw.get("started_at") or 0.0),
        )


@dataclass(slots=True, frozen=True)
class CompletionRecord:
    group_id: str | None = None
    pdf: bool = False
    isdoc: bool = False
    updated_at: float = 0.0
    last_error: str | None = None
    exhausted: tuple[Mode, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "pdf": self.pdf,
            "isdoc": self.isdoc,
            "updated_at": self.updated_at,
            "last_error": self.last_error,
            "exhausted": [m.value for m in self.exhausted],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CompletionRecord:
        group = raw.get("group_id")
        return cls(
            group_id=None if group is None else str(group),
            pdf=bool(raw.get("pdf")),
            isdoc=bool(raw.get("isdoc")),
            updated_at=float(raw.get("updated_at") or 0.0),
            last_error=raw.get("last_error"),
            exhausted=tuple(Mode(m) for m in raw.get("exhausted") or ()),
        )


@dataclass(slots=True, frozen=True)
class SessionState:
    client_ref: ClientRef | None = None
    rows: list[WorkItem] = field(default_factory=list)
    done: dict[str, CompletionRecord] = field(default_factory=dict)
    running: bool = False
    active: ActiveTask | None = None
    queue: list[QueuedTask] = field(default_factory=list)

    def find_row(self, item_id: str) -> WorkItem | None:
        for row in self.rows:
            if row.item_id == item_id:
                return row
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "client_ref": self.client_ref.to_dict() if self.client_ref else None,
            "rows": [r.to_dict() for r in self.rows],
            "done": {k: v.to_dict() for k, v in self.done.items()},
            "running": self.running,
            "active": self.active.to_dict() if self.active else None,
            "queue": [t.to_dict() for t in self.queue],
        }

    @classmethod
    def from_dict(cls, raw: Any) -> SessionState:
        if not isinstance(raw, dict) or raw.get("version") != STATE_VERSION:
            return cls()
        return cls(
            client_ref=ClientRef.from_dict(raw.get("client_ref")),
            rows=[WorkItem.from_dict(r) for r in raw.get("rows") or []],
            done={str(k): CompletionRecord.from_dict(v) for k, v in (raw.get("done") or {}).items()},
            running=bool(raw.get("running")),
            active=ActiveTask.from_dict(raw.get("active")),
            queue=[QueuedTask.from_dict(t) for t in raw.get("queue") or []],
        )


@dataclass(slots=True, frozen=True)
class AckResult:
    ok: bool
    error: str | None = None


def expand(item_id: str, mode: Mode, attempts: int = 0) -> list[QueuedTask]:
    """BOTH -> [PDF, ISDOC] carrying the same attempts; a concrete mode -> itself."""
    if mode == Mode.BOTH:
        return [
            QueuedTask(item_id=item_id, mode=Mode.PDF, attempts=attempts),
            QueuedTask(item_id=item_id, mode=Mode.ISDOC, attempts=attempts),
        ]
    return [QueuedTask(item_id=item_id, mode=mode, attempts=attempts)]


def is_satisfied(record: CompletionRecord | None, mode: Mode) -> bool:
    if record is None:
        return False
    if mode == Mode.PDF:
        return record.pdf
    if mode == Mode.ISDOC:
        return record.isdoc
    return record.pdf and record.isdoc


def dedupe_rows(rows: list[WorkItem]) -> list[WorkItem]:
    """Keep the first occurrence of every item_id, preserving order."""
    seen: set[str] = set()
    out: list[WorkItem] = []
    for row in rows:
        if row.item_id in seen:
            continue
        seen.add(row.item_id)
        out.append(row)
    return out
