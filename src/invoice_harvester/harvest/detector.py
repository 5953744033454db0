# src/invoice_harvester/harvest/detector.py

"""
Completion detection.

The executor never tells us a file is done; the only proof is a finished
entry in the download history whose path matches the deterministic target.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass

from ..core.ports import DownloadEntry, DownloadHistory
from .models import CompletionRecord, Mode, WorkItem
from .naming import target_stem
from .session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TargetPrefixes:
    pdf: str
    isdoc: str


@dataclass(slots=True, frozen=True)
class Detection:
    pdf: bool = False
    isdoc: bool = False


def target_prefixes(group_id: str, item_id: str, *, root: str = "faktury") -> TargetPrefixes:
    return TargetPrefixes(
        pdf=target_stem(root, Mode.PDF, group_id, item_id) + ".",
        isdoc=target_stem(root, Mode.ISDOC, group_id, item_id) + ".",
    )


def path_has_prefix(path: str, prefix: str) -> bool:
    p = (path or "").replace("\\", "/")
    return f"/{prefix}" in p or prefix in p


def scan_entries(entries: list[DownloadEntry], prefixes: TargetPrefixes) -> Detection:
    pdf = False
    isdoc = False
    for entry in entries:
        if not entry.complete:
            continue
        if not pdf and path_has_prefix(entry.path, prefixes.pdf):
            pdf = True
        if not isdoc and path_has_prefix(entry.path, prefixes.isdoc):
            isdoc = True
        if pdf and isdoc:
            break
    return Detection(pdf=pdf, isdoc=isdoc)


class CompletionDetector:
    def __init__(
        self,
        history: DownloadHistory,
        store: SessionStore,
        *,
        root: str = "faktury",
        recent_window: int = 80,
        fallback_scan_limit: int = 500,
    ) -> None:
        self._history = history
        self._store = store
        self._root = root
        self._recent_window = max(1, int(recent_window))
        self._fallback_scan_limit = max(1, int(fallback_scan_limit))

    @property
    def root(self) -> str:
        return self._root

    def prefixes(self, group_id: str, item_id: str) -> TargetPrefixes:
        return target_prefixes(group_id, item_id, root=self._root)

    async def detect_from_store(self, group_id: str, item_id: str) -> Detection:
        """
        Ask the history for finished entries at either target path.

        Pattern queries may fail on a slow or partially unavailable store; in
        that case fall back to scanning a bounded window of recent entries.
        """
        prefixes = self.prefixes(group_id, item_id)
        pdf_pattern = rf"(^|[/\\]){re.escape(prefixes.pdf)}pdf$"
        isdoc_pattern = rf"(^|[/\\]){re.escape(prefixes.isdoc)}(isdoc|isdocx)$"

        try:
            pdf_items, isdoc_items = await asyncio.gather(
                self._history.query_completed(pdf_pattern, limit=1),
                self._history.query_completed(isdoc_pattern, limit=1),
            )
            return Detection(pdf=bool(pdf_items), isdoc=bool(isdoc_items))
        except Exception:
            logger.warning(
                "Pattern query failed for item=%s group=%s; scanning recent entries",
                item_id,
                group_id,
                exc_info=True,
            )

        entries = await self._history.query_recent(self._fallback_scan_limit)
        return scan_entries(entries, prefixes)

    async def scan_recent(self, group_id: str, item_id: str) -> Detection:
        """Polling scan: newest-first window of the history, complete entries only."""
        entries = await self._history.query_recent(self._recent_window)
        return scan_entries(entries, self.prefixes(group_id, item_id))

    async def reconcile(self, item: WorkItem) -> CompletionRecord:
        """
        Merge store-detected flags into done[item] (never downgrading a True flag).

        Persists only when something changed; clears last_error once both formats exist.
        """
        found = await self.detect_from_store(item.group_id, item.item_id)

        # Re-read after the suspension: commands may have touched the record meanwhile.
        prev = self._store.read().done.get(item.item_id) or CompletionRecord()
        pdf = prev.pdf or found.pdf
        isdoc = prev.isdoc or found.isdoc
        last_error = None if (pdf and isdoc) else prev.last_error

        changed = (
            pdf != prev.pdf
            or isdoc != prev.isdoc
            or prev.group_id != item.group_id
            or last_error != prev.last_error
        )
        if not changed:
            return prev

        logger.debug("Reconciled item=%s pdf=%s isdoc=%s", item.item_id, pdf, isdoc)
        return self._store.update_done(
            item.item_id,
            group_id=item.group_id,
            pdf=pdf,
            isdoc=isdoc,
            last_error=last_error,
        )
