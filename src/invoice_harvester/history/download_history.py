# src/invoice_harvester/history/download_history.py

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path

from ..core.ports import DownloadEntry
from ..harvest.models import DownloadHistoryError

logger = logging.getLogger(__name__)

IN_PROGRESS_SUFFIXES = (".part", ".crdownload", ".tmp")


class DirectoryDownloadHistory:
    """
    Download history backed by a downloads directory.

    Every regular file is an entry; paths are relative to the directory with
    POSIX separators. Files still being written (browser/curl temp suffixes)
    are reported as in_progress. Walking happens in a worker thread so a large
    or slow directory does not block the event loop.
    """

    def __init__(self, downloads_dir: str | Path) -> None:
        self._root = Path(downloads_dir)

    def _walk(self) -> list[DownloadEntry]:
        if not self._root.is_dir():
            raise DownloadHistoryError(f"downloads directory not found: {self._root}")

        out: list[DownloadEntry] = []
        for dirpath, _dirnames, filenames in os.walk(self._root):
            for name in filenames:
                full = Path(dirpath) / name
                try:
                    mtime = full.stat().st_mtime
                except OSError:
                    # Removed between listing and stat.
                    continue
                state = "in_progress" if name.lower().endswith(IN_PROGRESS_SUFFIXES) else "complete"
                rel = full.relative_to(self._root).as_posix()
                out.append(DownloadEntry(path=rel, state=state, started_at=mtime))
        return out

    async def _entries(self) -> list[DownloadEntry]:
        try:
            return await asyncio.to_thread(self._walk)
        except DownloadHistoryError:
            raise
        except OSError as e:
            raise DownloadHistoryError(f"failed to scan {self._root}: {e}") from e

    async def query_completed(self, pattern: str, *, limit: int = 1) -> list[DownloadEntry]:
        try:
            rx = re.compile(pattern)
        except re.error as e:
            raise DownloadHistoryError(f"bad pattern {pattern!r}: {e}") from e

        hits: list[DownloadEntry] = []
        for entry in await self._entries():
            if entry.complete and rx.search(entry.path):
                hits.append(entry)
                if len(hits) >= limit:
                    break
        return hits

    async def query_recent(self, limit: int) -> list[DownloadEntry]:
        entries = await self._entries()
        entries.sort(key=lambda e: e.started_at, reverse=True)
        return entries[: max(0, int(limit))]
