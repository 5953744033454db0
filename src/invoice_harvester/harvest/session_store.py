# src/invoice_harvester/harvest/session_store.py

from __future__ import annotations

import contextlib
import dataclasses
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

from .models import CompletionRecord, Mode, SessionState

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class SessionStore:
    """
    SQLite-backed session state: one JSON document per session key.

    The whole record is read and written as a unit; write() is a shallow merge
    over the current record. All methods are synchronous and open their own
    short-lived connection, so a read-modify-write inside one call cannot
    interleave with another coroutine on the event loop.
    """

    def __init__(self, db_path: str | Path = "session.sqlite3", *, key: str = "harvest_session_state_v2") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._key = key
        self._ensure_schema()
        logger.info("SessionStore ready db=%s key=%s", self._db_path, self._key)

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(Exception):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session_state (
                    key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _load_raw(self, conn: sqlite3.Connection) -> Any:
        row = conn.execute("SELECT payload FROM session_state WHERE key = ?", (self._key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["payload"])
        except json.JSONDecodeError:
            logger.warning("Corrupt session payload for key=%s; using defaults.", self._key)
            return None

    def _save(self, conn: sqlite3.Connection, state: SessionState) -> None:
        conn.execute(
            """
            INSERT INTO session_state(key, payload, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
            """,
            (self._key, json.dumps(state.to_dict(), ensure_ascii=False), time.time()),
        )

    # ---- public API ----

    def read(self) -> SessionState:
        """Current state, or defaults when nothing (or an older version) is persisted."""
        conn = self._get_conn()
        try:
            return SessionState.from_dict(self._load_raw(conn))
        finally:
            conn.close()

    def write(self, **patch: Any) -> SessionState:
        """Shallow-merge patch over the current state and persist it in one transaction."""
        conn = self._get_conn()
        try:
            cur = SessionState.from_dict(self._load_raw(conn))
            nxt = dataclasses.replace(cur, **patch)
            self._save(conn, nxt)
            conn.commit()
            return nxt
        finally:
            conn.close()

    def replace(self, state: SessionState) -> SessionState:
        conn = self._get_conn()
        try:
            self._save(conn, state)
            conn.commit()
            return state
        finally:
            conn.close()

    def clear(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM session_state WHERE key = ?", (self._key,))
            conn.commit()
        finally:
            conn.close()
        logger.info("Session state cleared key=%s", self._key)

    def update_done(
        self,
        item_id: str,
        *,
        group_id: str | None = None,
        pdf: bool | None = None,
        isdoc: bool | None = None,
        last_error: Any = _UNSET,
        exhausted: tuple[Mode, ...] | None = None,
    ) -> CompletionRecord:
        """
        Merge a patch into done[item_id].

        Flags are OR-ed into the stored record: once pdf/isdoc is True it stays True.
        last_error defaults to "leave unchanged" so an explicit None clears it.
        """
        conn = self._get_conn()
        try:
            cur = SessionState.from_dict(self._load_raw(conn))
            prev = cur.done.get(item_id) or CompletionRecord()
            rec = CompletionRecord(
                group_id=prev.group_id if group_id is None else group_id,
                pdf=prev.pdf or bool(pdf),
                isdoc=prev.isdoc or bool(isdoc),
                updated_at=time.time(),
                last_error=prev.last_error if last_error is _UNSET else last_error,
                exhausted=prev.exhausted if exhausted is None else exhausted,
            )
            done = {**cur.done, item_id: rec}
            self._save(conn, dataclasses.replace(cur, done=done))
            conn.commit()
            return rec
        finally:
            conn.close()
