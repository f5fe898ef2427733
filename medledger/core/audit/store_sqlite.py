from __future__ import annotations

import json
import os
import sqlite3
from typing import Any, Dict, List, Optional


class AuditSqliteIndex:
    """Query index over the JSONL log. Derived data: can be dropped and rebuilt."""

    def __init__(self, *, path: str):
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._init()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init(self) -> None:
        conn = self._conn()
        try:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS audit_entries (
                      seq INTEGER PRIMARY KEY,
                      audit_id TEXT NOT NULL,
                      ts REAL NOT NULL,
                      trace_id TEXT,
                      actor_id TEXT,
                      action TEXT,
                      subject_id TEXT,
                      ledger_tx_ref TEXT,
                      outcome TEXT,
                      json TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_subject ON audit_entries(subject_id, seq);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_entries(actor_id, seq);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_tx ON audit_entries(ledger_tx_ref);")
        finally:
            conn.close()

    def upsert(self, entry: Dict[str, Any]) -> None:
        conn = self._conn()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO audit_entries(seq, audit_id, ts, trace_id, actor_id, action, subject_id, ledger_tx_ref, outcome, json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(entry["seq"]),
                        str(entry.get("audit_id")),
                        float(entry.get("timestamp") or 0.0),
                        entry.get("trace_id"),
                        str(entry.get("actor_id") or ""),
                        str(entry.get("action") or ""),
                        str(entry.get("subject_id") or ""),
                        entry.get("ledger_tx_ref"),
                        str(entry.get("outcome") or ""),
                        json.dumps(entry, ensure_ascii=False),
                    ),
                )
        finally:
            conn.close()

    def query(
        self,
        *,
        subject_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        ledger_tx_ref: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        newest_first: bool = True,
        limit: int = 200,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        where = []
        params: list[Any] = []
        for col, val in (
            ("subject_id", subject_id),
            ("actor_id", actor_id),
            ("action", action),
            ("ledger_tx_ref", ledger_tx_ref),
        ):
            if val:
                where.append(f"{col} = ?")
                params.append(str(val))
        if since is not None:
            where.append("ts >= ?")
            params.append(float(since))
        if until is not None:
            where.append("ts <= ?")
            params.append(float(until))

        sql = "SELECT json FROM audit_entries"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY seq " + ("DESC" if newest_first else "ASC") + " LIMIT ? OFFSET ?"
        params.append(int(limit))
        params.append(int(offset))
        conn = self._conn()
        try:
            return [json.loads(blob) for (blob,) in conn.execute(sql, params)]
        finally:
            conn.close()

    def count(self) -> int:
        conn = self._conn()
        try:
            row = conn.execute("SELECT COUNT(1) FROM audit_entries").fetchone()
            return int(row[0] if row else 0)
        finally:
            conn.close()

    def drop_all(self) -> None:
        conn = self._conn()
        try:
            with conn:
                conn.execute("DELETE FROM audit_entries;")
        finally:
            conn.close()
