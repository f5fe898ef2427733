from __future__ import annotations

import json
import os
import sqlite3
import threading
from typing import List, Optional

from medledger.core.errors import DuplicateRecordError, ValidationError
from medledger.core.records.models import RecordMetadata, RecordStatus

_COLUMNS = (
    "record_id",
    "owner_id",
    "uploaded_by",
    "content_address",
    "integrity_hash",
    "encryption_hash",
    "ledger_tx_ref",
    "ledger_block_number",
    "status",
    "created_at",
    "verified_at",
    "iv",
    "tag",
    "size_bytes",
    "algorithm",
    "degraded_storage",
    "descriptive_json",
)


class RecordStore:
    """
    Record metadata (SQLite). Rows are never deleted; status only leaves `pending`.
    """

    def __init__(self, *, db_path: str):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init_db(self) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS records (
                      record_id TEXT PRIMARY KEY,
                      owner_id TEXT NOT NULL,
                      uploaded_by TEXT NOT NULL,
                      content_address TEXT NOT NULL,
                      integrity_hash TEXT NOT NULL,
                      encryption_hash TEXT NOT NULL,
                      ledger_tx_ref TEXT NOT NULL,
                      ledger_block_number INTEGER NOT NULL,
                      status TEXT NOT NULL,
                      created_at REAL NOT NULL,
                      verified_at REAL,
                      iv TEXT NOT NULL,
                      tag TEXT NOT NULL,
                      size_bytes INTEGER NOT NULL,
                      algorithm TEXT NOT NULL,
                      degraded_storage INTEGER NOT NULL,
                      descriptive_json TEXT
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_records_owner ON records(owner_id, created_at)")
                conn.commit()
            finally:
                conn.close()

    @staticmethod
    def _from_row(row: sqlite3.Row) -> RecordMetadata:
        return RecordMetadata(
            record_id=row["record_id"],
            owner_id=row["owner_id"],
            uploaded_by=row["uploaded_by"],
            content_address=row["content_address"],
            integrity_hash=row["integrity_hash"],
            encryption_hash=row["encryption_hash"],
            ledger_tx_ref=row["ledger_tx_ref"],
            ledger_block_number=int(row["ledger_block_number"]),
            status=RecordStatus(row["status"]),
            created_at=float(row["created_at"]),
            verified_at=row["verified_at"],
            iv=row["iv"],
            tag=row["tag"],
            size_bytes=int(row["size_bytes"]),
            algorithm=row["algorithm"],
            degraded_storage=bool(row["degraded_storage"]),
            descriptive=json.loads(row["descriptive_json"] or "{}"),
        )

    def insert(self, meta: RecordMetadata) -> None:
        values = (
            meta.record_id,
            meta.owner_id,
            meta.uploaded_by,
            meta.content_address,
            meta.integrity_hash,
            meta.encryption_hash,
            meta.ledger_tx_ref,
            int(meta.ledger_block_number),
            meta.status.value,
            float(meta.created_at),
            meta.verified_at,
            meta.iv,
            meta.tag,
            int(meta.size_bytes),
            meta.algorithm,
            1 if meta.degraded_storage else 0,
            json.dumps(meta.descriptive, ensure_ascii=False, sort_keys=True),
        )
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    f"INSERT INTO records({', '.join(_COLUMNS)}) VALUES ({', '.join('?' for _ in _COLUMNS)})",
                    values,
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise DuplicateRecordError(record_id=meta.record_id) from e
            finally:
                conn.close()

    def get(self, record_id: str) -> Optional[RecordMetadata]:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT * FROM records WHERE record_id=?", (str(record_id),)).fetchone()
            finally:
                conn.close()
        return self._from_row(row) if row else None

    def exists(self, record_id: str) -> bool:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT 1 FROM records WHERE record_id=?", (str(record_id),)).fetchone()
            finally:
                conn.close()
        return row is not None

    def list_for_owner(self, owner_id: str, *, limit: int = 500) -> List[RecordMetadata]:
        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute(
                    "SELECT * FROM records WHERE owner_id=? ORDER BY created_at DESC LIMIT ?",
                    (str(owner_id), int(limit)),
                ).fetchall()
            finally:
                conn.close()
        return [self._from_row(r) for r in rows]

    def transition_status(self, record_id: str, status: RecordStatus, *, at: float) -> bool:
        """pending -> verified|failed. Returns False when the record is no longer pending."""
        if status == RecordStatus.pending:
            raise ValidationError("Records cannot move back to pending.", record_id=record_id)
        verified_at = float(at) if status == RecordStatus.verified else None
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute(
                    "UPDATE records SET status=?, verified_at=? WHERE record_id=? AND status=?",
                    (status.value, verified_at, str(record_id), RecordStatus.pending.value),
                )
                conn.commit()
                return int(cur.rowcount or 0) == 1
            finally:
                conn.close()
