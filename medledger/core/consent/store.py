from __future__ import annotations

import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from medledger.core.consent.models import ConsentGrant, ConsentStatus
from medledger.core.errors import ValidationError


class ConsentStore:
    """
    Consent grants (SQLite).

    Status changes go through compare-and-set updates (`... WHERE status=?`), so two
    racing writers can never both move a grant out of the same state.
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
                    CREATE TABLE IF NOT EXISTS consents (
                      consent_id TEXT PRIMARY KEY,
                      owner_id TEXT NOT NULL,
                      grantee_id TEXT NOT NULL,
                      grantee_address TEXT NOT NULL,
                      purpose TEXT,
                      scope_json TEXT,
                      status TEXT NOT NULL,
                      requested_at REAL NOT NULL,
                      responded_at REAL,
                      expires_at REAL NOT NULL,
                      ledger_token_ref TEXT,
                      ledger_tx_ref TEXT,
                      revoked_at REAL,
                      revoke_reason TEXT,
                      emergency INTEGER NOT NULL DEFAULT 0
                    )
                    """
                )
                cols = {r["name"] for r in conn.execute("PRAGMA table_info(consents)").fetchall()}
                if "emergency" not in cols:
                    conn.execute("ALTER TABLE consents ADD COLUMN emergency INTEGER NOT NULL DEFAULT 0")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_consents_owner ON consents(owner_id, requested_at)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_consents_grantee ON consents(grantee_id, status)")
                conn.commit()
            finally:
                conn.close()

    @staticmethod
    def _from_row(row: sqlite3.Row) -> ConsentGrant:
        # uint256 token ids can exceed SQLite INTEGER; stored as text.
        token = row["ledger_token_ref"]
        return ConsentGrant(
            consent_id=row["consent_id"],
            owner_id=row["owner_id"],
            grantee_id=row["grantee_id"],
            grantee_address=row["grantee_address"],
            purpose=row["purpose"] or "",
            scope=json.loads(row["scope_json"] or "[]"),
            status=ConsentStatus(row["status"]),
            requested_at=float(row["requested_at"]),
            responded_at=row["responded_at"],
            expires_at=float(row["expires_at"]),
            ledger_token_ref=int(token) if token is not None else None,
            ledger_tx_ref=row["ledger_tx_ref"],
            revoked_at=row["revoked_at"],
            revoke_reason=row["revoke_reason"] or "",
            emergency=bool(row["emergency"]),
        )

    def insert(self, grant: ConsentGrant) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    INSERT INTO consents(consent_id, owner_id, grantee_id, grantee_address, purpose, scope_json, status,
                                         requested_at, responded_at, expires_at, ledger_token_ref, ledger_tx_ref, revoked_at, revoke_reason,
                                         emergency)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        grant.consent_id,
                        grant.owner_id,
                        grant.grantee_id,
                        grant.grantee_address,
                        grant.purpose,
                        json.dumps(list(grant.scope)),
                        grant.status.value,
                        grant.requested_at,
                        grant.responded_at,
                        grant.expires_at,
                        str(grant.ledger_token_ref) if grant.ledger_token_ref is not None else None,
                        grant.ledger_tx_ref,
                        grant.revoked_at,
                        grant.revoke_reason,
                        int(grant.emergency),
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise ValidationError("Consent id already exists.", consent_id=grant.consent_id) from e
            finally:
                conn.close()

    def get(self, consent_id: str) -> Optional[ConsentGrant]:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT * FROM consents WHERE consent_id=?", (str(consent_id),)).fetchone()
            finally:
                conn.close()
        return self._from_row(row) if row else None

    def _list(self, column: str, value: str, status: Optional[ConsentStatus], limit: int) -> List[ConsentGrant]:
        sql = f"SELECT * FROM consents WHERE {column}=?"
        params: list[Any] = [str(value)]
        if status is not None:
            sql += " AND status=?"
            params.append(ConsentStatus(status).value)
        sql += " ORDER BY requested_at DESC LIMIT ?"
        params.append(int(limit))
        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        return [self._from_row(r) for r in rows]

    def list_for_owner(self, owner_id: str, *, status: Optional[ConsentStatus] = None, limit: int = 500) -> List[ConsentGrant]:
        return self._list("owner_id", owner_id, status, limit)

    def list_for_grantee(self, grantee_id: str, *, status: Optional[ConsentStatus] = None, limit: int = 500) -> List[ConsentGrant]:
        return self._list("grantee_id", grantee_id, status, limit)

    def transition(self, consent_id: str, *, expected: ConsentStatus, new: ConsentStatus, fields: Optional[Dict[str, Any]] = None) -> bool:
        """Compare-and-set on status. Returns False when the grant was not in `expected`."""
        updates: Dict[str, Any] = {"status": ConsentStatus(new).value}
        for k, v in (fields or {}).items():
            if k not in ("responded_at", "ledger_token_ref", "ledger_tx_ref", "revoked_at", "revoke_reason"):
                raise ValueError(f"unsupported consent field: {k}")
            updates[k] = str(v) if (k == "ledger_token_ref" and v is not None) else v
        sets = ", ".join(f"{k}=?" for k in updates)
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute(
                    f"UPDATE consents SET {sets} WHERE consent_id=? AND status=?",
                    (*updates.values(), str(consent_id), ConsentStatus(expected).value),
                )
                conn.commit()
                return int(cur.rowcount or 0) == 1
            finally:
                conn.close()
