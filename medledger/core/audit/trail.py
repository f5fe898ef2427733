from __future__ import annotations

import logging
import os
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional

from medledger.core.audit.hasher import GENESIS_HASH, hash_matches, strip_chain
from medledger.core.audit.models import AuditEntry, AuditOutcome, IntegrityReport
from medledger.core.audit.store_jsonl import AuditJsonlStore
from medledger.core.audit.store_sqlite import AuditSqliteIndex
from medledger.core.errors import ValidationError
from medledger.core.events import redact
from medledger.core.ledger.models import LedgerReceipt
from medledger.core.trace import current_trace_id

logger = logging.getLogger("medledger.audit")


class AuditTrail:
    """
    Append-only, hash-chained, sequenced audit log.

    The JSONL file is the source of truth; the SQLite index only serves queries and can
    be rebuilt with `rebuild_index()`. Every entry that references a ledger transaction
    carries the confirmed block number of that transaction.
    """

    def __init__(
        self,
        *,
        path_jsonl: str,
        sqlite_path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.path_jsonl = path_jsonl
        self.head_path = os.path.join(os.path.dirname(path_jsonl), "head.json")
        self._jsonl = AuditJsonlStore(path=path_jsonl, head_path=self.head_path)
        self._sqlite = AuditSqliteIndex(path=sqlite_path) if sqlite_path else None
        self._clock = clock

    # ---- writes ----
    def append(self, entry: AuditEntry) -> AuditEntry:
        if entry.ledger_tx_ref and entry.ledger_block_number is None:
            raise ValidationError(
                "Audit entries may only reference confirmed ledger transactions.",
                ledger_tx_ref=entry.ledger_tx_ref,
            )
        if entry.ledger_block_number is not None and not entry.ledger_tx_ref:
            raise ValidationError("Audit entry has a block number without a transaction reference.")
        payload = strip_chain(entry.model_dump(mode="json"))
        payload["details"] = redact(payload.get("details") or {})
        rec = self._jsonl.append(payload)
        if self._sqlite is not None:
            try:
                self._sqlite.upsert(strip_chain(rec))
            except sqlite3.Error:
                logger.warning("Audit index update failed for seq=%s; run rebuild_index().", rec.get("seq"), exc_info=True)
        return AuditEntry.model_validate(rec)

    def record(
        self,
        actor_id: str,
        action: str,
        subject_id: str,
        *,
        receipt: Optional[LedgerReceipt] = None,
        outcome: AuditOutcome | str = AuditOutcome.success,
        details: Optional[Dict[str, Any]] = None,
        trace_id: Optional[str] = None,
    ) -> AuditEntry:
        d = dict(details or {})
        if receipt is not None:
            d.setdefault("gas_used", receipt.gas_used)
        return self.append(
            AuditEntry(
                timestamp=float(self._clock()),
                trace_id=trace_id or current_trace_id(),
                actor_id=str(actor_id),
                action=str(action),
                subject_id=str(subject_id),
                ledger_tx_ref=receipt.tx_ref if receipt is not None else None,
                ledger_block_number=receipt.block_number if receipt is not None else None,
                outcome=AuditOutcome(outcome),
                details=d,
            )
        )

    # ---- queries ----
    def entries_for(self, subject_id: str, *, limit: int = 1000) -> List[AuditEntry]:
        """Entries about one subject, oldest first."""
        if self._sqlite is not None:
            rows = self._sqlite.query(subject_id=subject_id, newest_first=False, limit=limit)
        else:
            rows = [r for r in self._jsonl.iter_lines() if r.get("subject_id") == subject_id][:limit]
        return [AuditEntry.model_validate(r) for r in rows]

    def find_by_tx(self, tx_ref: str) -> List[AuditEntry]:
        if self._sqlite is not None:
            rows = self._sqlite.query(ledger_tx_ref=tx_ref, newest_first=False, limit=100)
        else:
            rows = [r for r in self._jsonl.iter_lines() if r.get("ledger_tx_ref") == tx_ref]
        return [AuditEntry.model_validate(r) for r in rows]

    def list_entries(
        self,
        *,
        subject_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> List[AuditEntry]:
        """Newest first."""
        limit = max(1, min(int(limit), 5000))
        offset = max(0, int(offset))
        if self._sqlite is not None:
            rows = self._sqlite.query(
                subject_id=subject_id,
                actor_id=actor_id,
                action=action,
                since=since,
                until=until,
                limit=limit,
                offset=offset,
            )
            return [AuditEntry.model_validate(r) for r in rows]
        out: List[Dict[str, Any]] = []
        for r in self._jsonl.iter_lines():
            if subject_id and r.get("subject_id") != subject_id:
                continue
            if actor_id and r.get("actor_id") != actor_id:
                continue
            if action and r.get("action") != action:
                continue
            ts = float(r.get("timestamp") or 0.0)
            if since is not None and ts < float(since):
                continue
            if until is not None and ts > float(until):
                continue
            out.append(r)
        out.reverse()
        return [AuditEntry.model_validate(r) for r in out[offset : offset + limit]]

    def tail(self, n: int = 20) -> List[AuditEntry]:
        return [AuditEntry.model_validate(r) for r in self._jsonl.tail(n)]

    def count(self) -> int:
        return self._jsonl.read_head()[1]

    # ---- integrity ----
    def verify_integrity(self, *, limit_last_n: Optional[int] = None) -> IntegrityReport:
        """
        Check hash links, per-line hashes and seq continuity over the last `limit_last_n`
        lines (whole log when None), then check the head against the last line.
        """
        head_hash, head_seq = self._jsonl.read_head()
        rows = list(self._jsonl.iter_raw())
        from_start = limit_last_n is None or len(rows) <= int(limit_last_n)
        if not from_start:
            rows = rows[-max(1, int(limit_last_n)) :]

        def broken(msg: str, line_no: int, seq: Optional[int] = None, checked: int = 0) -> IntegrityReport:
            logger.critical("Audit integrity broken at line %d: %s", line_no, msg)
            return IntegrityReport(
                ok=False,
                checked=checked,
                broken_at_line=line_no,
                broken_at_seq=seq,
                message=msg,
                head_hash=head_hash,
                head_seq=head_seq,
            )

        if not rows:
            if head_seq != 0:
                return broken("head references entries missing from the log", 0, head_seq)
            return IntegrityReport(ok=True, checked=0, message="no entries", head_hash=head_hash, head_seq=0)

        prev: Optional[Dict[str, Any]] = None
        checked = 0
        for line_no, rec in rows:
            if rec is None:
                return broken("unparseable line", line_no, checked=checked)
            seq = int(rec.get("seq") or 0)
            if not hash_matches(rec):
                return broken("hash mismatch", line_no, seq, checked)
            if prev is None:
                if from_start and (rec.get("prev_hash") != GENESIS_HASH or seq != 1):
                    return broken("chain does not start at genesis", line_no, seq, checked)
            else:
                if rec.get("prev_hash") != prev.get("hash"):
                    return broken("prev_hash mismatch", line_no, seq, checked)
                if seq != int(prev.get("seq") or 0) + 1:
                    return broken("seq gap", line_no, seq, checked)
            prev = rec
            checked += 1

        last_line = rows[-1][0]
        if prev.get("hash") != head_hash or int(prev.get("seq") or 0) != head_seq:
            return broken("head does not match last entry", last_line, head_seq, checked)
        return IntegrityReport(ok=True, checked=checked, message="ok", head_hash=head_hash, head_seq=head_seq)

    def rebuild_index(self) -> int:
        if self._sqlite is None:
            return 0
        self._sqlite.drop_all()
        n = 0
        for rec in self._jsonl.iter_lines():
            self._sqlite.upsert(strip_chain(rec))
            n += 1
        return n
