from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Dict, Iterator, List, Optional, Tuple

from medledger.core.audit.hasher import GENESIS_HASH, chain_record, hash_matches

logger = logging.getLogger("medledger.audit")


class AuditJsonlStore:
    """
    Append-only JSONL file plus head.json ({"head_hash", "seq"}).
    Sequence assignment and chaining happen under one lock, so seq is gap-free.
    """

    def __init__(self, *, path: str, head_path: str):
        self.path = path
        self.head_path = head_path
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        os.makedirs(os.path.dirname(head_path) or ".", exist_ok=True)

    def read_head(self) -> Tuple[str, int]:
        """
        Head from head.json, rolled forward when the log holds exactly one more entry
        that chains onto it (an append whose head write never landed).
        """
        if not os.path.exists(self.head_path):
            return self._head_from_log()
        try:
            with open(self.head_path, "r", encoding="utf-8") as f:
                obj = json.load(f)
            head_hash, head_seq = str(obj["head_hash"]), int(obj["seq"])
        except (OSError, ValueError, KeyError, TypeError):
            logger.warning("Audit head file %s unreadable; recovering head from log.", self.head_path)
            return self._head_from_log()
        last = self._last_record()
        if (
            last is not None
            and last.get("prev_hash") == head_hash
            and int(last.get("seq") or 0) == head_seq + 1
            and hash_matches(last)
        ):
            logger.warning("Audit head %s lagged the log by one entry; rolling forward to seq=%d.", self.head_path, head_seq + 1)
            return str(last["hash"]), head_seq + 1
        return head_hash, head_seq

    def _last_record(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return None
        with open(self.path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            chunk = 4096
            while True:
                start = max(0, size - chunk)
                f.seek(start)
                lines = [ln for ln in f.read(size - start).splitlines() if ln.strip()]
                # The first line of a partial chunk may be cut; keep reading back until a whole line shows up.
                if lines and (start == 0 or len(lines) > 1):
                    break
                if start == 0:
                    return None
                chunk *= 2
        try:
            obj = json.loads(lines[-1].decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        return obj if isinstance(obj, dict) else None

    def _head_from_log(self) -> Tuple[str, int]:
        last: Optional[Dict[str, Any]] = None
        for _, obj in self.iter_raw():
            if obj is not None:
                last = obj
        if last is None:
            return GENESIS_HASH, 0
        return str(last.get("hash") or GENESIS_HASH), int(last.get("seq") or 0)

    def write_head(self, head_hash: str, seq: int) -> None:
        tmp = self.head_path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"head_hash": head_hash, "seq": int(seq)}, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp, self.head_path)

    def append(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Assigns seq, chains and appends. Returns the stored record.
        Any seq/prev_hash/hash in payload is overwritten.
        """
        with self._lock:
            prev_hash, prev_seq = self.read_head()
            body = dict(payload)
            body["seq"] = prev_seq + 1
            rec = chain_record(payload=body, prev_hash=prev_hash)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(rec, ensure_ascii=False) + "\n")
                f.flush()
                os.fsync(f.fileno())
            self.write_head(str(rec["hash"]), int(rec["seq"]))
            return rec

    def iter_raw(self) -> Iterator[Tuple[int, Optional[Dict[str, Any]]]]:
        """(line_no, record or None when the line does not parse). Blank lines are skipped."""
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError:
                    yield line_no, None
                    continue
                yield line_no, obj if isinstance(obj, dict) else None

    def iter_lines(self) -> Iterator[Dict[str, Any]]:
        for _, obj in self.iter_raw():
            if obj is not None:
                yield obj

    def window(self, n: Optional[int] = None) -> List[Tuple[int, Optional[Dict[str, Any]]]]:
        rows = list(self.iter_raw())
        if n is None:
            return rows
        return rows[-max(1, int(n)) :]

    def tail(self, n: int = 200) -> List[Dict[str, Any]]:
        return [obj for _, obj in self.window(n) if obj is not None]
