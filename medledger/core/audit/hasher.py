from __future__ import annotations

import hashlib
import json
from typing import Any, Dict

GENESIS_HASH = "0" * 64
CHAIN_FIELDS = ("prev_hash", "hash")


def canonical_json(obj: Dict[str, Any]) -> str:
    # Deterministic JSON (no whitespace, sorted keys)
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def compute_hash(prev_hash: str, payload: Dict[str, Any]) -> str:
    h = hashlib.sha256()
    h.update(prev_hash.encode("utf-8"))
    h.update(b"\n")
    h.update(canonical_json(payload).encode("utf-8"))
    return h.hexdigest()


def strip_chain(rec: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(rec)
    for k in CHAIN_FIELDS:
        payload.pop(k, None)
    return payload


def chain_record(*, payload: Dict[str, Any], prev_hash: str) -> Dict[str, Any]:
    body = strip_chain(payload)
    rec = dict(body)
    rec["prev_hash"] = prev_hash
    rec["hash"] = compute_hash(prev_hash, body)
    return rec


def hash_matches(rec: Dict[str, Any]) -> bool:
    return compute_hash(str(rec.get("prev_hash") or ""), strip_chain(rec)) == str(rec.get("hash") or "")
