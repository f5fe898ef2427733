from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditOutcome(str, Enum):
    success = "success"
    denied = "denied"
    failed = "failed"
    timeout = "timeout"


class AuditEntry(BaseModel):
    """
    One append-only audit line.

    `seq`, `prev_hash` and `hash` are assigned by the trail on append; values supplied
    by callers are ignored.
    """

    model_config = ConfigDict(extra="forbid")

    seq: int = 0
    audit_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = Field(default_factory=lambda: time.time())
    trace_id: Optional[str] = None

    actor_id: str
    action: str
    subject_id: str
    # Present only for confirmed ledger writes; block number is required with it.
    ledger_tx_ref: Optional[str] = None
    ledger_block_number: Optional[int] = None
    outcome: AuditOutcome = AuditOutcome.success
    details: Dict[str, Any] = Field(default_factory=dict)

    prev_hash: Optional[str] = None
    hash: Optional[str] = None


class IntegrityReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool
    checked: int
    broken_at_seq: Optional[int] = None
    broken_at_line: Optional[int] = None
    message: str = ""
    head_hash: Optional[str] = None
    head_seq: int = 0
