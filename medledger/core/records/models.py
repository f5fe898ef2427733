from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from medledger.core.crypto import ALGORITHM

MAX_ID_LENGTH = 128


class RecordStatus(str, Enum):
    pending = "pending"
    verified = "verified"
    failed = "failed"


class RecordMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record_id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    owner_id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    uploaded_by: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    content_address: str
    integrity_hash: str = Field(pattern=r"^[0-9a-f]{64}$")
    encryption_hash: str = Field(pattern=r"^[0-9a-f]{64}$")
    ledger_tx_ref: str
    ledger_block_number: int
    status: RecordStatus = RecordStatus.pending
    created_at: float = Field(default_factory=lambda: time.time())
    verified_at: Optional[float] = None

    # Decryption envelope
    iv: str
    tag: str
    size_bytes: int = Field(ge=0)
    algorithm: str = ALGORITHM
    degraded_storage: bool = False

    descriptive: Dict[str, Any] = Field(default_factory=dict)


class VerificationReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record_id: str
    ok: bool
    status: RecordStatus
    mismatches: List[str] = Field(default_factory=list)
    ledger_timestamp: Optional[int] = None
    checked_at: float
