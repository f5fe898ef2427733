from __future__ import annotations

import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_ID_LENGTH = 128
MAX_PURPOSE_LENGTH = 500

# Grantee of owner-declared emergency grants: any actor may read while one is active.
EMERGENCY_GRANTEE = "EMERGENCY"


class ConsentStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    expired = "expired"
    revoked = "revoked"


class ConsentGrant(BaseModel):
    model_config = ConfigDict(extra="forbid")

    consent_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner_id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    grantee_id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    grantee_address: str
    purpose: str = Field(default="", max_length=MAX_PURPOSE_LENGTH)
    # Record ids covered; empty means every record of the owner.
    scope: List[str] = Field(default_factory=list)
    status: ConsentStatus = ConsentStatus.pending
    requested_at: float
    responded_at: Optional[float] = None
    expires_at: float
    ledger_token_ref: Optional[int] = None
    ledger_tx_ref: Optional[str] = None
    revoked_at: Optional[float] = None
    revoke_reason: str = ""
    emergency: bool = False

    @model_validator(mode="after")
    def _check_invariants(self) -> "ConsentGrant":
        if self.expires_at <= self.requested_at:
            raise ValueError("expires_at must be after requested_at")
        if self.emergency:
            # Emergency grants are local-only and never carry a ledger token.
            if self.ledger_token_ref is not None:
                raise ValueError("emergency grants carry no ledger token reference")
        elif self.status in (ConsentStatus.approved, ConsentStatus.revoked) and self.ledger_token_ref is None:
            raise ValueError("approved grants carry a ledger token reference")
        return self

    def is_expired(self, now: float) -> bool:
        return float(now) >= self.expires_at

    def is_active(self, now: float) -> bool:
        return self.status == ConsentStatus.approved and not self.is_expired(now)
