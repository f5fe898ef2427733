from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RecordCreateRequest(BaseModel):
    record_id: str = Field(min_length=1, max_length=128)
    owner_id: str = Field(min_length=1, max_length=128)
    # Base64 of the raw artifact bytes.
    content_b64: str = Field(min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RecordResponse(BaseModel):
    record: Dict[str, Any]


class RecordListResponse(BaseModel):
    records: List[Dict[str, Any]]


class VerificationResponse(BaseModel):
    report: Dict[str, Any]


class ConsentCreateRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)
    grantee_address: str = Field(min_length=1, max_length=64)
    purpose: str = Field(default="", max_length=500)
    duration_days: int
    record_ids: List[str] = Field(default_factory=list)


class ConsentRevokeRequest(BaseModel):
    reason: Optional[str] = Field(default="", max_length=500)


class ConsentResponse(BaseModel):
    consent: Dict[str, Any]


class ConsentListResponse(BaseModel):
    consents: List[Dict[str, Any]]


class AuditListResponse(BaseModel):
    entries: List[Dict[str, Any]]


class EmergencyStatusResponse(BaseModel):
    active: bool
    consent_id: Optional[str] = None
    expires_at: Optional[float] = None
    seconds_remaining: Optional[int] = None


class EmergencyRevokeResponse(BaseModel):
    revoked_count: int
    consent_ids: List[str]
