from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

E = TypeVar("E")


@dataclass(frozen=True)
class ArtifactRegistered:
    # Indexed string params are only available as keccak hashes in logs.
    record_id_hash: str
    owner_id_hash: str
    content_address: str
    uploaded_by: str
    timestamp: int


@dataclass(frozen=True)
class AccessGranted:
    token_id: int
    owner_id_hash: str
    grantee_address: str
    expires_at: int
    is_emergency: bool


@dataclass(frozen=True)
class AccessRevoked:
    token_id: int
    revoked_by: str
    timestamp: int


@dataclass(frozen=True)
class ActionLogged:
    record_id_hash: str
    actor_address: str
    action: str
    timestamp: int


@dataclass(frozen=True)
class LedgerReceipt(Generic[E]):
    """A confirmed (status == 1) transaction and its decoded event."""

    tx_ref: str
    block_number: int
    gas_used: int
    event: E


@dataclass(frozen=True)
class LedgerArtifact:
    owner_id: str
    content_address: str
    integrity_hash: str
    uploaded_by: str
    timestamp: int
    exists: bool = True
