from medledger.core.ledger.abi import CONTRACT_ABI, EVENTS, event_signature, event_topic, find_event
from medledger.core.ledger.client import LedgerClient, checksum_address
from medledger.core.ledger.models import (
    AccessGranted,
    AccessRevoked,
    ActionLogged,
    ArtifactRegistered,
    LedgerArtifact,
    LedgerReceipt,
)

__all__ = [
    "AccessGranted",
    "AccessRevoked",
    "ActionLogged",
    "ArtifactRegistered",
    "CONTRACT_ABI",
    "EVENTS",
    "LedgerArtifact",
    "LedgerClient",
    "LedgerReceipt",
    "checksum_address",
    "event_signature",
    "event_topic",
    "find_event",
]
