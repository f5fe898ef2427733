from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

from medledger.core.errors import EventNotFoundError
from medledger.core.ledger.models import AccessGranted, AccessRevoked, ActionLogged, ArtifactRegistered

# (name, [(param, type)], [output types], stateMutability)
_FUNCTIONS: List[Tuple[str, List[Tuple[str, str]], List[str], str]] = [
    (
        "registerDocument",
        [("recordId", "string"), ("patientId", "string"), ("ipfsCID", "string"), ("metadataHash", "bytes32")],
        [],
        "nonpayable",
    ),
    ("grantAccess", [("patientId", "string"), ("requester", "address"), ("durationInSeconds", "uint256")], [], "nonpayable"),
    ("revokeAccess", [("tokenId", "uint256")], [], "nonpayable"),
    ("logAccess", [("recordId", "string"), ("accessor", "address"), ("action", "string")], [], "nonpayable"),
    ("checkAccess", [("requester", "address"), ("patientId", "string")], ["bool"], "view"),
    ("getRecord", [("recordId", "string")], ["string", "string", "bytes32", "address", "uint256", "bool"], "view"),
]

# (param, type, indexed)
EVENTS: Dict[str, List[Tuple[str, str, bool]]] = {
    "RecordRegistered": [
        ("recordId", "string", True),
        ("patientId", "string", True),
        ("ipfsCID", "string", False),
        ("uploadedBy", "address", True),
        ("timestamp", "uint256", False),
    ],
    "AccessGranted": [
        ("tokenId", "uint256", True),
        ("patientId", "string", True),
        ("requester", "address", True),
        ("expiresAt", "uint256", False),
        ("isEmergency", "bool", False),
    ],
    "AccessRevoked": [
        ("tokenId", "uint256", True),
        ("revokedBy", "address", True),
        ("timestamp", "uint256", False),
    ],
    "AuditLogged": [
        ("recordId", "string", True),
        ("accessor", "address", True),
        ("action", "string", False),
        ("timestamp", "uint256", False),
    ],
}

_DYNAMIC_TYPES = {"string", "bytes"}


def _build_abi() -> List[Dict[str, Any]]:
    abi: List[Dict[str, Any]] = []
    for name, inputs, outputs, mutability in _FUNCTIONS:
        abi.append(
            {
                "type": "function",
                "name": name,
                "inputs": [{"name": n, "type": t} for n, t in inputs],
                "outputs": [{"name": "", "type": t} for t in outputs],
                "stateMutability": mutability,
            }
        )
    for name, params in EVENTS.items():
        abi.append(
            {
                "type": "event",
                "name": name,
                "anonymous": False,
                "inputs": [{"name": n, "type": t, "indexed": ix} for n, t, ix in params],
            }
        )
    return abi


CONTRACT_ABI: List[Dict[str, Any]] = _build_abi()


def event_signature(name: str) -> str:
    params = EVENTS[name]
    return f"{name}({','.join(t for _, t, _ in params)})"


def event_topic(name: str) -> HexBytes:
    return HexBytes(Web3.keccak(text=event_signature(name)))


@dataclass(frozen=True)
class DecodedEvent:
    name: str
    args: Dict[str, Any]
    log_index: int
    address: str


def _tx_ref(receipt: Mapping[str, Any]) -> Optional[str]:
    h = receipt.get("transactionHash")
    return Web3.to_hex(HexBytes(h)) if h is not None else None


def _same_address(a: Any, b: Optional[str]) -> bool:
    if not b or not a:
        return True
    return str(a).lower() == str(b).lower()


def _decode_log(name: str, topics: Sequence[HexBytes], data: HexBytes, log: Mapping[str, Any]) -> DecodedEvent:
    params = EVENTS[name]
    indexed = [(n, t) for n, t, ix in params if ix]
    plain = [(n, t) for n, t, ix in params if not ix]
    if len(topics) != len(indexed) + 1:
        raise ValueError(f"expected {len(indexed) + 1} topics, got {len(topics)}")
    args: Dict[str, Any] = {}
    for (n, t), topic in zip(indexed, topics[1:]):
        if t in _DYNAMIC_TYPES:
            # Only the keccak of a dynamic indexed value is recorded.
            args[n] = Web3.to_hex(topic)
        else:
            args[n] = abi_decode([t], bytes(topic))[0]
    values = abi_decode([t for _, t in plain], bytes(data)) if plain else ()
    for (n, _), v in zip(plain, values):
        args[n] = v
    return DecodedEvent(name=name, args=args, log_index=int(log.get("logIndex") or 0), address=str(log.get("address") or ""))


def find_event(receipt: Mapping[str, Any], name: str, *, contract_address: Optional[str] = None) -> DecodedEvent:
    """
    Locate and decode the first `name` event in a receipt.
    Raises EventNotFoundError when no log matches or the matching log does not decode.
    """
    topic0 = event_topic(name)
    for log in receipt.get("logs") or []:
        topics = [HexBytes(t) for t in (log.get("topics") or [])]
        if not topics or topics[0] != topic0:
            continue
        if not _same_address(log.get("address"), contract_address):
            continue
        try:
            return _decode_log(name, topics, HexBytes(log.get("data") or b""), log)
        except (DecodingError, ValueError) as e:
            raise EventNotFoundError(
                "Ledger event could not be decoded.", event=name, tx_ref=_tx_ref(receipt), error=str(e)
            ) from e
    raise EventNotFoundError(event=name, tx_ref=_tx_ref(receipt))


def decode_artifact_registered(receipt: Mapping[str, Any], *, contract_address: Optional[str] = None) -> ArtifactRegistered:
    a = find_event(receipt, "RecordRegistered", contract_address=contract_address).args
    return ArtifactRegistered(
        record_id_hash=a["recordId"],
        owner_id_hash=a["patientId"],
        content_address=a["ipfsCID"],
        uploaded_by=Web3.to_checksum_address(a["uploadedBy"]),
        timestamp=int(a["timestamp"]),
    )


def decode_access_granted(receipt: Mapping[str, Any], *, contract_address: Optional[str] = None) -> AccessGranted:
    a = find_event(receipt, "AccessGranted", contract_address=contract_address).args
    return AccessGranted(
        token_id=int(a["tokenId"]),
        owner_id_hash=a["patientId"],
        grantee_address=Web3.to_checksum_address(a["requester"]),
        expires_at=int(a["expiresAt"]),
        is_emergency=bool(a["isEmergency"]),
    )


def decode_access_revoked(receipt: Mapping[str, Any], *, contract_address: Optional[str] = None) -> AccessRevoked:
    a = find_event(receipt, "AccessRevoked", contract_address=contract_address).args
    return AccessRevoked(
        token_id=int(a["tokenId"]),
        revoked_by=Web3.to_checksum_address(a["revokedBy"]),
        timestamp=int(a["timestamp"]),
    )


def decode_action_logged(receipt: Mapping[str, Any], *, contract_address: Optional[str] = None) -> ActionLogged:
    a = find_event(receipt, "AuditLogged", contract_address=contract_address).args
    return ActionLogged(
        record_id_hash=a["recordId"],
        actor_address=Web3.to_checksum_address(a["accessor"]),
        action=a["action"],
        timestamp=int(a["timestamp"]),
    )
