from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_abi import encode as abi_encode
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TimeExhausted

from medledger.core.errors import NotFoundError, StoreUnavailableError
from medledger.core.ledger.abi import event_topic
from medledger.core.ledger.models import (
    AccessGranted,
    AccessRevoked,
    ActionLogged,
    ArtifactRegistered,
    LedgerArtifact,
    LedgerReceipt,
)
from medledger.core.notify import Notifier
from medledger.core.storage import ContentBackend

# Publicly known test key (web3.py docs); never holds funds.
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_CONTRACT = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
GRANTEE_ADDRESS = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self._t = float(start)

    def time(self) -> float:
        return self._t

    def advance(self, seconds: float) -> None:
        self._t += float(seconds)


class MemoryContentBackend(ContentBackend):
    """Content-addressed dict. `fail_puts`/`fail_gets` simulate an unreachable store."""

    name = "memory"

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.fail_puts = False
        self.fail_gets = False
        self.put_calls = 0

    def put(self, data: bytes, name_hint: str = "") -> str:
        self.put_calls += 1
        if self.fail_puts:
            raise StoreUnavailableError(backend=self.name, error="connection refused")
        address = "sha256-" + hashlib.sha256(data).hexdigest()
        self.blobs[address] = bytes(data)
        return address

    def get(self, address: str) -> bytes:
        if self.fail_gets:
            raise StoreUnavailableError(backend=self.name, error="connection refused")
        if address not in self.blobs:
            raise NotFoundError("Blob not found.", address=address)
        return self.blobs[address]


@dataclass
class RecordingNotifier(Notifier):
    ingested: List[Tuple[str, str]] = field(default_factory=list)
    resolved: List[Tuple[str, str, bool]] = field(default_factory=list)
    fail: bool = False

    def on_record_ingested(self, record_id: str, owner_id: str) -> None:
        if self.fail:
            raise RuntimeError("notification transport down")
        self.ingested.append((record_id, owner_id))

    def on_consent_resolved(self, consent_id: str, grantee_id: str, approved: bool) -> None:
        if self.fail:
            raise RuntimeError("notification transport down")
        self.resolved.append((consent_id, grantee_id, approved))


class FakeLedger:
    """
    In-memory stand-in for LedgerClient with the same method surface.
    Set `fail_<op>` to an exception instance to make that write raise it.
    """

    def __init__(self, clock: Optional[FakeClock] = None, *, signer: str = "0x" + "11" * 20):
        self.clock = clock or FakeClock()
        self.address = Web3.to_checksum_address(signer)
        self.artifacts: Dict[str, LedgerArtifact] = {}
        self.grants: Dict[int, Dict[str, Any]] = {}
        self.actions: List[Tuple[str, str, str]] = []
        self.calls: List[str] = []
        self._block = 100
        self._tx = 0
        self._token = 0
        self.fail_register: Optional[Exception] = None
        self.fail_grant: Optional[Exception] = None
        self.fail_revoke: Optional[Exception] = None
        self.fail_log: Optional[Exception] = None

    def _receipt(self, event: Any) -> LedgerReceipt:
        self._tx += 1
        self._block += 1
        return LedgerReceipt(tx_ref="0x" + f"{self._tx:064x}", block_number=self._block, gas_used=21000, event=event)

    def register_artifact(self, record_id, owner_id, content_address, integrity_hash) -> LedgerReceipt:
        self.calls.append("register_artifact")
        if self.fail_register is not None:
            raise self.fail_register
        now = int(self.clock.time())
        self.artifacts[record_id] = LedgerArtifact(
            owner_id=owner_id,
            content_address=content_address,
            integrity_hash=integrity_hash,
            uploaded_by=self.address,
            timestamp=now,
        )
        return self._receipt(
            ArtifactRegistered(
                record_id_hash=Web3.to_hex(Web3.keccak(text=record_id)),
                owner_id_hash=Web3.to_hex(Web3.keccak(text=owner_id)),
                content_address=content_address,
                uploaded_by=self.address,
                timestamp=now,
            )
        )

    def grant_access(self, owner_id, grantee_address, duration_seconds) -> LedgerReceipt:
        self.calls.append("grant_access")
        if self.fail_grant is not None:
            raise self.fail_grant
        self._token += 1
        expires = int(self.clock.time()) + int(duration_seconds)
        self.grants[self._token] = {"owner_id": owner_id, "grantee": grantee_address, "expires_at": expires, "active": True}
        return self._receipt(
            AccessGranted(
                token_id=self._token,
                owner_id_hash=Web3.to_hex(Web3.keccak(text=owner_id)),
                grantee_address=grantee_address,
                expires_at=expires,
                is_emergency=False,
            )
        )

    def revoke_access(self, token_ref) -> LedgerReceipt:
        self.calls.append("revoke_access")
        if self.fail_revoke is not None:
            raise self.fail_revoke
        self.grants[int(token_ref)]["active"] = False
        return self._receipt(AccessRevoked(token_id=int(token_ref), revoked_by=self.address, timestamp=int(self.clock.time())))

    def log_action(self, record_id, actor_address, action) -> LedgerReceipt:
        self.calls.append("log_action")
        if self.fail_log is not None:
            raise self.fail_log
        self.actions.append((record_id, actor_address, action))
        return self._receipt(
            ActionLogged(
                record_id_hash=Web3.to_hex(Web3.keccak(text=record_id)),
                actor_address=actor_address,
                action=action,
                timestamp=int(self.clock.time()),
            )
        )

    def check_access(self, grantee_address, owner_id) -> bool:
        now = int(self.clock.time())
        return any(
            g["active"] and g["owner_id"] == owner_id and g["grantee"] == grantee_address and g["expires_at"] > now
            for g in self.grants.values()
        )

    def get_artifact(self, record_id) -> LedgerArtifact:
        if record_id not in self.artifacts:
            raise NotFoundError("Record is not registered on the ledger.", record_id=record_id)
        return self.artifacts[record_id]

    def health(self) -> Dict[str, Any]:
        return {"connected": True, "signer": self.address, "read_only": False}


# ---- web3-level fakes for LedgerClient ----
def make_log(event: str, address: str, indexed: List[Tuple[str, Any]], data_types: List[str], data_values: List[Any]) -> Dict[str, Any]:
    topics = [event_topic(event)]
    for typ, value in indexed:
        if typ == "string":
            topics.append(HexBytes(Web3.keccak(text=value)))
        else:
            topics.append(HexBytes(abi_encode([typ], [value])))
    return {
        "address": address,
        "topics": topics,
        "data": HexBytes(abi_encode(data_types, data_values)),
        "logIndex": 0,
    }


def default_logs(eth: "FakeEth", fn: str, args: Tuple[Any, ...], sender: str) -> List[Dict[str, Any]]:
    addr = eth.contract_address
    if fn == "registerDocument":
        record_id, owner_id, cid, _digest = args
        return [make_log("RecordRegistered", addr, [("string", record_id), ("string", owner_id), ("address", sender)], ["string", "uint256"], [cid, eth.now])]
    if fn == "grantAccess":
        owner_id, requester, duration = args
        eth.token_id += 1
        return [
            make_log(
                "AccessGranted",
                addr,
                [("uint256", eth.token_id), ("string", owner_id), ("address", requester)],
                ["uint256", "bool"],
                [eth.now + int(duration), False],
            )
        ]
    if fn == "revokeAccess":
        (token_id,) = args
        return [make_log("AccessRevoked", addr, [("uint256", int(token_id)), ("address", sender)], ["uint256"], [eth.now])]
    if fn == "logAccess":
        record_id, accessor, action = args
        return [make_log("AuditLogged", addr, [("string", record_id), ("address", accessor)], ["string", "uint256"], [action, eth.now])]
    return []


class FakeFunction:
    def __init__(self, eth: "FakeEth", name: str, args: Tuple[Any, ...]):
        self.eth = eth
        self.name = name
        self.args = args

    def build_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.eth.fail_build is not None:
            raise self.eth.fail_build
        self.eth.last_built = (self.name, self.args, int(params["nonce"]))
        tx = {
            "to": self.eth.contract_address,
            "data": "0x",
            "value": 0,
            "gas": int(params.get("gas") or 200_000),
            "gasPrice": 1_000_000_000,
            "nonce": int(params["nonce"]),
            "chainId": int(params["chainId"]),
        }
        if "from" in params:
            tx["from"] = params["from"]
        return tx

    def call(self) -> Any:
        handler = self.eth.call_results[self.name]
        if isinstance(handler, Exception):
            raise handler
        return handler(*self.args) if callable(handler) else handler


class _Functions:
    def __init__(self, eth: "FakeEth"):
        self._eth = eth

    def __getattr__(self, name: str) -> Callable[..., FakeFunction]:
        return lambda *args: FakeFunction(self._eth, name, args)


class FakeContract:
    def __init__(self, eth: "FakeEth", address: str):
        self.address = address
        self.functions = _Functions(eth)


class FakeEth:
    def __init__(self, *, chain_id: int = 1337, pending_nonce: int = 7, now: int = 1_700_000_000):
        self.chain_id = chain_id
        self.pending_nonce = pending_nonce
        self.now = now
        self.contract_address: str = ""
        self.token_id = 0
        self.sent: List[Tuple[str, Tuple[Any, ...], int]] = []
        self.receipts: Dict[bytes, Dict[str, Any]] = {}
        self.count_calls = 0
        self.last_built: Optional[Tuple[str, Tuple[Any, ...], int]] = None
        self.fail_build: Optional[Exception] = None
        self.fail_send: Optional[Exception] = None
        self.timeout = False
        self.receipt_status = 1
        self.log_factory: Callable[..., List[Dict[str, Any]]] = default_logs
        self.call_results: Dict[str, Any] = {}
        self.sender = ""

    def contract(self, address: str, abi: Any) -> FakeContract:
        self.contract_address = address
        return FakeContract(self, address)

    def get_transaction_count(self, address: str, block_identifier: str = "latest") -> int:
        self.count_calls += 1
        return self.pending_nonce

    def send_raw_transaction(self, raw: bytes) -> HexBytes:
        if self.fail_send is not None:
            err, self.fail_send = self.fail_send, None
            raise err
        name, args, nonce = self.last_built
        tx_hash = HexBytes(Web3.keccak(bytes(raw)))
        self.sent.append((name, args, nonce))
        self.pending_nonce = max(self.pending_nonce, nonce + 1)
        self.receipts[bytes(tx_hash)] = {
            "transactionHash": tx_hash,
            "blockNumber": 500 + len(self.sent),
            "gasUsed": 50_000,
            "status": self.receipt_status,
            "logs": self.log_factory(self, name, args, self.sender),
        }
        return tx_hash

    def wait_for_transaction_receipt(self, tx_hash: Any, timeout: float = 120, poll_latency: float = 0.1) -> Dict[str, Any]:
        if self.timeout:
            raise TimeExhausted(f"Transaction {Web3.to_hex(tx_hash)} is not in the chain after {timeout} seconds")
        return self.receipts[bytes(HexBytes(tx_hash))]


class FakeWeb3:
    def __init__(self, **kw: Any):
        self.eth = FakeEth(**kw)
        self.connected = True

    def is_connected(self) -> bool:
        return self.connected
