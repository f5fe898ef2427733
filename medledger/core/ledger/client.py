from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Mapping, Optional, Tuple

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from medledger.core.config.models import LedgerConfig
from medledger.core.errors import (
    ConfigError,
    ConfirmationTimeoutError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from medledger.core.ledger.abi import (
    CONTRACT_ABI,
    decode_access_granted,
    decode_access_revoked,
    decode_action_logged,
    decode_artifact_registered,
)
from medledger.core.ledger.models import (
    AccessGranted,
    AccessRevoked,
    ActionLogged,
    ArtifactRegistered,
    LedgerArtifact,
    LedgerReceipt,
)

logger = logging.getLogger("medledger.ledger")

# Transport and node errors; web3 >= 7 raises Web3RPCError, older nodes surface ValueError.
_NODE_ERRORS = (Web3Exception, ValueError, requests.RequestException)


def checksum_address(value: str) -> str:
    if not value or not Web3.is_address(value):
        raise ValidationError("Invalid ledger address.", address=value)
    return Web3.to_checksum_address(value)


class LedgerClient:
    """
    Submits transactions to the consent/registry contract and waits for confirmation.

    Writes are serialized on one signing account: the nonce counter is read from the
    node's pending count on first use (and after any failed send) and only advanced
    once the node accepted a transaction. Confirmation waits happen outside the lock.

    Every write either returns a LedgerReceipt with status 1 and its decoded event,
    or raises LedgerError / EventNotFoundError / ConfirmationTimeoutError.
    """

    def __init__(
        self,
        w3: Any,
        *,
        contract_address: str,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        confirmation_timeout_seconds: float = 120.0,
        poll_latency_seconds: float = 1.0,
        gas_limit: Optional[int] = None,
    ):
        if not contract_address or not Web3.is_address(contract_address):
            raise ConfigError("Ledger contract address is missing or invalid.", contract_address=contract_address)
        self._w3 = w3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self._contract = w3.eth.contract(address=self.contract_address, abi=CONTRACT_ABI)
        self._account = Account.from_key(private_key) if private_key else None
        self._chain_id = chain_id
        self.confirmation_timeout_seconds = float(confirmation_timeout_seconds)
        self.poll_latency_seconds = float(poll_latency_seconds)
        self.gas_limit = gas_limit
        self._submit_lock = threading.Lock()
        self._nonce: Optional[int] = None
        if self._account is None:
            logger.warning("No ledger signing key configured; ledger client is READ-ONLY.")

    @classmethod
    def connect(cls, cfg: LedgerConfig, *, private_key: Optional[str]) -> "LedgerClient":
        w3 = Web3(Web3.HTTPProvider(cfg.rpc_url, request_kwargs={"timeout": cfg.request_timeout_seconds}))
        return cls(
            w3,
            contract_address=cfg.contract_address,
            private_key=private_key,
            chain_id=cfg.chain_id,
            confirmation_timeout_seconds=cfg.confirmation_timeout_seconds,
            poll_latency_seconds=cfg.poll_latency_seconds,
            gas_limit=cfg.gas_limit,
        )

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account is not None else None

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self._w3.eth.chain_id)
        return self._chain_id

    # ---- writes ----
    def register_artifact(
        self, record_id: str, owner_id: str, content_address: str, integrity_hash: str
    ) -> LedgerReceipt[ArtifactRegistered]:
        digest = _bytes32(integrity_hash)
        fn = self._contract.functions.registerDocument(record_id, owner_id, content_address, digest)
        tx_ref, receipt = self._transact(fn, op="registerDocument")
        event = decode_artifact_registered(receipt, contract_address=self.contract_address)
        return _receipt(tx_ref, receipt, event)

    def grant_access(self, owner_id: str, grantee_address: str, duration_seconds: int) -> LedgerReceipt[AccessGranted]:
        if int(duration_seconds) <= 0:
            raise ValidationError("Grant duration must be positive.", duration_seconds=duration_seconds)
        fn = self._contract.functions.grantAccess(owner_id, checksum_address(grantee_address), int(duration_seconds))
        tx_ref, receipt = self._transact(fn, op="grantAccess")
        event = decode_access_granted(receipt, contract_address=self.contract_address)
        return _receipt(tx_ref, receipt, event)

    def revoke_access(self, token_ref: int) -> LedgerReceipt[AccessRevoked]:
        fn = self._contract.functions.revokeAccess(int(token_ref))
        tx_ref, receipt = self._transact(fn, op="revokeAccess")
        event = decode_access_revoked(receipt, contract_address=self.contract_address)
        return _receipt(tx_ref, receipt, event)

    def log_action(self, record_id: str, actor_address: str, action: str) -> LedgerReceipt[ActionLogged]:
        fn = self._contract.functions.logAccess(record_id, checksum_address(actor_address), action)
        tx_ref, receipt = self._transact(fn, op="logAccess")
        event = decode_action_logged(receipt, contract_address=self.contract_address)
        return _receipt(tx_ref, receipt, event)

    # ---- reads ----
    def check_access(self, grantee_address: str, owner_id: str) -> bool:
        fn = self._contract.functions.checkAccess(checksum_address(grantee_address), owner_id)
        try:
            return bool(fn.call())
        except ContractLogicError as e:
            raise LedgerError("Ledger rejected the access check.", op="checkAccess", error=str(e)) from e
        except _NODE_ERRORS as e:
            raise LedgerError(op="checkAccess", error=str(e)) from e

    def get_artifact(self, record_id: str) -> LedgerArtifact:
        try:
            owner_id, content_address, digest, uploaded_by, ts, exists = self._contract.functions.getRecord(
                record_id
            ).call()
        except ContractLogicError as e:
            # The contract reverts for unknown record ids.
            raise NotFoundError("Record is not registered on the ledger.", record_id=record_id) from e
        except _NODE_ERRORS as e:
            raise LedgerError(op="getRecord", error=str(e)) from e
        if not exists:
            raise NotFoundError("Record is not registered on the ledger.", record_id=record_id)
        return LedgerArtifact(
            owner_id=str(owner_id),
            content_address=str(content_address),
            integrity_hash=bytes(digest).hex(),
            uploaded_by=Web3.to_checksum_address(uploaded_by),
            timestamp=int(ts),
            exists=bool(exists),
        )

    def health(self) -> Dict[str, Any]:
        try:
            connected = bool(self._w3.is_connected())
        except _NODE_ERRORS:
            connected = False
        return {
            "connected": connected,
            "contract_address": self.contract_address,
            "signer": self.address,
            "read_only": self._account is None,
        }

    # ---- internals ----
    def _next_nonce_locked(self) -> int:
        if self._nonce is None:
            self._nonce = int(self._w3.eth.get_transaction_count(self._account.address, "pending"))
        return self._nonce

    def _transact(self, fn: Any, *, op: str) -> Tuple[str, Mapping[str, Any]]:
        if self._account is None:
            raise LedgerError("Ledger signing key is not configured.", op=op)
        with self._submit_lock:
            try:
                nonce = self._next_nonce_locked()
                params: Dict[str, Any] = {"from": self._account.address, "nonce": nonce, "chainId": self.chain_id}
                if self.gas_limit:
                    params["gas"] = int(self.gas_limit)
                tx = fn.build_transaction(params)
                signed = self._account.sign_transaction(tx)
                tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as e:
                # Reverted during gas estimation; nothing was sent.
                raise LedgerError("Ledger rejected the transaction.", op=op, error=str(e)) from e
            except _NODE_ERRORS as e:
                self._nonce = None
                raise LedgerError(op=op, error=str(e)) from e
            self._nonce = nonce + 1
        tx_ref = Web3.to_hex(tx_hash)
        logger.info("Ledger %s submitted tx=%s nonce=%d", op, tx_ref, nonce)

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.confirmation_timeout_seconds, poll_latency=self.poll_latency_seconds
            )
        except TimeExhausted as e:
            logger.warning("Ledger %s tx=%s not confirmed within %.0fs.", op, tx_ref, self.confirmation_timeout_seconds)
            raise ConfirmationTimeoutError(op=op, tx_ref=tx_ref) from e
        except _NODE_ERRORS as e:
            # The transaction was accepted; its outcome is unknown.
            raise ConfirmationTimeoutError(
                "Lost contact with the ledger while waiting for confirmation.", op=op, tx_ref=tx_ref, error=str(e)
            ) from e

        if int(receipt.get("status", 0)) != 1:
            raise LedgerError(
                "Ledger transaction reverted.", op=op, tx_ref=tx_ref, block_number=receipt.get("blockNumber")
            )
        logger.info("Ledger %s confirmed tx=%s block=%s", op, tx_ref, receipt.get("blockNumber"))
        return tx_ref, receipt


def _bytes32(hex_digest: str) -> bytes:
    try:
        b = bytes.fromhex(str(hex_digest).removeprefix("0x"))
    except ValueError as e:
        raise ValidationError("Integrity hash must be hex.") from e
    if len(b) != 32:
        raise ValidationError("Integrity hash must be 32 bytes.", length=len(b))
    return b


def _receipt(tx_ref: str, receipt: Mapping[str, Any], event: Any) -> LedgerReceipt:
    return LedgerReceipt(
        tx_ref=tx_ref,
        block_number=int(receipt.get("blockNumber") or 0),
        gas_used=int(receipt.get("gasUsed") or 0),
        event=event,
    )
