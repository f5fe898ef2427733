from __future__ import annotations

import pytest
from hexbytes import HexBytes
from web3 import Web3

from medledger.core.errors import EventNotFoundError
from medledger.core.ledger import CONTRACT_ABI, event_signature, event_topic
from medledger.core.ledger.abi import decode_access_granted, decode_artifact_registered, find_event

from .helpers.fakes import GRANTEE_ADDRESS, TEST_CONTRACT, make_log

TX_HASH = HexBytes("0x" + "ab" * 32)


def _receipt(*logs):
    return {"transactionHash": TX_HASH, "blockNumber": 12, "gasUsed": 1, "status": 1, "logs": list(logs)}


def test_event_signatures_match_contract():
    assert event_signature("AccessGranted") == "AccessGranted(uint256,string,address,uint256,bool)"
    assert event_signature("RecordRegistered") == "RecordRegistered(string,string,string,address,uint256)"
    assert event_topic("AuditLogged") == HexBytes(Web3.keccak(text="AuditLogged(string,address,string,uint256)"))
    names = {e["name"] for e in CONTRACT_ABI if e["type"] == "function"}
    assert {"registerDocument", "grantAccess", "revokeAccess", "logAccess", "checkAccess", "getRecord"} <= names


def test_access_granted_token_id_decoded():
    log = make_log(
        "AccessGranted",
        TEST_CONTRACT,
        [("uint256", 42), ("string", "patient-1"), ("address", GRANTEE_ADDRESS)],
        ["uint256", "bool"],
        [1_702_592_000, False],
    )
    ev = decode_access_granted(_receipt(log), contract_address=TEST_CONTRACT)
    assert ev.token_id == 42
    assert ev.grantee_address == GRANTEE_ADDRESS
    assert ev.expires_at == 1_702_592_000
    assert ev.is_emergency is False
    assert ev.owner_id_hash == Web3.to_hex(Web3.keccak(text="patient-1"))


def test_record_registered_decoded_after_unrelated_logs():
    other = {"address": TEST_CONTRACT, "topics": [HexBytes(Web3.keccak(text="Transfer(address,address,uint256)"))], "data": HexBytes(b"")}
    log = make_log(
        "RecordRegistered",
        TEST_CONTRACT,
        [("string", "rec-1"), ("string", "patient-1"), ("address", GRANTEE_ADDRESS)],
        ["string", "uint256"],
        ["bafy-cid", 1_700_000_000],
    )
    ev = decode_artifact_registered(_receipt(other, log))
    assert ev.content_address == "bafy-cid"
    assert ev.timestamp == 1_700_000_000
    assert ev.uploaded_by == GRANTEE_ADDRESS


def test_missing_event_raises_with_tx_ref():
    with pytest.raises(EventNotFoundError) as ei:
        find_event(_receipt(), "AccessGranted")
    assert ei.value.tx_ref == Web3.to_hex(TX_HASH)


def test_event_from_other_contract_is_ignored():
    log = make_log(
        "AccessGranted",
        GRANTEE_ADDRESS,
        [("uint256", 1), ("string", "patient-1"), ("address", GRANTEE_ADDRESS)],
        ["uint256", "bool"],
        [1, False],
    )
    with pytest.raises(EventNotFoundError):
        find_event(_receipt(log), "AccessGranted", contract_address=TEST_CONTRACT)


def test_undecodable_event_raises_event_not_found():
    log = {"address": TEST_CONTRACT, "topics": [event_topic("AccessGranted")], "data": HexBytes(b"\x01")}
    with pytest.raises(EventNotFoundError):
        find_event(_receipt(log), "AccessGranted")
