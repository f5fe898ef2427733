from __future__ import annotations

import dataclasses
import re
import sqlite3

import pytest

from medledger.core.audit import AuditOutcome
from medledger.core.config.models import RecordsConfig
from medledger.core.crypto import CryptoVault, generate_key_bytes
from medledger.core.errors import (
    ConfirmationTimeoutError,
    DuplicateRecordError,
    IntegrityError,
    LedgerError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from medledger.core.records import RecordStatus

from .helpers.fakes import GRANTEE_ADDRESS

PDF = b"%PDF-1.4 blood panel results" * 100


def test_ingest_registers_and_persists(record_pipeline, ledger, backend, audit, notifier):
    meta = record_pipeline.ingest(PDF, "rec-1", "patient-1", {"mime_type": "application/pdf"})
    assert meta.status == RecordStatus.verified
    assert meta.ledger_tx_ref.startswith("0x")
    assert meta.size_bytes == len(PDF)
    assert meta.integrity_hash == CryptoVault.hash(PDF)
    assert meta.content_address in backend.blobs
    assert PDF not in backend.blobs[meta.content_address]
    assert CryptoVault.hash(backend.blobs[meta.content_address]) == meta.encryption_hash
    assert ledger.artifacts["rec-1"].integrity_hash == meta.integrity_hash

    entries = audit.entries_for("rec-1")
    assert len(entries) == 1
    assert entries[0].action == "record.ingest"
    assert entries[0].ledger_tx_ref == meta.ledger_tx_ref
    assert entries[0].ledger_block_number == meta.ledger_block_number
    assert notifier.ingested == [("rec-1", "patient-1")]
    assert record_pipeline.get("rec-1").model_dump() == meta.model_dump()


def test_duplicate_record_id_rejected(record_pipeline, ledger):
    record_pipeline.ingest(PDF, "rec-1", "patient-1")
    with pytest.raises(DuplicateRecordError):
        record_pipeline.ingest(b"other", "rec-1", "patient-1")
    assert ledger.calls.count("register_artifact") == 1


def test_invalid_inputs_rejected(record_pipeline, ledger):
    with pytest.raises(ValidationError):
        record_pipeline.ingest(b"", "rec-1", "patient-1")
    with pytest.raises(ValidationError):
        record_pipeline.ingest(PDF, "  ", "patient-1")
    record_pipeline.cfg = RecordsConfig(max_artifact_bytes=10)
    with pytest.raises(ValidationError):
        record_pipeline.ingest(PDF, "rec-1", "patient-1")
    assert ledger.calls == []


def test_ledger_failure_after_put_leaves_no_metadata(record_pipeline, ledger, backend, audit, notifier):
    ledger.fail_register = LedgerError("Ledger transaction reverted.", op="registerDocument")
    with pytest.raises(LedgerError):
        record_pipeline.ingest(PDF, "rec-1", "patient-1")

    with pytest.raises(NotFoundError):
        record_pipeline.get("rec-1")
    # The ciphertext stays behind as an orphan.
    assert len(backend.blobs) == 1
    entries = audit.entries_for("rec-1")
    assert [e.outcome for e in entries] == [AuditOutcome.failed]
    assert entries[0].ledger_tx_ref is None
    assert entries[0].details["orphan_address"] in backend.blobs
    assert notifier.ingested == []


def test_confirmation_timeout_audited_as_timeout(record_pipeline, ledger, audit):
    ledger.fail_register = ConfirmationTimeoutError(op="registerDocument", tx_ref="0x" + "ee" * 32)
    with pytest.raises(ConfirmationTimeoutError):
        record_pipeline.ingest(PDF, "rec-1", "patient-1")
    entry = audit.entries_for("rec-1")[0]
    assert entry.outcome == AuditOutcome.timeout
    assert entry.details["unconfirmed_tx_ref"] == "0x" + "ee" * 32
    assert entry.ledger_block_number is None


def test_store_outage_aborts_before_ledger(record_pipeline, ledger, backend):
    backend.fail_puts = True
    with pytest.raises(StoreUnavailableError):
        record_pipeline.ingest(PDF, "rec-1", "patient-1")
    assert ledger.calls == []


def test_degraded_ingest_is_pending_and_unreadable(record_pipeline, ledger, backend, audit):
    record_pipeline.cfg = RecordsConfig(allow_degraded_storage=True)
    backend.fail_puts = True
    meta = record_pipeline.ingest(PDF, "rec-1", "patient-1")
    assert meta.status == RecordStatus.pending
    assert meta.degraded_storage is True
    assert meta.content_address.startswith("degraded:")
    assert audit.entries_for("rec-1")[0].details["degraded_storage"] is True

    with pytest.raises(StoreUnavailableError):
        record_pipeline.retrieve("rec-1", actor_id="patient-1")

    report = record_pipeline.verify("rec-1", actor_id="patient-1")
    assert report.ok is True
    assert report.status == RecordStatus.pending


def test_owner_retrieves_plaintext(record_pipeline, audit):
    record_pipeline.ingest(PDF, "rec-1", "patient-1")
    assert record_pipeline.retrieve("rec-1", actor_id="patient-1") == PDF
    last = audit.entries_for("rec-1")[-1]
    assert last.action == "record.access"
    assert last.outcome == AuditOutcome.success


def test_stranger_denied_and_audited(record_pipeline, audit):
    record_pipeline.ingest(PDF, "rec-1", "patient-1")
    with pytest.raises(PermissionDeniedError):
        record_pipeline.retrieve("rec-1", actor_id="dr-nobody")
    with pytest.raises(PermissionDeniedError):
        record_pipeline.get("rec-1", actor_id="dr-nobody")
    last = audit.entries_for("rec-1")[-1]
    assert (last.actor_id, last.outcome) == ("dr-nobody", AuditOutcome.denied)


def test_grantee_with_approved_consent_can_read(record_pipeline, consent_pipeline):
    record_pipeline.ingest(PDF, "rec-1", "patient-1")
    record_pipeline.ingest(b"other report", "rec-2", "patient-1")
    grant = consent_pipeline.request("patient-1", "dr-who", GRANTEE_ADDRESS, "treatment", 30, record_ids=["rec-1"])
    with pytest.raises(PermissionDeniedError):
        record_pipeline.retrieve("rec-1", actor_id="dr-who")

    consent_pipeline.approve(grant.consent_id, "patient-1")
    assert record_pipeline.retrieve("rec-1", actor_id="dr-who") == PDF
    # Outside the granted scope.
    with pytest.raises(PermissionDeniedError):
        record_pipeline.retrieve("rec-2", actor_id="dr-who")


def test_tampered_blob_raises_integrity_error(record_pipeline, backend, audit):
    meta = record_pipeline.ingest(PDF, "rec-1", "patient-1")
    blob = backend.blobs[meta.content_address]
    backend.blobs[meta.content_address] = bytes([blob[0] ^ 0x01]) + blob[1:]
    with pytest.raises(IntegrityError):
        record_pipeline.retrieve("rec-1", actor_id="patient-1")
    assert audit.entries_for("rec-1")[-1].outcome == AuditOutcome.failed


def test_access_logged_on_ledger_when_enabled(record_pipeline, ledger, audit):
    record_pipeline.cfg = RecordsConfig(log_access_on_ledger=True)
    record_pipeline.ingest(PDF, "rec-1", "patient-1")
    record_pipeline.retrieve("rec-1", actor_id="patient-1", actor_address=GRANTEE_ADDRESS)
    assert ledger.actions == [("rec-1", GRANTEE_ADDRESS, "download")]
    last = audit.entries_for("rec-1")[-1]
    assert last.ledger_tx_ref is not None and last.ledger_block_number is not None


def test_verify_matching_record(record_pipeline, audit):
    record_pipeline.ingest(PDF, "rec-1", "patient-1")
    report = record_pipeline.verify("rec-1", actor_id="patient-1")
    assert report.ok is True
    assert report.mismatches == []
    assert report.status == RecordStatus.verified
    assert audit.entries_for("rec-1")[-1].action == "record.verify"


def test_verify_reports_ledger_disagreement_without_downgrade(record_pipeline, ledger):
    record_pipeline.ingest(PDF, "rec-1", "patient-1")
    ledger.artifacts["rec-1"] = dataclasses.replace(ledger.artifacts["rec-1"], content_address="sha256-" + "0" * 64)
    report = record_pipeline.verify("rec-1", actor_id="patient-1")
    assert report.ok is False
    assert report.mismatches == ["content_address"]
    assert record_pipeline.get("rec-1").status == RecordStatus.verified


def test_verify_pending_mismatch_fails_record(record_pipeline, ledger, backend):
    record_pipeline.cfg = RecordsConfig(allow_degraded_storage=True)
    backend.fail_puts = True
    record_pipeline.ingest(PDF, "rec-1", "patient-1")
    del ledger.artifacts["rec-1"]
    report = record_pipeline.verify("rec-1", actor_id="patient-1")
    assert report.mismatches == ["not_registered"]
    assert report.status == RecordStatus.failed


def test_notification_failure_does_not_fail_ingest(record_pipeline, notifier):
    notifier.fail = True
    meta = record_pipeline.ingest(PDF, "rec-1", "patient-1")
    assert record_pipeline.get("rec-1").record_id == meta.record_id


def test_ephemeral_key_flagged_in_audit(record_pipeline, audit):
    record_pipeline.vault = CryptoVault(generate_key_bytes(), durable=False)
    record_pipeline.ingest(PDF, "rec-1", "patient-1")
    assert audit.entries_for("rec-1")[0].details["durable_key"] is False


def test_list_for_owner(record_pipeline):
    record_pipeline.ingest(PDF, "rec-1", "patient-1")
    record_pipeline.ingest(PDF, "rec-2", "patient-2")
    assert [m.record_id for m in record_pipeline.list_for_owner("patient-1")] == ["rec-1"]


@pytest.mark.parametrize(
    "record_id, owner_id, uploaded_by",
    [("r" * 129, "patient-1", None), ("rec-1", "p" * 129, None), ("rec-1", "patient-1", "u" * 129)],
)
def test_over_long_ids_rejected_before_any_side_effect(record_pipeline, ledger, backend, audit, record_id, owner_id, uploaded_by):
    with pytest.raises(ValidationError):
        record_pipeline.ingest(PDF, record_id, owner_id, uploaded_by=uploaded_by)
    assert ledger.calls == []
    assert backend.blobs == {}
    assert audit.count() == 0


def test_unserializable_metadata_rejected_before_ledger(record_pipeline, ledger):
    with pytest.raises(ValidationError):
        record_pipeline.ingest(PDF, "rec-1", "patient-1", {"scanned_at": object()})
    assert ledger.calls == []


def test_metadata_write_failure_after_ledger_is_audited(record_pipeline, ledger, audit, notifier, monkeypatch):
    def locked(meta):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(record_pipeline.store, "insert", locked)
    with pytest.raises(sqlite3.OperationalError):
        record_pipeline.ingest(PDF, "rec-1", "patient-1")

    assert "rec-1" in ledger.artifacts
    entries = audit.entries_for("rec-1")
    assert len(entries) == 1
    assert entries[0].outcome == AuditOutcome.failed
    assert entries[0].details["error"] == "metadata_not_persisted"
    assert entries[0].ledger_tx_ref is not None
    assert entries[0].ledger_block_number is not None
    assert audit.find_by_tx(entries[0].ledger_tx_ref)[0].subject_id == "rec-1"
    assert notifier.ingested == []


def test_large_artifact_hashes(record_pipeline, backend):
    report = bytes(range(256)) * (3 * 1024 * 1024 // 256)
    meta = record_pipeline.ingest(report, "rec-mri", "patient-1", {"mime_type": "application/pdf"})
    assert meta.size_bytes == 3 * 1024 * 1024
    assert re.fullmatch(r"[0-9a-f]{64}", meta.integrity_hash)
    assert re.fullmatch(r"[0-9a-f]{64}", meta.encryption_hash)
    assert meta.integrity_hash != meta.encryption_hash
    assert meta.integrity_hash == CryptoVault.hash(report)
    assert CryptoVault.hash(backend.blobs[meta.content_address]) == meta.encryption_hash
    assert record_pipeline.retrieve("rec-mri", actor_id="patient-1") == report
