from __future__ import annotations

import json
import logging
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional

from medledger.core.audit import AuditOutcome, AuditTrail
from medledger.core.config.models import RecordsConfig
from medledger.core.crypto import CryptoVault
from medledger.core.errors import (
    ConfirmationTimeoutError,
    DuplicateRecordError,
    EventNotFoundError,
    IntegrityError,
    LedgerError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from medledger.core.ledger import LedgerClient
from medledger.core.locks import KeyedLocks
from medledger.core.notify import Notifier, NullNotifier
from medledger.core.records.models import MAX_ID_LENGTH, RecordMetadata, RecordStatus, VerificationReport
from medledger.core.records.store import RecordStore
from medledger.core.storage import ContentStore, DegradedAddress

logger = logging.getLogger("medledger.records")

# (actor_id, record) -> True when a non-owner actor may read the record.
AccessChecker = Callable[[str, RecordMetadata], bool]


class RecordIngestionPipeline:
    """
    Raw artifact -> encrypted blob -> ledger registration -> local metadata -> audit entry.

    Steps run strictly in that order under a per-record-id lock. Nothing is persisted
    locally unless the ledger registration confirmed; a blob written before a ledger
    failure is left in the content store as an orphan and logged.
    """

    def __init__(
        self,
        *,
        vault: CryptoVault,
        content_store: ContentStore,
        ledger: LedgerClient,
        store: RecordStore,
        audit: AuditTrail,
        notifier: Optional[Notifier] = None,
        cfg: Optional[RecordsConfig] = None,
        access_checker: Optional[AccessChecker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.vault = vault
        self.content_store = content_store
        self.ledger = ledger
        self.store = store
        self.audit = audit
        self.notifier = notifier or NullNotifier()
        self.cfg = cfg or RecordsConfig()
        self.access_checker = access_checker
        self._clock = clock
        self._locks = KeyedLocks()

    def set_access_checker(self, checker: Optional[AccessChecker]) -> None:
        self.access_checker = checker

    # ---- ingest ----
    def ingest(
        self,
        raw_bytes: bytes,
        record_id: str,
        owner_id: str,
        descriptive_metadata: Optional[Dict[str, Any]] = None,
        *,
        uploaded_by: Optional[str] = None,
    ) -> RecordMetadata:
        data = bytes(raw_bytes)
        rid = str(record_id or "").strip()
        owner = str(owner_id or "").strip()
        uploader = str(uploaded_by or owner).strip()
        if not rid or not owner or not uploader:
            raise ValidationError("record_id and owner_id are required.")
        for field_name, value in (("record_id", rid), ("owner_id", owner), ("uploaded_by", uploader)):
            if len(value) > MAX_ID_LENGTH:
                raise ValidationError(f"{field_name} is too long.", field=field_name, limit=MAX_ID_LENGTH)
        descriptive = dict(descriptive_metadata or {})
        try:
            json.dumps(descriptive)
        except (TypeError, ValueError) as e:
            raise ValidationError("Descriptive metadata must be JSON-serializable.", record_id=rid) from e
        if not data:
            raise ValidationError("Artifact is empty.", record_id=rid)
        if len(data) > int(self.cfg.max_artifact_bytes):
            raise ValidationError(
                "Artifact exceeds the maximum size.", record_id=rid, size=len(data), limit=self.cfg.max_artifact_bytes
            )

        with self._locks.hold(rid):
            if self.store.exists(rid):
                raise DuplicateRecordError(record_id=rid)

            integrity_hash = self.vault.hash(data)
            artifact = self.vault.encrypt(data)
            encryption_hash = self.vault.hash(artifact.ciphertext)

            stored = self.content_store.put(artifact.ciphertext, name_hint=f"{rid}.enc")
            degraded = isinstance(stored, DegradedAddress)
            if degraded:
                if not self.cfg.allow_degraded_storage:
                    raise StoreUnavailableError(
                        "Content store unavailable; ingestion aborted.", record_id=rid, reason=stored.reason
                    )
                logger.warning(
                    "DURABILITY RISK: record %s will be registered with placeholder address %s.", rid, stored.address
                )

            try:
                receipt = self.ledger.register_artifact(rid, owner, stored.address, integrity_hash)
            except (LedgerError, EventNotFoundError, ConfirmationTimeoutError) as e:
                if not degraded:
                    logger.error(
                        "Orphaned blob: record=%s address=%s stays in the content store; ledger registration failed (%s).",
                        rid,
                        stored.address,
                        e.code,
                    )
                self.audit.record(
                    uploader,
                    "record.ingest",
                    rid,
                    outcome=AuditOutcome.timeout if isinstance(e, ConfirmationTimeoutError) else AuditOutcome.failed,
                    details={"error": e.code, "orphan_address": stored.address, "unconfirmed_tx_ref": e.context.get("tx_ref")},
                )
                raise

            now = float(self._clock())
            meta = RecordMetadata(
                record_id=rid,
                owner_id=owner,
                uploaded_by=uploader,
                content_address=stored.address,
                integrity_hash=integrity_hash,
                encryption_hash=encryption_hash,
                ledger_tx_ref=receipt.tx_ref,
                ledger_block_number=receipt.block_number,
                status=RecordStatus.pending if degraded else RecordStatus.verified,
                created_at=now,
                verified_at=None if degraded else now,
                iv=artifact.iv.hex(),
                tag=artifact.tag.hex(),
                size_bytes=artifact.plaintext_length,
                degraded_storage=degraded,
                descriptive=descriptive,
            )
            try:
                self.store.insert(meta)
            except (sqlite3.Error, DuplicateRecordError):
                logger.critical(
                    "Record %s is registered on the ledger (tx=%s) but local metadata was not persisted.",
                    rid,
                    receipt.tx_ref,
                )
                self.audit.record(
                    uploader,
                    "record.ingest",
                    rid,
                    receipt=receipt,
                    outcome=AuditOutcome.failed,
                    details={"error": "metadata_not_persisted", "content_address": stored.address},
                )
                raise

            details: Dict[str, Any] = {
                "content_address": stored.address,
                "integrity_hash": integrity_hash,
                "size_bytes": len(data),
            }
            if degraded:
                details["degraded_storage"] = True
            if not self.vault.durable:
                details["durable_key"] = False
            self.audit.record(uploader, "record.ingest", rid, receipt=receipt, details=details)

        logger.info("Record %s ingested (tx=%s, block=%d).", rid, receipt.tx_ref, receipt.block_number)
        self._notify(self.notifier.on_record_ingested, rid, owner)
        return meta

    # ---- read side ----
    def get(self, record_id: str, *, actor_id: Optional[str] = None) -> RecordMetadata:
        meta = self.store.get(record_id)
        if meta is None:
            raise NotFoundError("Record not found.", record_id=record_id)
        if actor_id is not None and not self._may_read(actor_id, meta):
            raise PermissionDeniedError(record_id=record_id)
        return meta

    def list_for_owner(self, owner_id: str) -> List[RecordMetadata]:
        return self.store.list_for_owner(owner_id)

    def retrieve(self, record_id: str, *, actor_id: str, actor_address: Optional[str] = None) -> bytes:
        meta = self.get(record_id)
        if not self._may_read(actor_id, meta):
            self.audit.record(actor_id, "record.access", meta.record_id, outcome=AuditOutcome.denied)
            raise PermissionDeniedError(record_id=meta.record_id)

        blob = self.content_store.get(meta.content_address)
        if blob.placeholder:
            raise StoreUnavailableError(
                "Record content was never durably stored.", record_id=meta.record_id, address=meta.content_address
            )
        try:
            if self.vault.hash(blob.data) != meta.encryption_hash:
                raise IntegrityError("Stored ciphertext does not match its recorded hash.", record_id=meta.record_id)
            plaintext = self.vault.decrypt(blob.data, bytes.fromhex(meta.iv), bytes.fromhex(meta.tag))
            if self.vault.hash(plaintext) != meta.integrity_hash:
                raise IntegrityError("Decrypted content does not match its integrity hash.", record_id=meta.record_id)
        except IntegrityError as e:
            logger.critical("Integrity failure on record %s: %s", meta.record_id, e.user_message)
            self.audit.record(actor_id, "record.access", meta.record_id, outcome=AuditOutcome.failed, details={"error": e.code})
            raise

        receipt = None
        if self.cfg.log_access_on_ledger and actor_address:
            receipt = self.ledger.log_action(meta.record_id, actor_address, "download")
        self.audit.record(actor_id, "record.access", meta.record_id, receipt=receipt, details={"size_bytes": len(plaintext)})
        return plaintext

    # ---- verification ----
    def verify(self, record_id: str, *, actor_id: str) -> VerificationReport:
        rid = str(record_id)
        with self._locks.hold(rid):
            meta = self.get(rid)
            mismatches: List[str] = []
            ledger_ts: Optional[int] = None
            try:
                onchain = self.ledger.get_artifact(rid)
            except NotFoundError:
                mismatches.append("not_registered")
            else:
                ledger_ts = onchain.timestamp
                if onchain.content_address != meta.content_address:
                    mismatches.append("content_address")
                if onchain.integrity_hash != meta.integrity_hash:
                    mismatches.append("integrity_hash")
                if onchain.owner_id != meta.owner_id:
                    mismatches.append("owner_id")

            now = float(self._clock())
            if meta.status == RecordStatus.pending:
                if mismatches:
                    self.store.transition_status(rid, RecordStatus.failed, at=now)
                elif not meta.degraded_storage:
                    self.store.transition_status(rid, RecordStatus.verified, at=now)
            elif mismatches:
                logger.error("Record %s (%s) disagrees with the ledger: %s", rid, meta.status.value, ", ".join(mismatches))

            status = self.get(rid).status
            self.audit.record(
                actor_id,
                "record.verify",
                rid,
                outcome=AuditOutcome.failed if mismatches else AuditOutcome.success,
                details={"mismatches": mismatches, "status": status.value},
            )
        return VerificationReport(
            record_id=rid,
            ok=not mismatches,
            status=status,
            mismatches=mismatches,
            ledger_timestamp=ledger_ts,
            checked_at=now,
        )

    # ---- internals ----
    def _may_read(self, actor_id: str, meta: RecordMetadata) -> bool:
        if actor_id in (meta.owner_id, meta.uploaded_by):
            return True
        return bool(self.access_checker is not None and self.access_checker(actor_id, meta))

    @staticmethod
    def _notify(fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.warning("Notification %s failed; the operation is already committed.", fn.__name__, exc_info=True)
