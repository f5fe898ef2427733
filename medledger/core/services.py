from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from medledger.core.audit import AuditTrail, IntegrityReport
from medledger.core.circuit_breaker import BreakerConfig, CircuitBreaker
from medledger.core.config import AppConfig, ConfigManager
from medledger.core.config.models import ContentStoreConfig
from medledger.core.consent import ConsentGrantPipeline, ConsentStore
from medledger.core.crypto import CryptoVault
from medledger.core.error_reporter import ErrorReporter, ErrorReporterConfig
from medledger.core.events import EventLogger
from medledger.core.ledger import LedgerClient
from medledger.core.notify import Notifier, NullNotifier, OutboxNotifier
from medledger.core.records import RecordIngestionPipeline, RecordStore
from medledger.core.storage import ContentBackend, ContentStore, FilesystemContentBackend, HttpContentBackend
from medledger.core.storage.content_store import log_breaker_change

logger = logging.getLogger("medledger.services")


@dataclass
class Services:
    cfg: AppConfig
    config_manager: ConfigManager
    vault: CryptoVault
    content_store: ContentStore
    ledger: LedgerClient
    audit: AuditTrail
    records: RecordIngestionPipeline
    consent: ConsentGrantPipeline
    notifier: Notifier
    error_reporter: ErrorReporter
    audit_integrity: Optional[IntegrityReport] = None
    clock: Callable[[], float] = time.time

    def health(self) -> Dict[str, Any]:
        return {
            "durable_key": self.vault.durable,
            "key_id": self.vault.key_id,
            "content_store": self.content_store.status(),
            "ledger": self.ledger.health(),
            "audit_entries": self.audit.count(),
            "audit_integrity_ok": None if self.audit_integrity is None else bool(self.audit_integrity.ok),
        }


def build_content_backend(cfg: ContentStoreConfig, cm: ConfigManager) -> ContentBackend:
    if cfg.backend == "http":
        return HttpContentBackend(
            upload_url=cfg.upload_url,
            gateway_url=cfg.gateway_url,
            token=cm.secret(cfg.token_env),
            timeout_seconds=cfg.timeout_seconds,
        )
    return FilesystemContentBackend(root_dir=cm.path(cfg.root_dir))


def build_services(
    cm: ConfigManager,
    *,
    ledger: Optional[LedgerClient] = None,
    content_backend: Optional[ContentBackend] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    """
    Construct every collaborator once and inject it. Nothing here is a module-level
    singleton; tests pass fakes for the ledger, backend and notifier.
    """
    cfg = cm.get()

    vault = CryptoVault.from_sources(
        key_env=cfg.crypto.key_env,
        key_path=cm.path(cfg.crypto.key_path),
        allow_ephemeral_key=cfg.crypto.allow_ephemeral_key,
        env=cm.env,
    )

    sc = cfg.content_store
    breaker = CircuitBreaker(
        BreakerConfig(
            failures=sc.breaker.failures,
            window_seconds=sc.breaker.window_seconds,
            cooldown_seconds=sc.breaker.cooldown_seconds,
        ),
        clock=clock,
        on_state_change=log_breaker_change,
    )
    content_store = ContentStore(
        content_backend or build_content_backend(sc, cm),
        degraded_mode_enabled=sc.degraded_mode_enabled,
        breaker=breaker,
    )

    if ledger is None:
        ledger = LedgerClient.connect(cfg.ledger, private_key=cm.secret(cfg.ledger.private_key_env))

    audit = AuditTrail(
        path_jsonl=cm.path(cfg.audit.path_jsonl),
        sqlite_path=cm.path(cfg.audit.sqlite_path) if cfg.audit.use_sqlite_index else None,
        clock=clock,
    )
    integrity = None
    if cfg.audit.verify_on_startup:
        integrity = audit.verify_integrity(limit_last_n=cfg.audit.verify_last_n)
        if not integrity.ok:
            logger.critical("Audit trail integrity check failed at startup: %s", integrity.message)

    if notifier is None:
        if cfg.notifications.enabled:
            notifier = OutboxNotifier(EventLogger(cm.path(cfg.notifications.outbox_path)))
        else:
            notifier = NullNotifier()

    consent = ConsentGrantPipeline(
        ledger=ledger,
        store=ConsentStore(db_path=cm.path(cfg.consent.db_path)),
        audit=audit,
        notifier=notifier,
        cfg=cfg.consent,
        clock=clock,
    )
    records = RecordIngestionPipeline(
        vault=vault,
        content_store=content_store,
        ledger=ledger,
        store=RecordStore(db_path=cm.path(cfg.records.db_path)),
        audit=audit,
        notifier=notifier,
        cfg=cfg.records,
        access_checker=consent.authorizes,
        clock=clock,
    )

    reporter = ErrorReporter(
        path=cm.path(cfg.logging.errors_path),
        cfg=ErrorReporterConfig(include_tracebacks=cfg.logging.include_tracebacks),
    )
    return Services(
        cfg=cfg,
        config_manager=cm,
        vault=vault,
        content_store=content_store,
        ledger=ledger,
        audit=audit,
        records=records,
        consent=consent,
        notifier=notifier,
        error_reporter=reporter,
        audit_integrity=integrity,
        clock=clock,
    )
