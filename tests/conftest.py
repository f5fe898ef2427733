from __future__ import annotations

import os

import pytest

from medledger.core.audit import AuditTrail
from medledger.core.circuit_breaker import BreakerConfig, CircuitBreaker
from medledger.core.config.manager import ConfigManager
from medledger.core.config.models import ConsentConfig, RecordsConfig
from medledger.core.config.paths import ConfigFsPaths
from medledger.core.consent import ConsentGrantPipeline, ConsentStore
from medledger.core.crypto import CryptoVault
from medledger.core.records import RecordIngestionPipeline, RecordStore
from medledger.core.storage import ContentStore
from .helpers.fakes import FakeClock, FakeLedger, MemoryContentBackend, RecordingNotifier

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated repo root with config/ and secure/ under tmp_path.
    """
    fs = ConfigFsPaths(root=str(tmp_path))
    os.makedirs(fs.config_dir, exist_ok=True)
    os.makedirs(fs.secure_dir, exist_ok=True)
    return fs


@pytest.fixture
def config_manager(tmp_config_root):
    cm = ConfigManager(fs=tmp_config_root, read_only=False, env={"MEDLEDGER_ENCRYPTION_KEY": TEST_KEY_HEX})
    cm.load()
    return cm


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault():
    return CryptoVault(bytes.fromhex(TEST_KEY_HEX))


@pytest.fixture
def ledger(clock):
    return FakeLedger(clock)


@pytest.fixture
def backend():
    return MemoryContentBackend()


@pytest.fixture
def content_store(backend, clock):
    return ContentStore(backend, breaker=CircuitBreaker(BreakerConfig(failures=3, window_seconds=60, cooldown_seconds=30), clock=clock.time))


@pytest.fixture
def audit(tmp_path, clock):
    return AuditTrail(
        path_jsonl=str(tmp_path / "audit" / "audit_entries.jsonl"),
        sqlite_path=str(tmp_path / "audit" / "index.sqlite"),
        clock=clock.time,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def consent_pipeline(tmp_path, ledger, audit, notifier, clock):
    return ConsentGrantPipeline(
        ledger=ledger,
        store=ConsentStore(db_path=str(tmp_path / "data" / "medledger.sqlite")),
        audit=audit,
        notifier=notifier,
        cfg=ConsentConfig(),
        clock=clock.time,
    )


@pytest.fixture
def records_cfg():
    return RecordsConfig()


@pytest.fixture
def record_pipeline(tmp_path, vault, content_store, ledger, audit, notifier, consent_pipeline, records_cfg, clock):
    return RecordIngestionPipeline(
        vault=vault,
        content_store=content_store,
        ledger=ledger,
        store=RecordStore(db_path=str(tmp_path / "data" / "medledger.sqlite")),
        audit=audit,
        notifier=notifier,
        cfg=records_cfg,
        access_checker=consent_pipeline.authorizes,
        clock=clock.time,
    )
