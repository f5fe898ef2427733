from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CryptoConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    key_env: str = "MEDLEDGER_ENCRYPTION_KEY"
    key_path: str = "secure/encryption.key"
    # Never enable for real patient data: records encrypted under an ephemeral key are unreadable after restart.
    allow_ephemeral_key: bool = False


class BreakerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")
    failures: int = Field(default=3, ge=1, le=100)
    window_seconds: int = Field(default=60, ge=1)
    cooldown_seconds: int = Field(default=30, ge=1)


class ContentStoreConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    backend: Literal["http", "filesystem"] = "filesystem"
    root_dir: str = "data/blobs"
    upload_url: str = "https://api.web3.storage/upload"
    gateway_url: str = "https://w3s.link/ipfs/"
    token_env: str = "MEDLEDGER_STORE_TOKEN"
    timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    degraded_mode_enabled: bool = True
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)


class LedgerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    rpc_url: str = "https://rpc.sepolia.org"
    contract_address: str = ""
    private_key_env: str = "MEDLEDGER_LEDGER_PRIVATE_KEY"
    chain_id: Optional[int] = None
    request_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    confirmation_timeout_seconds: float = Field(default=120.0, gt=0, le=3600)
    poll_latency_seconds: float = Field(default=1.0, gt=0, le=60)
    gas_limit: Optional[int] = Field(default=None, ge=21000)


class RecordsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    db_path: str = "data/medledger.sqlite"
    max_artifact_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    allow_degraded_storage: bool = False
    log_access_on_ledger: bool = False


class ConsentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    db_path: str = "data/medledger.sqlite"
    min_duration_days: int = Field(default=1, ge=1)
    max_duration_days: int = Field(default=365, ge=1, le=3650)
    emergency_window_hours: int = Field(default=24, ge=1, le=72)

    @field_validator("max_duration_days")
    @classmethod
    def _max_not_below_min(cls, v: int, info) -> int:
        lo = (info.data or {}).get("min_duration_days", 1)
        if v < lo:
            raise ValueError("max_duration_days must be >= min_duration_days")
        return v


class AuditConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    path_jsonl: str = "logs/audit/audit_entries.jsonl"
    use_sqlite_index: bool = True
    sqlite_path: str = "logs/audit/index.sqlite"
    verify_on_startup: bool = True
    verify_last_n: int = Field(default=2000, ge=1)


class NotificationsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    enabled: bool = True
    outbox_path: str = "logs/notifications.jsonl"


class WebConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    bind_host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)
    # SHA-256 hex digests of accepted X-API-Key values.
    api_key_hashes: List[str] = Field(default_factory=list)
    allowed_origins: List[str] = Field(default_factory=list)
    max_upload_bytes: int = Field(default=16 * 1024 * 1024, ge=1)

    @field_validator("allowed_origins")
    @classmethod
    def _no_wildcard(cls, v: List[str]) -> List[str]:
        if any(o == "*" for o in v):
            raise ValueError("Wildcard CORS origins are not allowed.")
        return v


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    log_dir: str = "logs"
    level: str = "INFO"
    errors_path: str = "logs/errors.jsonl"
    include_tracebacks: bool = False


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    config_version: int = Field(default=1, ge=1)
    crypto: CryptoConfig = Field(default_factory=CryptoConfig)
    content_store: ContentStoreConfig = Field(default_factory=ContentStoreConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    records: RecordsConfig = Field(default_factory=RecordsConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
