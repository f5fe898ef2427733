from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from medledger.core.events import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class MedLedgerError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def __str__(self) -> str:
        return f"{self.code}: {self.user_message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- Ambient ----
class ConfigError(MedLedgerError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class KeyUnavailableError(MedLedgerError):
    def __init__(self, user_message: str = "Encryption key is not provisioned.", **ctx: Any):
        super().__init__("key_unavailable", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class ValidationError(MedLedgerError):
    def __init__(self, user_message: str = "Invalid request.", **ctx: Any):
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class PermissionDeniedError(MedLedgerError):
    def __init__(self, user_message: str = "Permission denied.", **ctx: Any):
        super().__init__("permission_denied", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class NotFoundError(MedLedgerError):
    def __init__(self, user_message: str = "Not found.", **ctx: Any):
        super().__init__("not_found", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class DuplicateRecordError(MedLedgerError):
    def __init__(self, user_message: str = "Record id is already registered.", **ctx: Any):
        super().__init__("duplicate_record", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


# ---- Crypto / storage ----
class IntegrityError(MedLedgerError):
    """Hash or authentication tag mismatch. Never retried automatically."""

    def __init__(self, user_message: str = "Integrity check failed; the data may have been tampered with.", **ctx: Any):
        super().__init__("integrity_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class StoreUnavailableError(MedLedgerError):
    def __init__(self, user_message: str = "The content store is unavailable.", **ctx: Any):
        super().__init__("store_unavailable", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


# ---- Ledger ----
class LedgerError(MedLedgerError):
    """Reverted, underfunded or unreachable. Not retried: a retry may duplicate side effects."""

    def __init__(self, user_message: str = "Ledger operation failed.", **ctx: Any):
        super().__init__("ledger_error", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)

    @property
    def tx_ref(self) -> Optional[str]:
        return self.context.get("tx_ref")


class EventNotFoundError(MedLedgerError):
    def __init__(self, user_message: str = "Expected ledger event missing from transaction receipt.", **ctx: Any):
        super().__init__("event_not_found", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)

    @property
    def tx_ref(self) -> Optional[str]:
        return self.context.get("tx_ref")


class ConfirmationTimeoutError(MedLedgerError):
    """Ambiguous outcome: the transaction may still land. Re-check ledger state before resubmitting."""

    def __init__(self, user_message: str = "Timed out waiting for ledger confirmation.", **ctx: Any):
        super().__init__("confirmation_timeout", user_message, severity=Severity.WARN, recoverable=True, context=ctx)

    @property
    def tx_ref(self) -> Optional[str]:
        return self.context.get("tx_ref")


# ---- Consent state machine ----
class AlreadyProcessedError(MedLedgerError):
    def __init__(self, user_message: str = "Consent already processed.", **ctx: Any):
        super().__init__("already_processed", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class ExpiredError(MedLedgerError):
    def __init__(self, user_message: str = "Consent has expired.", **ctx: Any):
        super().__init__("expired", user_message, severity=Severity.WARN, recoverable=False, context=ctx)
