from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, Union

from medledger.core.circuit_breaker import BreakerConfig, BreakerState, CircuitBreaker
from medledger.core.errors import StoreUnavailableError
from medledger.core.storage.backends import ContentBackend

DEGRADED_PREFIX = "degraded:"
PLACEHOLDER_PAYLOAD = b"MEDLEDGER-PLACEHOLDER: content was not durably stored (degraded mode)"

logger = logging.getLogger("medledger.storage")


def is_degraded_address(address: str) -> bool:
    return str(address or "").startswith(DEGRADED_PREFIX)


@dataclass(frozen=True)
class StoredAddress:
    """Blob durably written to the real store."""

    address: str
    durable: bool = True


@dataclass(frozen=True)
class DegradedAddress:
    """Store unreachable: a locally-recognizable placeholder, NOT durable."""

    address: str
    reason: str = ""
    durable: bool = False


StorageResult = Union[StoredAddress, DegradedAddress]


@dataclass(frozen=True)
class FetchedBlob:
    address: str
    data: bytes
    placeholder: bool = False


class ContentStore:
    def __init__(
        self,
        backend: ContentBackend,
        *,
        degraded_mode_enabled: bool = True,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.backend = backend
        self.degraded_mode_enabled = bool(degraded_mode_enabled)
        self.breaker = breaker or CircuitBreaker(
            BreakerConfig(failures=3, window_seconds=60, cooldown_seconds=30),
            on_state_change=log_breaker_change,
        )

    def put(self, data: bytes, name_hint: str = "") -> StorageResult:
        if self.breaker.allow():
            try:
                address = self.backend.put(bytes(data), name_hint)
            except StoreUnavailableError as e:
                self.breaker.record_failure()
                return self._degrade(data, e)
            self.breaker.record_success()
            if is_degraded_address(address):
                raise StoreUnavailableError("Backend returned an address in the reserved degraded namespace.", address=address)
            return StoredAddress(address=address)
        return self._degrade(data, StoreUnavailableError("Content store circuit is open.", backend=self.backend.name))

    def _degrade(self, data: bytes, cause: StoreUnavailableError) -> DegradedAddress:
        if not self.degraded_mode_enabled:
            raise cause
        address = DEGRADED_PREFIX + hashlib.sha256(bytes(data)).hexdigest()
        logger.warning(
            "DURABILITY RISK: content store unavailable (%s); issuing placeholder address %s for %d bytes.",
            cause.context.get("error") or cause.user_message,
            address,
            len(data),
        )
        return DegradedAddress(address=address, reason=cause.user_message)

    def get(self, address: str) -> FetchedBlob:
        if is_degraded_address(address):
            logger.warning("Placeholder address %s requested; returning placeholder payload.", address)
            return FetchedBlob(address=address, data=PLACEHOLDER_PAYLOAD, placeholder=True)
        return FetchedBlob(address=address, data=self.backend.get(address))

    def status(self) -> dict:
        snap = self.breaker.snapshot()
        return {"backend": self.backend.name, "degraded_mode_enabled": self.degraded_mode_enabled, "breaker": snap}


def log_breaker_change(state: BreakerState, _breaker: CircuitBreaker) -> None:
    if state == BreakerState.OPEN:
        logger.warning("Content store circuit OPEN; writes go to degraded mode until cooldown.")
    else:
        logger.info("Content store circuit %s.", state.value)
