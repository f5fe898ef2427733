from medledger.core.storage.backends import ContentBackend, FilesystemContentBackend, HttpContentBackend
from medledger.core.storage.content_store import (
    DEGRADED_PREFIX,
    PLACEHOLDER_PAYLOAD,
    ContentStore,
    DegradedAddress,
    FetchedBlob,
    StorageResult,
    StoredAddress,
    is_degraded_address,
)

__all__ = [
    "ContentBackend",
    "ContentStore",
    "DEGRADED_PREFIX",
    "DegradedAddress",
    "FetchedBlob",
    "FilesystemContentBackend",
    "HttpContentBackend",
    "PLACEHOLDER_PAYLOAD",
    "StorageResult",
    "StoredAddress",
    "is_degraded_address",
]
