from medledger.core.records.models import RecordMetadata, RecordStatus, VerificationReport
from medledger.core.records.pipeline import AccessChecker, RecordIngestionPipeline
from medledger.core.records.store import RecordStore

__all__ = [
    "AccessChecker",
    "RecordIngestionPipeline",
    "RecordMetadata",
    "RecordStatus",
    "RecordStore",
    "VerificationReport",
]
