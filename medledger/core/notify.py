from __future__ import annotations

import logging

from medledger.core.events import EventLogger
from medledger.core.trace import resolve_trace_id

logger = logging.getLogger("medledger.notify")


class Notifier:
    """
    Post-commit notifications. Delivery is best-effort: pipelines log and drop
    any exception raised here, so implementations may simply raise.
    """

    def on_record_ingested(self, record_id: str, owner_id: str) -> None:
        raise NotImplementedError

    def on_consent_resolved(self, consent_id: str, grantee_id: str, approved: bool) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    def on_record_ingested(self, record_id: str, owner_id: str) -> None:
        return None

    def on_consent_resolved(self, consent_id: str, grantee_id: str, approved: bool) -> None:
        return None


class OutboxNotifier(Notifier):
    """Writes notifications to a JSONL outbox for an external delivery process."""

    def __init__(self, outbox: EventLogger):
        self.outbox = outbox

    def on_record_ingested(self, record_id: str, owner_id: str) -> None:
        self.outbox.log(resolve_trace_id(), "record.ingested", {"record_id": record_id, "owner_id": owner_id})

    def on_consent_resolved(self, consent_id: str, grantee_id: str, approved: bool) -> None:
        self.outbox.log(
            resolve_trace_id(),
            "consent.resolved",
            {"consent_id": consent_id, "grantee_id": grantee_id, "approved": bool(approved)},
        )
