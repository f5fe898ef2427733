from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Optional, Sequence

from medledger.core.audit import AuditOutcome, AuditTrail
from medledger.core.config.models import ConsentConfig
from medledger.core.consent.models import (
    EMERGENCY_GRANTEE,
    MAX_ID_LENGTH,
    MAX_PURPOSE_LENGTH,
    ConsentGrant,
    ConsentStatus,
)
from medledger.core.consent.store import ConsentStore
from medledger.core.errors import (
    AlreadyProcessedError,
    ConfirmationTimeoutError,
    EventNotFoundError,
    ExpiredError,
    LedgerError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from medledger.core.ledger import LedgerClient, checksum_address
from medledger.core.locks import KeyedLocks
from medledger.core.notify import Notifier, NullNotifier
from medledger.core.records.models import RecordMetadata

logger = logging.getLogger("medledger.consent")

SECONDS_PER_DAY = 86400
SECONDS_PER_HOUR = 3600


class ConsentGrantPipeline:
    """
    Consent state machine:

        pending --approve--> approved --revoke--> revoked
        pending --reject---> rejected
        approved --time passes expires_at--> expired (observed lazily on read)

    Approve and revoke write to the ledger first and persist only after confirmation.
    Reject is local-only, as are owner-declared emergency grants, which start out
    approved and let any actor read the owner's records until they expire or are revoked.
    """

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        store: ConsentStore,
        audit: AuditTrail,
        notifier: Optional[Notifier] = None,
        cfg: Optional[ConsentConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.store = store
        self.audit = audit
        self.notifier = notifier or NullNotifier()
        self.cfg = cfg or ConsentConfig()
        self._clock = clock
        self._locks = KeyedLocks()

    # ---- request ----
    def request(
        self,
        owner_id: str,
        grantee_id: str,
        grantee_address: str,
        purpose: str,
        duration_days: int,
        record_ids: Sequence[str] = (),
    ) -> ConsentGrant:
        owner = str(owner_id or "").strip()
        grantee = str(grantee_id or "").strip()
        if not owner or not grantee:
            raise ValidationError("owner_id and grantee_id are required.")
        for field_name, value in (("owner_id", owner), ("grantee_id", grantee)):
            if len(value) > MAX_ID_LENGTH:
                raise ValidationError(f"{field_name} is too long.", field=field_name, limit=MAX_ID_LENGTH)
        if grantee == EMERGENCY_GRANTEE:
            raise ValidationError("Reserved grantee id.", grantee_id=grantee)
        text = str(purpose or "")
        if len(text) > MAX_PURPOSE_LENGTH:
            raise ValidationError("purpose is too long.", limit=MAX_PURPOSE_LENGTH)
        if owner == grantee:
            raise ValidationError("An owner cannot request consent from themselves.", owner_id=owner)
        if isinstance(duration_days, bool) or not isinstance(duration_days, int):
            raise ValidationError("duration_days must be an integer.", duration_days=duration_days)
        if not self.cfg.min_duration_days <= duration_days <= self.cfg.max_duration_days:
            raise ValidationError(
                f"duration_days must be between {self.cfg.min_duration_days} and {self.cfg.max_duration_days}.",
                duration_days=duration_days,
            )
        scope = [str(r).strip() for r in record_ids]
        if any(not r or len(r) > MAX_ID_LENGTH for r in scope):
            raise ValidationError("Record ids in scope must be non-empty and at most 128 characters.")

        now = float(self._clock())
        grant = ConsentGrant(
            owner_id=owner,
            grantee_id=grantee,
            grantee_address=checksum_address(grantee_address),
            purpose=text,
            scope=scope,
            requested_at=now,
            expires_at=now + duration_days * SECONDS_PER_DAY,
        )
        self.store.insert(grant)
        self.audit.record(
            grantee,
            "consent.request",
            grant.consent_id,
            details={"owner_id": owner, "duration_days": duration_days, "scope": scope},
        )
        return grant

    # ---- owner decisions ----
    def approve(self, consent_id: str, actor_owner_id: str) -> ConsentGrant:
        with self._locks.hold(consent_id):
            grant = self._require(consent_id)
            self._check_owner(grant, actor_owner_id, "consent.approve")
            if grant.status != ConsentStatus.pending:
                raise AlreadyProcessedError(consent_id=consent_id, status=grant.status.value)
            now = float(self._clock())
            duration_seconds = int(grant.expires_at - now)
            if duration_seconds <= 0:
                self.audit.record(actor_owner_id, "consent.approve", consent_id, outcome=AuditOutcome.failed, details={"error": "expired"})
                raise ExpiredError(consent_id=consent_id, expires_at=grant.expires_at)

            try:
                receipt = self.ledger.grant_access(grant.owner_id, grant.grantee_address, duration_seconds)
            except (LedgerError, EventNotFoundError, ConfirmationTimeoutError) as e:
                self.audit.record(
                    actor_owner_id,
                    "consent.approve",
                    consent_id,
                    outcome=AuditOutcome.timeout if isinstance(e, ConfirmationTimeoutError) else AuditOutcome.failed,
                    details={"error": e.code, "unconfirmed_tx_ref": e.context.get("tx_ref")},
                )
                raise
            token_id = receipt.event.token_id
            moved = self.store.transition(
                consent_id,
                expected=ConsentStatus.pending,
                new=ConsentStatus.approved,
                fields={"responded_at": now, "ledger_token_ref": token_id, "ledger_tx_ref": receipt.tx_ref},
            )
            if not moved:
                logger.critical(
                    "Consent %s granted on the ledger (token=%s, tx=%s) but was no longer pending locally.",
                    consent_id,
                    token_id,
                    receipt.tx_ref,
                )
                self.audit.record(
                    actor_owner_id,
                    "consent.approve",
                    consent_id,
                    receipt=receipt,
                    outcome=AuditOutcome.failed,
                    details={"error": "state_changed", "token_id": str(token_id)},
                )
                raise AlreadyProcessedError(consent_id=consent_id, tx_ref=receipt.tx_ref)
            self.audit.record(
                actor_owner_id,
                "consent.approve",
                consent_id,
                receipt=receipt,
                details={"grantee_id": grant.grantee_id, "token_id": str(token_id), "ledger_expires_at": receipt.event.expires_at},
            )
            updated = self._require(consent_id)
        logger.info("Consent %s approved (token=%s).", consent_id, token_id)
        self._notify(self.notifier.on_consent_resolved, consent_id, grant.grantee_id, True)
        return updated

    def reject(self, consent_id: str, actor_owner_id: str) -> ConsentGrant:
        with self._locks.hold(consent_id):
            grant = self._require(consent_id)
            self._check_owner(grant, actor_owner_id, "consent.reject")
            now = float(self._clock())
            moved = self.store.transition(
                consent_id, expected=ConsentStatus.pending, new=ConsentStatus.rejected, fields={"responded_at": now}
            )
            if not moved:
                raise AlreadyProcessedError(consent_id=consent_id, status=grant.status.value)
            self.audit.record(actor_owner_id, "consent.reject", consent_id, details={"grantee_id": grant.grantee_id})
            updated = self._require(consent_id)
        self._notify(self.notifier.on_consent_resolved, consent_id, grant.grantee_id, False)
        return updated

    def revoke(self, consent_id: str, actor_owner_id: str, reason: str = "") -> ConsentGrant:
        with self._locks.hold(consent_id):
            grant = self._observe_expiry(self._require(consent_id))
            self._check_owner(grant, actor_owner_id, "consent.revoke")
            if grant.status == ConsentStatus.expired:
                raise ExpiredError(consent_id=consent_id, expires_at=grant.expires_at)
            if grant.status != ConsentStatus.approved:
                raise AlreadyProcessedError(consent_id=consent_id, status=grant.status.value)
            if grant.emergency:
                if not self._revoke_emergency_grant(grant, actor_owner_id, reason):
                    raise AlreadyProcessedError(consent_id=consent_id)
                return self._require(consent_id)

            try:
                receipt = self.ledger.revoke_access(int(grant.ledger_token_ref))
            except (LedgerError, EventNotFoundError, ConfirmationTimeoutError) as e:
                self.audit.record(
                    actor_owner_id,
                    "consent.revoke",
                    consent_id,
                    outcome=AuditOutcome.timeout if isinstance(e, ConfirmationTimeoutError) else AuditOutcome.failed,
                    details={"error": e.code, "unconfirmed_tx_ref": e.context.get("tx_ref")},
                )
                raise
            now = float(self._clock())
            moved = self.store.transition(
                consent_id,
                expected=ConsentStatus.approved,
                new=ConsentStatus.revoked,
                fields={"revoked_at": now, "revoke_reason": str(reason or "")[:MAX_PURPOSE_LENGTH], "ledger_tx_ref": receipt.tx_ref},
            )
            if not moved:
                logger.critical("Consent %s revoked on the ledger (tx=%s) but local state changed.", consent_id, receipt.tx_ref)
                self.audit.record(
                    actor_owner_id,
                    "consent.revoke",
                    consent_id,
                    receipt=receipt,
                    outcome=AuditOutcome.failed,
                    details={"error": "state_changed", "token_id": str(grant.ledger_token_ref)},
                )
                raise AlreadyProcessedError(consent_id=consent_id, tx_ref=receipt.tx_ref)
            self.audit.record(
                actor_owner_id,
                "consent.revoke",
                consent_id,
                receipt=receipt,
                details={"grantee_id": grant.grantee_id, "token_id": str(grant.ledger_token_ref), "reason": reason},
            )
            return self._require(consent_id)

    # ---- emergency access ----
    def grant_emergency(self, owner_id: str, actor_id: str) -> ConsentGrant:
        """Owner opens read access to all of their records for `emergency_window_hours`."""
        owner = str(owner_id or "").strip()
        if not owner or len(owner) > MAX_ID_LENGTH:
            raise ValidationError("owner_id is required and at most 128 characters.")
        if actor_id != owner:
            self.audit.record(actor_id, "consent.emergency_grant", owner, outcome=AuditOutcome.denied)
            raise PermissionDeniedError("Only the owner can grant emergency access.", owner_id=owner)

        now = float(self._clock())
        grant = ConsentGrant(
            owner_id=owner,
            grantee_id=EMERGENCY_GRANTEE,
            grantee_address="",
            purpose="Emergency access",
            status=ConsentStatus.approved,
            requested_at=now,
            responded_at=now,
            expires_at=now + self.cfg.emergency_window_hours * SECONDS_PER_HOUR,
            emergency=True,
        )
        self.store.insert(grant)
        self.audit.record(
            actor_id,
            "consent.emergency_grant",
            grant.consent_id,
            details={"owner_id": owner, "expires_at": grant.expires_at},
        )
        logger.warning("Emergency access granted for owner %s until %.0f.", owner, grant.expires_at)
        self._notify(self.notifier.on_consent_resolved, grant.consent_id, EMERGENCY_GRANTEE, True)
        return grant

    def revoke_emergency(self, owner_id: str, actor_id: str, reason: str = "") -> List[ConsentGrant]:
        """Revoke every active emergency grant of `owner_id`; returns the grants that moved."""
        if actor_id != owner_id:
            self.audit.record(actor_id, "consent.emergency_revoke", str(owner_id), outcome=AuditOutcome.denied)
            raise PermissionDeniedError("Only the owner can revoke emergency access.", owner_id=owner_id)
        revoked: List[ConsentGrant] = []
        for grant in self._active_emergency(owner_id):
            with self._locks.hold(grant.consent_id):
                if self._revoke_emergency_grant(grant, actor_id, reason):
                    revoked.append(self._require(grant.consent_id))
        return revoked

    def emergency_status(self, owner_id: str) -> Optional[ConsentGrant]:
        """The active emergency grant with the latest expiry, if any."""
        active = self._active_emergency(owner_id)
        return max(active, key=lambda g: g.expires_at) if active else None

    # ---- reads ----
    def get(self, consent_id: str) -> ConsentGrant:
        return self._observe_expiry(self._require(consent_id))

    def list_for_owner(self, owner_id: str, status: Optional[ConsentStatus] = None) -> List[ConsentGrant]:
        grants = [self._observe_expiry(g) for g in self.store.list_for_owner(owner_id)]
        return [g for g in grants if status is None or g.status == ConsentStatus(status)]

    def list_for_grantee(self, grantee_id: str, status: Optional[ConsentStatus] = None) -> List[ConsentGrant]:
        grants = [self._observe_expiry(g) for g in self.store.list_for_grantee(grantee_id)]
        return [g for g in grants if status is None or g.status == ConsentStatus(status)]

    def authorizes(self, actor_id: str, record: RecordMetadata) -> bool:
        """
        True when `actor_id` holds an approved, unexpired grant from the record's owner
        covering it, or the owner has emergency access open.
        """
        for grant in self.list_for_grantee(actor_id, status=ConsentStatus.approved):
            if grant.owner_id != record.owner_id:
                continue
            if not grant.scope or record.record_id in grant.scope:
                return True
        return bool(self._active_emergency(record.owner_id))

    def has_ledger_access(self, requester_address: str, owner_id: str) -> bool:
        return self.ledger.check_access(checksum_address(requester_address), owner_id)

    # ---- internals ----
    def _require(self, consent_id: str) -> ConsentGrant:
        grant = self.store.get(consent_id)
        if grant is None:
            raise NotFoundError("Consent not found.", consent_id=consent_id)
        return grant

    def _check_owner(self, grant: ConsentGrant, actor_id: str, action: str) -> None:
        if actor_id != grant.owner_id:
            self.audit.record(actor_id, action, grant.consent_id, outcome=AuditOutcome.denied)
            raise PermissionDeniedError("Only the owner can decide on this consent.", consent_id=grant.consent_id)

    def _observe_expiry(self, grant: ConsentGrant) -> ConsentGrant:
        if grant.status != ConsentStatus.approved or not grant.is_expired(self._clock()):
            return grant
        if self.store.transition(grant.consent_id, expected=ConsentStatus.approved, new=ConsentStatus.expired):
            self.audit.record("system", "consent.expire", grant.consent_id, details={"expires_at": grant.expires_at})
            logger.info("Consent %s expired.", grant.consent_id)
        return self._require(grant.consent_id)

    def _active_emergency(self, owner_id: str) -> List[ConsentGrant]:
        grants = [self._observe_expiry(g) for g in self.store.list_for_owner(owner_id, status=ConsentStatus.approved) if g.emergency]
        now = self._clock()
        return [g for g in grants if g.is_active(now)]

    def _revoke_emergency_grant(self, grant: ConsentGrant, actor_id: str, reason: str) -> bool:
        moved = self.store.transition(
            grant.consent_id,
            expected=ConsentStatus.approved,
            new=ConsentStatus.revoked,
            fields={"revoked_at": float(self._clock()), "revoke_reason": str(reason or "")[:MAX_PURPOSE_LENGTH]},
        )
        if moved:
            self.audit.record(
                actor_id, "consent.emergency_revoke", grant.consent_id, details={"owner_id": grant.owner_id, "reason": reason}
            )
            logger.info("Emergency access %s for owner %s revoked.", grant.consent_id, grant.owner_id)
        return moved

    @staticmethod
    def _notify(fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.warning("Notification %s failed; the operation is already committed.", fn.__name__, exc_info=True)
