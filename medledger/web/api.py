from __future__ import annotations

import base64
import binascii
import math
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from medledger import __version__
from medledger.core.consent import ConsentGrant, ConsentStatus
from medledger.core.errors import MedLedgerError, NotFoundError, PermissionDeniedError, ValidationError
from medledger.core.services import Services
from medledger.web.models import (
    AuditListResponse,
    ConsentCreateRequest,
    ConsentListResponse,
    ConsentResponse,
    ConsentRevokeRequest,
    EmergencyRevokeResponse,
    EmergencyStatusResponse,
    RecordCreateRequest,
    RecordListResponse,
    RecordResponse,
    VerificationResponse,
)
from medledger.web.security import WebSecurityMiddleware

STATUS_BY_CODE = {
    "validation_error": 400,
    "permission_denied": 403,
    "not_found": 404,
    "already_processed": 409,
    "duplicate_record": 409,
    "expired": 410,
    "integrity_error": 422,
    "ledger_error": 502,
    "event_not_found": 502,
    "store_unavailable": 503,
    "key_unavailable": 503,
    "confirmation_timeout": 504,
}


def _trace_id(request: Request) -> str:
    return getattr(getattr(request, "state", None), "trace_id", "web")


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="MedLedger", version=__version__)
    web_cfg = services.cfg.web
    reporter = services.error_reporter
    records = services.records
    consent = services.consent

    if web_cfg.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=web_cfg.allowed_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )
    app.middleware("http")(WebSecurityMiddleware(web_cfg=web_cfg))

    @app.exception_handler(MedLedgerError)
    async def medledger_error_handler(request: Request, exc: MedLedgerError):
        reporter.write_error(exc, trace_id=_trace_id(request), subsystem="web", internal_exc=None)
        body = {"detail": exc.user_message, "code": exc.code}
        tx_ref = exc.context.get("tx_ref")
        if tx_ref:
            body["tx_ref"] = tx_ref
        return JSONResponse(status_code=STATUS_BY_CODE.get(exc.code, 500), content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        reporter.write_error(
            ValidationError(errors=exc.errors()), trace_id=_trace_id(request), subsystem="web", internal_exc=None
        )
        return JSONResponse(status_code=400, content={"detail": "Invalid request.", "code": "validation_error"})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        err = reporter.report_exception(exc, trace_id=_trace_id(request), subsystem="web")
        return JSONResponse(status_code=500, content={"detail": err.user_message, "code": err.code})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/v1/status")
    def service_status():
        return services.health()

    # ---- records ----
    @app.post("/v1/records", response_model=RecordResponse)
    def create_record(req: RecordCreateRequest, x_actor_id: str = Header(min_length=1, max_length=128)):
        try:
            data = base64.b64decode(req.content_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError("content_b64 is not valid base64.") from e
        meta = records.ingest(data, req.record_id, req.owner_id, req.metadata, uploaded_by=x_actor_id)
        return {"record": meta.model_dump(mode="json")}

    @app.get("/v1/records/{record_id}", response_model=RecordResponse)
    def get_record(record_id: str, x_actor_id: str = Header(min_length=1, max_length=128)):
        meta = records.get(record_id, actor_id=x_actor_id)
        return {"record": meta.model_dump(mode="json")}

    @app.get("/v1/records/{record_id}/content")
    def get_record_content(
        record_id: str,
        x_actor_id: str = Header(min_length=1, max_length=128),
        x_actor_address: Optional[str] = Header(default=None, max_length=64),
    ):
        data = records.retrieve(record_id, actor_id=x_actor_id, actor_address=x_actor_address)
        meta = records.get(record_id)
        media_type = str(meta.descriptive.get("mime_type") or "application/octet-stream")
        return Response(content=data, media_type=media_type)

    @app.post("/v1/records/{record_id}/verify", response_model=VerificationResponse)
    def verify_record(record_id: str, x_actor_id: str = Header(min_length=1, max_length=128)):
        records.get(record_id, actor_id=x_actor_id)
        report = records.verify(record_id, actor_id=x_actor_id)
        return {"report": report.model_dump(mode="json")}

    @app.get("/v1/owners/{owner_id}/records", response_model=RecordListResponse)
    def list_owner_records(owner_id: str, x_actor_id: str = Header(min_length=1, max_length=128)):
        if x_actor_id != owner_id:
            raise PermissionDeniedError()
        return {"records": [m.model_dump(mode="json") for m in records.list_for_owner(owner_id)]}

    # ---- consents ----
    def _visible_consent(consent_id: str, actor_id: str) -> ConsentGrant:
        grant = consent.get(consent_id)
        if actor_id not in (grant.owner_id, grant.grantee_id):
            raise PermissionDeniedError(consent_id=consent_id)
        return grant

    @app.post("/v1/consents", response_model=ConsentResponse)
    def request_consent(req: ConsentCreateRequest, x_actor_id: str = Header(min_length=1, max_length=128)):
        grant = consent.request(
            req.owner_id, x_actor_id, req.grantee_address, req.purpose, req.duration_days, req.record_ids
        )
        return {"consent": grant.model_dump(mode="json")}

    @app.get("/v1/consents/{consent_id}", response_model=ConsentResponse)
    def get_consent(consent_id: str, x_actor_id: str = Header(min_length=1, max_length=128)):
        return {"consent": _visible_consent(consent_id, x_actor_id).model_dump(mode="json")}

    @app.post("/v1/consents/{consent_id}/approve", response_model=ConsentResponse)
    def approve_consent(consent_id: str, x_actor_id: str = Header(min_length=1, max_length=128)):
        return {"consent": consent.approve(consent_id, x_actor_id).model_dump(mode="json")}

    @app.post("/v1/consents/{consent_id}/reject", response_model=ConsentResponse)
    def reject_consent(consent_id: str, x_actor_id: str = Header(min_length=1, max_length=128)):
        return {"consent": consent.reject(consent_id, x_actor_id).model_dump(mode="json")}

    @app.post("/v1/consents/{consent_id}/revoke", response_model=ConsentResponse)
    def revoke_consent(
        consent_id: str,
        req: Optional[ConsentRevokeRequest] = None,
        x_actor_id: str = Header(min_length=1, max_length=128),
    ):
        reason = (req.reason if req is not None else "") or ""
        return {"consent": consent.revoke(consent_id, x_actor_id, reason).model_dump(mode="json")}

    @app.get("/v1/owners/{owner_id}/consents", response_model=ConsentListResponse)
    def list_owner_consents(
        owner_id: str,
        status: Optional[ConsentStatus] = None,
        x_actor_id: str = Header(min_length=1, max_length=128),
    ):
        if x_actor_id != owner_id:
            raise PermissionDeniedError()
        return {"consents": [g.model_dump(mode="json") for g in consent.list_for_owner(owner_id, status)]}

    # ---- emergency access ----
    @app.post("/v1/owners/{owner_id}/emergency", response_model=ConsentResponse)
    def grant_emergency(owner_id: str, x_actor_id: str = Header(min_length=1, max_length=128)):
        return {"consent": consent.grant_emergency(owner_id, x_actor_id).model_dump(mode="json")}

    @app.post("/v1/owners/{owner_id}/emergency/revoke", response_model=EmergencyRevokeResponse)
    def revoke_emergency(
        owner_id: str,
        req: Optional[ConsentRevokeRequest] = None,
        x_actor_id: str = Header(min_length=1, max_length=128),
    ):
        reason = (req.reason if req is not None else "") or ""
        revoked = consent.revoke_emergency(owner_id, x_actor_id, reason)
        return {"revoked_count": len(revoked), "consent_ids": [g.consent_id for g in revoked]}

    @app.get("/v1/owners/{owner_id}/emergency", response_model=EmergencyStatusResponse)
    def emergency_status(owner_id: str, x_actor_id: str = Header(min_length=1, max_length=128)):
        if x_actor_id != owner_id:
            raise PermissionDeniedError()
        grant = consent.emergency_status(owner_id)
        if grant is None:
            return {"active": False}
        return {
            "active": True,
            "consent_id": grant.consent_id,
            "expires_at": grant.expires_at,
            "seconds_remaining": max(0, math.ceil(grant.expires_at - services.clock())),
        }

    # ---- audit ----
    @app.get("/v1/audit", response_model=AuditListResponse)
    def audit_for_subject(subject_id: str, limit: int = 200, x_actor_id: str = Header(min_length=1, max_length=128)):
        try:
            records.get(subject_id, actor_id=x_actor_id)
        except NotFoundError:
            _visible_consent(subject_id, x_actor_id)
        entries = services.audit.entries_for(subject_id, limit=max(1, min(int(limit), 1000)))
        return {"entries": [e.model_dump(mode="json") for e in entries]}

    @app.get("/v1/audit/integrity")
    def audit_integrity():
        return services.audit.verify_integrity(limit_last_n=services.cfg.audit.verify_last_n).model_dump()

    return app
