from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from medledger.core.config.models import WebConfig
from medledger.core.trace import accept_trace_id, trace_context

logger = logging.getLogger("medledger.web")

OPEN_PATHS = {"/health"}
BODY_METHODS = {"POST", "PUT", "PATCH"}


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class WebSecurityMiddleware:
    """
    - assigns a trace id (X-Trace-Id in, echoed back out)
    - requires an X-API-Key whose SHA-256 is configured (fail-closed when none are)
    - rejects bodies above web.max_upload_bytes, by Content-Length when declared and by
      the received body otherwise (chunked uploads)
    """

    def __init__(self, *, web_cfg: WebConfig):
        self.key_hashes = [h.lower() for h in web_cfg.api_key_hashes]
        self.max_upload_bytes = int(web_cfg.max_upload_bytes)
        if not self.key_hashes:
            logger.warning("No API keys configured; every authenticated endpoint will return 401.")

    def _authorized(self, request: Request) -> bool:
        key = request.headers.get("X-API-Key") or ""
        if not key:
            return False
        h = hash_api_key(key)
        return any(hmac.compare_digest(h, k) for k in self.key_hashes)

    async def _too_large(self, request: Request) -> bool:
        length = request.headers.get("content-length")
        if length and length.isdigit():
            return int(length) > self.max_upload_bytes
        if request.method not in BODY_METHODS:
            return False
        # Starlette caches the body, so the route still sees it.
        body = await request.body()
        return len(body) > self.max_upload_bytes

    async def __call__(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Any:
        trace_id = accept_trace_id(request.headers.get("X-Trace-Id"))
        request.state.trace_id = trace_id
        if request.url.path not in OPEN_PATHS:
            if not self._authorized(request):
                return JSONResponse(status_code=401, content={"detail": "Unauthorized.", "code": "unauthorized"})
            if await self._too_large(request):
                return JSONResponse(status_code=413, content={"detail": "Request body too large.", "code": "payload_too_large"})
        with trace_context(trace_id):
            response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        return response
