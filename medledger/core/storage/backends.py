from __future__ import annotations

import hashlib
import os
import re
import tempfile
from dataclasses import dataclass
from typing import Optional

import requests

from medledger.core.errors import NotFoundError, StoreUnavailableError


class ContentBackend:
    """
    Durable blob backend interface.

    - put(data, name_hint) -> content-derived address
    - get(address) -> bytes
    Failures surface as NotFoundError or StoreUnavailableError only.
    """

    name: str = "base"

    def put(self, data: bytes, name_hint: str = "") -> str:
        raise NotImplementedError

    def get(self, address: str) -> bytes:
        raise NotImplementedError


_FS_ADDR = re.compile(r"^sha256-[0-9a-f]{64}$")


@dataclass
class FilesystemContentBackend(ContentBackend):
    """Content-addressed directory store: address is sha256-<hex of bytes>."""

    root_dir: str
    name: str = "filesystem"

    def _path(self, address: str) -> str:
        if not _FS_ADDR.match(address):
            raise NotFoundError("Unknown content address.", address=address)
        digest = address.split("-", 1)[1]
        return os.path.join(self.root_dir, digest[:2], digest)

    def put(self, data: bytes, name_hint: str = "") -> str:
        address = "sha256-" + hashlib.sha256(data).hexdigest()
        path = self._path(address)
        if os.path.exists(path):
            return address
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".blob_", dir=os.path.dirname(path))
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            raise StoreUnavailableError(backend=self.name, error=str(e)) from e
        return address

    def get(self, address: str) -> bytes:
        path = self._path(address)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise NotFoundError("Blob not found.", address=address) from e
        except OSError as e:
            raise StoreUnavailableError(backend=self.name, error=str(e)) from e


@dataclass
class HttpContentBackend(ContentBackend):
    """
    IPFS pinning service over HTTP (web3.storage-style upload API + public gateway).
    The returned CID is derived from the uploaded bytes by the service.
    """

    upload_url: str
    gateway_url: str
    token: Optional[str]
    timeout_seconds: float = 30.0
    session: Optional[requests.Session] = None
    name: str = "http"

    def _session(self) -> requests.Session:
        if self.session is None:
            self.session = requests.Session()
        return self.session

    def put(self, data: bytes, name_hint: str = "") -> str:
        if not self.token:
            raise StoreUnavailableError("Content store token is not configured.", backend=self.name)
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/octet-stream",
            "X-NAME": name_hint or "artifact.bin",
        }
        try:
            r = self._session().post(self.upload_url, data=data, headers=headers, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise StoreUnavailableError(backend=self.name, error=str(e)) from e
        if r.status_code >= 400:
            raise StoreUnavailableError(backend=self.name, status=r.status_code)
        try:
            obj = r.json()
        except ValueError as e:
            raise StoreUnavailableError("Content store returned a malformed response.", backend=self.name) from e
        cid = str(obj.get("cid") or "") if isinstance(obj, dict) else ""
        if not cid:
            raise StoreUnavailableError("Content store response did not include a CID.", backend=self.name)
        return cid

    def get(self, address: str) -> bytes:
        url = f"{self.gateway_url.rstrip('/')}/{address}"
        try:
            r = self._session().get(url, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise StoreUnavailableError(backend=self.name, error=str(e)) from e
        if r.status_code == 404:
            raise NotFoundError("Blob not found.", address=address)
        if r.status_code >= 400:
            raise StoreUnavailableError(backend=self.name, status=r.status_code)
        return bytes(r.content)
