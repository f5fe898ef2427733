from __future__ import annotations

import hashlib

import pytest
import requests

from medledger.core.circuit_breaker import BreakerConfig, CircuitBreaker
from medledger.core.errors import NotFoundError, StoreUnavailableError
from medledger.core.storage import (
    PLACEHOLDER_PAYLOAD,
    ContentStore,
    DegradedAddress,
    FilesystemContentBackend,
    HttpContentBackend,
    StoredAddress,
)

from .helpers.fakes import FakeClock, MemoryContentBackend


def test_filesystem_backend_round_trip(tmp_path):
    store = ContentStore(FilesystemContentBackend(root_dir=str(tmp_path / "blobs")))
    res = store.put(b"ciphertext bytes")
    assert isinstance(res, StoredAddress)
    assert res.address == "sha256-" + hashlib.sha256(b"ciphertext bytes").hexdigest()
    assert store.get(res.address).data == b"ciphertext bytes"


def test_filesystem_backend_unknown_address(tmp_path):
    backend = FilesystemContentBackend(root_dir=str(tmp_path / "blobs"))
    with pytest.raises(NotFoundError):
        backend.get("sha256-" + "0" * 64)
    with pytest.raises(NotFoundError):
        backend.get("../../etc/passwd")


def test_unreachable_store_returns_degraded_placeholder():
    backend = MemoryContentBackend()
    backend.fail_puts = True
    store = ContentStore(backend)
    res = store.put(b"abc")
    assert isinstance(res, DegradedAddress)
    assert res.durable is False
    assert res.address == "degraded:" + hashlib.sha256(b"abc").hexdigest()

    fetched = store.get(res.address)
    assert fetched.placeholder is True
    assert fetched.data == PLACEHOLDER_PAYLOAD
    assert fetched.data != b"abc"


def test_degraded_mode_disabled_raises():
    backend = MemoryContentBackend()
    backend.fail_puts = True
    store = ContentStore(backend, degraded_mode_enabled=False)
    with pytest.raises(StoreUnavailableError):
        store.put(b"abc")


def test_open_breaker_skips_backend_until_cooldown():
    clock = FakeClock()
    backend = MemoryContentBackend()
    backend.fail_puts = True
    store = ContentStore(backend, breaker=CircuitBreaker(BreakerConfig(failures=2, window_seconds=60, cooldown_seconds=30), clock=clock.time))
    store.put(b"a")
    store.put(b"b")
    assert backend.put_calls == 2

    assert isinstance(store.put(b"c"), DegradedAddress)
    assert backend.put_calls == 2

    backend.fail_puts = False
    clock.advance(30)
    assert isinstance(store.put(b"d"), StoredAddress)
    assert store.status()["breaker"]["state"] == "CLOSED"


class _Resp:
    def __init__(self, status_code=200, payload=None, content=b""):
        self.status_code = status_code
        self._payload = payload
        self.content = content

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _Session:
    def __init__(self, post_resp=None, get_resp=None, raise_on=None):
        self.post_resp = post_resp
        self.get_resp = get_resp
        self.raise_on = raise_on
        self.posted = []
        self.fetched = []

    def post(self, url, data=None, headers=None, timeout=None):
        if self.raise_on is not None:
            raise self.raise_on
        self.posted.append((url, data, headers, timeout))
        return self.post_resp

    def get(self, url, timeout=None):
        if self.raise_on is not None:
            raise self.raise_on
        self.fetched.append(url)
        return self.get_resp


def _http_backend(session, token="tok"):
    return HttpContentBackend(
        upload_url="https://pin.example/upload",
        gateway_url="https://gw.example/ipfs/",
        token=token,
        timeout_seconds=5.0,
        session=session,
    )


def test_http_backend_upload_sends_token_and_name():
    session = _Session(post_resp=_Resp(payload={"cid": "bafy123"}))
    assert _http_backend(session).put(b"blob", name_hint="rec-1.enc") == "bafy123"
    url, data, headers, timeout = session.posted[0]
    assert data == b"blob"
    assert headers["Authorization"] == "Bearer tok"
    assert headers["X-NAME"] == "rec-1.enc"
    assert timeout == 5.0


def test_http_backend_upload_failures_are_unavailable():
    with pytest.raises(StoreUnavailableError):
        _http_backend(_Session(), token=None).put(b"blob")
    with pytest.raises(StoreUnavailableError):
        _http_backend(_Session(post_resp=_Resp(status_code=503))).put(b"blob")
    with pytest.raises(StoreUnavailableError):
        _http_backend(_Session(post_resp=_Resp(payload={}))).put(b"blob")
    with pytest.raises(StoreUnavailableError):
        _http_backend(_Session(raise_on=requests.ConnectionError("refused"))).put(b"blob")


def test_http_backend_fetch_from_gateway():
    session = _Session(get_resp=_Resp(content=b"cipher"))
    assert _http_backend(session).get("bafy123") == b"cipher"
    assert session.fetched == ["https://gw.example/ipfs/bafy123"]
    with pytest.raises(NotFoundError):
        _http_backend(_Session(get_resp=_Resp(status_code=404))).get("bafy404")


def test_http_backend_non_object_json_is_unavailable():
    with pytest.raises(StoreUnavailableError):
        _http_backend(_Session(post_resp=_Resp(payload=["bafy123"]))).put(b"blob")
    with pytest.raises(StoreUnavailableError):
        _http_backend(_Session(post_resp=_Resp(payload="bafy123"))).put(b"blob")


def test_http_backend_maps_any_request_error():
    with pytest.raises(StoreUnavailableError):
        _http_backend(_Session(raise_on=requests.exceptions.TooManyRedirects("loop"))).get("bafy123")
    with pytest.raises(StoreUnavailableError):
        _http_backend(_Session(raise_on=requests.exceptions.InvalidURL("bad"))).put(b"blob")
