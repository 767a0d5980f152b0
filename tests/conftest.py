"""Shared test fixtures for dockhand.

Registry traffic goes through a fake Registry v2 server implemented as a
requests transport adapter, mounted on every RegistryAuth session, so the
real requests stack (headers, bodies, redirects, streaming) is exercised.
"""

from __future__ import annotations

import hashlib
import http.client
import io
import json
import re
import tarfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict
from urllib3._collections import HTTPHeaderDict

from dockhand.config import RegistryConfig
from dockhand.modules.auth import RegistryAuth
from dockhand.modules.registry import RegistryClient

REGISTRY_HOST = "registry.test"
REGISTRY_URL = f"http://{REGISTRY_HOST}"

MANIFEST_PATH = re.compile(r"^/v2/(?P<name>.+)/manifests/(?P<ref>[^/]+)$")
UPLOAD_START_PATH = re.compile(r"^/v2/(?P<name>.+)/blobs/uploads/$")
UPLOAD_PATH = re.compile(r"^/v2/(?P<name>.+)/blobs/uploads/(?P<upload>[^/]+)$")
BLOB_PATH = re.compile(r"^/v2/(?P<name>.+)/blobs/(?P<digest>sha256:[a-f0-9]{64})$")


def sha256_digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Fake registry
# ---------------------------------------------------------------------------


@dataclass
class Call:
    """One request as seen by the fake registry."""

    method: str
    path: str
    query: str
    headers: dict
    body: bytes = b""

    @property
    def params(self) -> dict:
        return {k: v[-1] for k, v in parse_qs(self.query).items()}


class RawBody(io.BytesIO):
    """Response body carrying per-line headers, the way urllib3's response does."""

    def __init__(self, payload: bytes, headers: HTTPHeaderDict):
        super().__init__(payload)
        self.headers = headers


@dataclass
class FakeRegistry(BaseAdapter):
    """In-memory Registry v2 server speaking just enough of the API."""

    blobs: dict = field(default_factory=dict)  # (repo, digest) -> bytes
    manifests: dict = field(default_factory=dict)  # (repo, tag) -> bytes
    uploads: dict = field(default_factory=dict)  # upload id -> bytearray
    calls: list = field(default_factory=list)
    failures: dict = field(default_factory=dict)  # (method, kind) -> (status, body)
    # None: generated relative Location with a query; "": no header;
    # a list: each value sent on its own Location header line
    upload_location: Optional[object] = None

    def __post_init__(self):
        super().__init__()

    # -- test helpers -------------------------------------------------------

    def fail(self, method: str, kind: str, status: int, body: str = "") -> None:
        """Answer every (method, kind) request with status from now on."""
        self.failures[(method, kind)] = (status, body)

    def methods(self, kind_prefix: str = "/v2/") -> list[tuple[str, str]]:
        return [(c.method, c.path) for c in self.calls if c.path.startswith(kind_prefix)]

    def blob(self, repo: str, data: bytes) -> str:
        """Seed a blob; returns its digest."""
        digest = sha256_digest(data)
        self.blobs[(repo, digest)] = data
        return digest

    # -- transport ----------------------------------------------------------

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        parts = urlsplit(request.url)
        body = _read_body(request.body)
        call = Call(request.method, parts.path, parts.query, dict(request.headers), body)
        self.calls.append(call)
        status, payload, headers = self._route(call)
        return self._response(request, status, payload, headers)

    def close(self):
        pass

    def _response(self, request, status: int, payload: bytes, headers):
        raw_headers = HTTPHeaderDict()
        for name, value in (headers.items() if isinstance(headers, dict) else headers):
            raw_headers.add(name, value)
        resp = requests.Response()
        resp.status_code = status
        resp.reason = http.client.responses.get(status, "")
        # requests folds repeated lines into one comma-joined value
        resp.headers = CaseInsensitiveDict(raw_headers)
        resp.raw = RawBody(b"" if request.method == "HEAD" else payload, raw_headers)
        resp.url = request.url
        resp.request = request
        resp.encoding = "utf-8"
        return resp

    def _failure(self, method: str, kind: str):
        if (method, kind) in self.failures:
            status, body = self.failures[(method, kind)]
            return status, body.encode("utf-8"), {}
        return None

    def _route(self, call: Call):
        path, method = call.path, call.method

        if path == "/v2/":
            return self._failure(method, "ping") or (200, b"{}", {"Content-Type": "application/json"})

        m = UPLOAD_START_PATH.match(path)
        if m and method == "POST":
            return self._failure(method, "upload") or self._start_upload(m["name"])

        m = UPLOAD_PATH.match(path)
        if m:
            kind = "upload-patch" if method == "PATCH" else "upload-put"
            return self._failure(method, kind) or self._continue_upload(call, m["name"], m["upload"])

        m = BLOB_PATH.match(path)
        if m:
            return self._failure(method, "blob") or self._blob(method, m["name"], m["digest"])

        m = MANIFEST_PATH.match(path)
        if m:
            return self._failure(method, "manifest") or self._manifest(call, m["name"], m["ref"])

        return 404, _errors("NAME_UNKNOWN", f"no route for {method} {path}"), {}

    def _start_upload(self, repo: str):
        upload_id = uuid.uuid4().hex
        self.uploads[upload_id] = bytearray()
        headers = {"Docker-Upload-UUID": upload_id, "Range": "0-0"}
        if self.upload_location is None:
            headers["Location"] = f"/v2/{repo}/blobs/uploads/{upload_id}?_state=st{upload_id[:8]}"
        elif isinstance(self.upload_location, list):
            return 202, b"", list(headers.items()) + [("Location", v) for v in self.upload_location]
        elif self.upload_location:
            headers["Location"] = self.upload_location.replace("{id}", upload_id)
        return 202, b"", headers

    def _continue_upload(self, call: Call, repo: str, upload_id: str):
        if upload_id not in self.uploads:
            return 404, _errors("BLOB_UPLOAD_UNKNOWN", "upload unknown"), {}
        data = self.uploads[upload_id]

        if call.method == "PATCH":
            data[:] = call.body
            return 202, b"", {"Range": f"0-{len(data) - 1}", "Docker-Upload-UUID": upload_id}

        if call.method == "PUT":
            # A final chunk equal to what PATCH already sent is not appended twice
            if call.body and bytes(data) != call.body:
                data.extend(call.body)
            digest = call.params.get("digest")
            if digest != sha256_digest(bytes(data)):
                return 400, _errors("DIGEST_INVALID", "provided digest did not match uploaded content"), {}
            self.blobs[(repo, digest)] = bytes(data)
            del self.uploads[upload_id]
            return 201, b"", {"Location": f"/v2/{repo}/blobs/{digest}", "Docker-Content-Digest": digest}

        return 405, _errors("UNSUPPORTED", call.method), {}

    def _blob(self, method: str, repo: str, digest: str):
        key = (repo, digest)
        if key not in self.blobs:
            return 404, _errors("BLOB_UNKNOWN", "blob unknown to registry"), {}
        data = self.blobs[key]
        headers = {"Docker-Content-Digest": digest, "Content-Length": str(len(data))}
        if method == "HEAD":
            return 200, b"", headers
        if method == "GET":
            return 200, data, headers
        if method == "DELETE":
            del self.blobs[key]
            return 202, b"", {}
        return 405, _errors("UNSUPPORTED", method), {}

    def _manifest(self, call: Call, repo: str, tag: str):
        key = (repo, tag)
        if call.method == "PUT":
            try:
                doc = json.loads(call.body)
                blob_sums = [layer["blobSum"] for layer in doc["fsLayers"]]
            except (ValueError, KeyError, TypeError):
                return 400, _errors("MANIFEST_INVALID", "manifest invalid"), {}
            for blob_sum in blob_sums:
                if (repo, blob_sum) not in self.blobs:
                    return 400, _errors("MANIFEST_BLOB_UNKNOWN", blob_sum), {}
            self.manifests[key] = call.body
            digest = sha256_digest(call.body)
            return 201, b"", {"Location": f"/v2/{repo}/manifests/{digest}", "Docker-Content-Digest": digest}

        if key not in self.manifests:
            return 404, _errors("MANIFEST_UNKNOWN", "manifest unknown"), {}
        body = self.manifests[key]
        headers = {
            "Content-Type": "application/vnd.docker.distribution.manifest.v1+json",
            "Docker-Content-Digest": sha256_digest(body),
        }
        if call.method == "HEAD":
            return 200, b"", headers
        if call.method == "GET":
            return 200, body, headers
        if call.method == "DELETE":
            del self.manifests[key]
            return 202, b"", {}
        return 405, _errors("UNSUPPORTED", call.method), {}


def _errors(code: str, message: str) -> bytes:
    return json.dumps({"errors": [{"code": code, "message": message}]}).encode("utf-8")


def _read_body(body) -> bytes:
    if body is None:
        return b""
    if isinstance(body, str):
        return body.encode("utf-8")
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    return body.read()


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


def add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mode = 0o644
    tar.addfile(info, io.BytesIO(data))


def add_dir(tar: tarfile.TarFile, name: str) -> None:
    info = tarfile.TarInfo(name=name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    tar.addfile(info)


def write_legacy_archive(path: Path, repositories, layers: list[tuple[str, bytes]]) -> Path:
    """Write a docker-save style archive: repositories + <id>/{VERSION,json,layer.tar}."""
    index = repositories if isinstance(repositories, bytes) else json.dumps(repositories).encode("utf-8")
    with tarfile.open(path, "w") as tar:
        for layer_id, data in layers:
            add_dir(tar, f"{layer_id}/")
            add_bytes(tar, f"{layer_id}/VERSION", b"1.0")
            add_bytes(tar, f"{layer_id}/json", json.dumps({"id": layer_id}).encode("utf-8"))
            add_bytes(tar, f"{layer_id}/layer.tar", data)
        add_bytes(tar, "repositories", index)
    return path


def read_tar_entries(path) -> list[tuple[str, bytes]]:
    with tarfile.open(path) as tar:
        return [(m.name, tar.extractfile(m).read()) for m in tar.getmembers() if m.isfile()]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_registry(monkeypatch) -> FakeRegistry:
    """Provide a FakeRegistry mounted on every RegistryAuth session."""
    registry = FakeRegistry()
    original = RegistryAuth.get_session

    def get_session(self):
        session = original(self)
        session.mount(REGISTRY_URL, registry)
        return session

    monkeypatch.setattr(RegistryAuth, "get_session", get_session)
    return registry


@pytest.fixture
def scratch_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path: Path, scratch_dir: Path) -> RegistryConfig:
    """Provide a config pointing at the fake registry with basic-auth credentials."""
    return RegistryConfig(
        host=REGISTRY_HOST,
        username="alice",
        password="s3cret",
        timeout=5,
        scratch_dir=str(scratch_dir),
        store_dir=str(tmp_path / "store"),
    )


@pytest.fixture
def auth(config: RegistryConfig, fake_registry: FakeRegistry):
    auth = RegistryAuth(config)
    yield auth
    auth.invalidate()


@pytest.fixture
def client(config: RegistryConfig, auth: RegistryAuth) -> RegistryClient:
    return RegistryClient(config, auth)


@pytest.fixture
def two_layer_archive(tmp_path: Path) -> Path:
    """acme/app:v1 whose archive order ('ccc...' then 'aaa...') is not sorted order."""
    return write_legacy_archive(
        tmp_path / "image.tar",
        {"acme/app": {"v1": "f" * 64}},
        [("c" * 64, b"first layer content"), ("a" * 64, b"second layer content")],
    )


@pytest.fixture
def make_archive(tmp_path: Path):
    """Factory: make_archive(repositories, layers, name="image.tar") -> Path."""

    def make(repositories, layers, name="image.tar"):
        return write_legacy_archive(tmp_path / name, repositories, layers)

    return make


@pytest.fixture
def tar_entries():
    """Provide read_tar_entries: [(name, content), ...] of a tar file."""
    return read_tar_entries
