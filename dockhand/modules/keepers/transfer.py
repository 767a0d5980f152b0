# transfer.py
# Single-layer blob transfer: existence probe, fetch, delete, and the
# three-step chunked upload (initiate -> PATCH -> finalize PUT).
#
# Registry 2 layer push protocol:
#   1. POST /v2/<name>/blobs/uploads/          -> Location header
#   2. PATCH <Location>                         body = whole layer
#        Content-Length: <size>
#        Content-Range: 0-<size - 1>
#        Content-Type: application/octet-stream
#        Authorization: Basic <base64(user:password)>
#   3. PUT <Location>&digest=sha256:<hex>       same body and headers

import hashlib
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional, Union

import requests

from dockhand.modules.auth import RegistryAuth, is_success
from dockhand.modules.errors import (
    LocalIOError,
    ProtocolError,
    RegistryConnectionError,
    RegistryError,
)
from dockhand.modules.finders.naming import (
    Digest,
    compute_digest,
    parse_digest,
    validate_repository_name,
)
from dockhand.modules.formatters import (
    append_query,
    blob_url,
    header_values,
    response_headers,
    human_readable_size,
    resolve_location,
    short_digest,
    upload_url,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_CHUNK_SIZE = 65536  # 64KB chunks when streaming blobs down
SPOOL_MAX_SIZE = 8 * 1024 * 1024  # streams above this spill to disk while pushing

LayerSource = Union[str, os.PathLike, BinaryIO]


@dataclass(frozen=True)
class LayerBlob:
    """Layer content with the digest and length computed from it."""

    digest: Digest
    size: int
    stream: BinaryIO

    @classmethod
    def read(cls, stream: BinaryIO) -> "LayerBlob":
        """Hash a seekable stream from its start, leaving it rewound."""
        try:
            stream.seek(0)
            digest, size = compute_digest(stream)
            stream.seek(0)
        except OSError as e:
            raise LocalIOError(f"Cannot read layer content ({e})") from e
        return cls(digest, size, stream)

    def rewind(self) -> BinaryIO:
        self.stream.seek(0)
        return self.stream


@contextmanager
def _open_layer(source: LayerSource, spool_dir: Optional[str] = None) -> Iterator[LayerBlob]:
    """
    Yield the source as a LayerBlob over a seekable binary file.

    Paths are opened directly. Streams are copied into a spooled temp file
    because the same body is sent twice (PATCH and finalize PUT).
    """
    if isinstance(source, (str, os.PathLike)):
        try:
            f = open(source, "rb")
        except OSError as e:
            raise LocalIOError(f"Cannot open layer file ({e.strerror})", os.fspath(source)) from e
        with f:
            yield LayerBlob.read(f)
        return

    with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE, dir=spool_dir) as spool:
        try:
            shutil.copyfileobj(source, spool, DEFAULT_CHUNK_SIZE)
        except OSError as e:
            raise LocalIOError(f"Cannot spool layer stream ({e})") from e
        yield LayerBlob.read(spool)


class LayerTransferer:
    """
    Moves one layer at a time between the caller and a registry repository.

    Usage:
        transferer = LayerTransferer(auth)
        digest = transferer.push("acme/app", "/tmp/x/layer.tar")
        for chunk in transferer.fetch("acme/app", digest):
            ...
    """

    def __init__(self, auth: RegistryAuth, spool_dir: Optional[str] = None,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.auth = auth
        self.spool_dir = spool_dir
        self.chunk_size = chunk_size

    # -------------------------------------------------------------------------
    # Probe / fetch / delete
    # -------------------------------------------------------------------------

    def exists(self, repo_name, digest) -> bool:
        """
        HEAD the blob.

        Returns:
            True on 2xx, False on 404

        Raises:
            RegistryError: Any other status
        """
        repo_name = validate_repository_name(repo_name)
        digest = parse_digest(digest)
        url = blob_url(self.auth.base_url, repo_name, digest)
        resp = self.auth.request("HEAD", url, allow_redirects=True)
        if resp.status_code == 404:
            return False
        if not is_success(resp):
            logger.error(f"Blob existence check for {short_digest(digest)} failed: {resp.status_code}")
            raise RegistryError.from_response("existence check", resp)
        return True

    def fetch(self, repo_name, digest) -> Iterator[bytes]:
        """
        GET the blob and return an iterator over its content.

        The request is issued immediately so that status errors surface here,
        not on first iteration. The iterator checks the streamed content
        against the digest and raises ProtocolError on mismatch.

        Raises:
            RegistryError: Any non-success status, 404 included
        """
        repo_name = validate_repository_name(repo_name)
        digest = parse_digest(digest)
        url = blob_url(self.auth.base_url, repo_name, digest)
        resp = self.auth.request("GET", url, stream=True)
        if not is_success(resp):
            logger.error(f"Blob fetch for {short_digest(digest)} failed: {resp.status_code}")
            error = RegistryError.from_response("blob fetch", resp)
            resp.close()
            raise error
        return self._iter_blob(resp, digest)

    def _iter_blob(self, resp, digest: Digest) -> Iterator[bytes]:
        sha256 = hashlib.sha256()
        try:
            for chunk in resp.iter_content(self.chunk_size):
                if chunk:
                    sha256.update(chunk)
                    yield chunk
        except requests.RequestException as e:
            raise RegistryConnectionError("blob fetch", str(e)) from e
        finally:
            resp.close()
        if sha256.hexdigest() != digest.hex:
            raise ProtocolError(
                f"Blob content does not match {digest}: got sha256:{sha256.hexdigest()}"
            )

    def delete(self, repo_name, digest) -> None:
        """DELETE the blob; any non-success status raises RegistryError."""
        repo_name = validate_repository_name(repo_name)
        digest = parse_digest(digest)
        url = blob_url(self.auth.base_url, repo_name, digest)
        resp = self.auth.request("DELETE", url)
        if not is_success(resp):
            raise RegistryError.from_response("blob delete", resp)
        logger.info(f"Deleted blob {short_digest(digest)} from {repo_name}")

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    def push(self, repo_name, source: LayerSource) -> Digest:
        """
        Upload one layer unless the repository already has it.

        Args:
            repo_name: Destination repository
            source: Path to the layer file, or a readable binary stream

        Returns:
            Digest computed from the content before any network call

        Raises:
            ProtocolError: Empty content, or a missing/duplicate Location header
            RegistryError: Non-success status at existence check, upload
                initiate, transfer or finalize
            LocalIOError: The source could not be read
        """
        repo_name = validate_repository_name(repo_name)
        with _open_layer(source, self.spool_dir) as blob:
            digest = blob.digest
            logger.info(f"Computed digest {digest} ({human_readable_size(blob.size)})")
            if blob.size == 0:
                raise ProtocolError(f"Refusing to push empty layer content to {repo_name}")

            if self.exists(repo_name, digest):
                logger.info(f"Layer {short_digest(digest)} already present in {repo_name}; skipping upload")
                return digest

            location = self._initiate(repo_name)
            headers = self._upload_headers(blob.size)

            self._send("PATCH", location, blob.rewind(), headers, "transfer")
            self._send("PUT", append_query(location, f"digest={digest}"), blob.rewind(), headers, "finalize")

        logger.info(f"Uploaded layer {short_digest(digest)} to {repo_name}")
        return digest

    def _initiate(self, repo_name) -> str:
        """POST the upload-initiation request and return the session Location."""
        resp = self.auth.request("POST", upload_url(self.auth.base_url, repo_name))
        if not is_success(resp):
            logger.error(f"Upload initiate for {repo_name} failed: {resp.status_code}")
            raise RegistryError.from_response("upload initiate", resp)
        locations = header_values(response_headers(resp), "Location")
        if not locations:
            raise ProtocolError("No Location header in upload initiate response")
        if len(locations) != 1:
            raise ProtocolError(f"Expected one Location header, got {len(locations)}")
        location = resolve_location(self.auth.base_url, locations[0])
        logger.debug(f"Upload session for {repo_name}: {location}")
        return location

    def _upload_headers(self, size: int) -> dict:
        headers = {
            "Content-Length": str(size),
            "Content-Range": f"0-{size - 1}",
            "Content-Type": "application/octet-stream",
        }
        headers.update(self.auth.authorization_header())
        return headers

    def _send(self, method: str, url: str, body: BinaryIO, headers: dict, stage: str) -> None:
        resp = self.auth.request(method, url, data=body, headers=headers)
        if not is_success(resp):
            logger.error(f"Layer {stage} failed: {resp.status_code} {resp.reason}")
            raise RegistryError.from_response(stage, resp)
