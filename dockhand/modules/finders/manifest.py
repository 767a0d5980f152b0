"""
Image manifest encoding and decoding.

Only the legacy schema1-style manifest is produced and consumed:

    {"name": "<repo>", "tag": "<tag>", "fsLayers": [{"blobSum": "sha256:<hex>"}, ...]}

Layer order is significant and is kept exactly as given; nothing is sorted.
"""

import json
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

from dockhand.modules.errors import (
    InvalidDigestError,
    MalformedManifestError,
    ProtocolError,
)
from dockhand.modules.finders.naming import Digest, compute_digest, parse_digest
from dockhand.modules.formatters import header_values


CONTENT_DIGEST_HEADER = "Docker-Content-Digest"
MANIFEST_CONTENT_TYPE = "application/json; charset=utf-8"


@dataclass
class Manifest:
    """Ordered layer list of one tagged image."""
    name: str
    tag: str
    layers: tuple[Digest, ...] = field(default_factory=tuple)
    # Server-asserted digest from the response header; opaque, never verified
    content_digest: Optional[str] = None

    @property
    def blob_sums(self) -> list[str]:
        return [str(d) for d in self.layers]

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "tag": self.tag,
            "fsLayers": [{"blobSum": s} for s in self.blob_sums],
        }


def _type_name(value) -> str:
    return "null" if value is None else type(value).__name__


def parse_manifest(
    raw_body: Union[bytes, str],
    name: Optional[str] = None,
    tag: Optional[str] = None,
) -> Manifest:
    """
    Decode a manifest body.

    Args:
        raw_body: Response body (bytes or text)
        name: Repository name to use when the body has no "name"
        tag: Tag to use when the body has no "tag"

    Returns:
        Manifest with layers in body order

    Raises:
        MalformedManifestError: Invalid JSON, missing/non-array fsLayers,
            or a missing/non-string/malformed blobSum on any element
    """
    try:
        doc = json.loads(raw_body)
    except (ValueError, TypeError) as e:
        raise MalformedManifestError("<body>", f"is not valid JSON ({e})") from e
    if not isinstance(doc, dict):
        raise MalformedManifestError("<body>", f"must be a JSON object, got {_type_name(doc)}")

    if "fsLayers" not in doc:
        raise MalformedManifestError("fsLayers", "is missing")
    fs_layers = doc["fsLayers"]
    if not isinstance(fs_layers, list):
        raise MalformedManifestError("fsLayers", f"must be an array, got {_type_name(fs_layers)}")

    layers = []
    for idx, entry in enumerate(fs_layers):
        where = f"fsLayers[{idx}]"
        if not isinstance(entry, dict):
            raise MalformedManifestError(where, f"must be an object, got {_type_name(entry)}")
        if "blobSum" not in entry:
            raise MalformedManifestError(f"{where}.blobSum", "is missing")
        blob_sum = entry["blobSum"]
        if not isinstance(blob_sum, str):
            raise MalformedManifestError(
                f"{where}.blobSum", f"must be a string, got {_type_name(blob_sum)}"
            )
        try:
            layers.append(parse_digest(blob_sum))
        except InvalidDigestError as e:
            raise MalformedManifestError(f"{where}.blobSum", f"must be sha256:<hex>, got '{blob_sum}'") from e

    for key in ("name", "tag"):
        if key in doc and not isinstance(doc[key], str):
            raise MalformedManifestError(key, f"must be a string, got {_type_name(doc[key])}")

    return Manifest(
        name=doc.get("name", name or ""),
        tag=doc.get("tag", tag or ""),
        layers=tuple(layers),
    )


def build_manifest(name, tag: str, digests: Iterable) -> bytes:
    """
    Encode a manifest body for PUT /v2/<name>/manifests/<tag>.

    Digests may be Digest objects or 'sha256:<hex>' strings; order is kept.
    """
    manifest = Manifest(
        name=str(name),
        tag=tag,
        layers=tuple(parse_digest(d) for d in digests),
    )
    return json.dumps(manifest.to_dict()).encode("utf-8")


def extract_content_digest(headers) -> Optional[str]:
    """
    Read Docker-Content-Digest from response headers.

    Returns:
        The header value, or None when the header is absent or empty

    Raises:
        ProtocolError: If the header carries more than one value
    """
    values = header_values(headers, CONTENT_DIGEST_HEADER)
    if not values:
        return None
    if len(values) != 1:
        raise ProtocolError(f"Expected one {CONTENT_DIGEST_HEADER} header value, got {len(values)}")
    return values[0]


def manifest_digest(body: bytes) -> Digest:
    """sha256 of the exact manifest bytes."""
    return compute_digest(body)[0]
