"""
Repository names, tags and content digests.

Repository name rules (Registry v2 API):

    1. A name is broken up into path components. Each component must be at
       least one lowercase alphanumeric character, optionally separated by
       periods, dashes or underscores: [a-z0-9]+(?:[._-][a-z0-9]+)*
    2. Two or more components are separated by a forward slash ("/").
    3. The total length, including slashes, must be less than 256 characters.
"""

import hashlib
import io
import re
from dataclasses import dataclass
from typing import BinaryIO, Union

from dockhand.modules.errors import InvalidDigestError, InvalidNameError


NAME_COMPONENT_PATTERN = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*$")
TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
DIGEST_PATTERN = re.compile(r"^sha256:([a-f0-9]{64})$")

MAX_NAME_LENGTH = 255
DIGEST_ALGORITHM = "sha256"
HASH_CHUNK_SIZE = 65536  # 64KB reads while hashing


# =============================================================================
# Repository Names
# =============================================================================

def validate_name_part(part: str) -> None:
    """
    Check one path component against [a-z0-9]+(?:[._-][a-z0-9]+)*.

    Raises:
        InvalidNameError: If the component is empty or does not match
    """
    if not part:
        raise InvalidNameError(part, "empty path component")
    if not NAME_COMPONENT_PATTERN.match(part):
        raise InvalidNameError(
            part,
            "components must be lowercase alphanumerics separated by '.', '_' or '-'",
        )


@dataclass(frozen=True)
class RepositoryName:
    """A validated repository name such as 'acme/app'."""
    value: str

    def __post_init__(self):
        name = self.value
        if not isinstance(name, str) or not name:
            raise InvalidNameError(str(name), "repository name must have at least one component")
        if len(name) > MAX_NAME_LENGTH:
            raise InvalidNameError(
                name[:32] + "...", f"total length must be less than {MAX_NAME_LENGTH + 1} characters"
            )
        for part in name.split("/"):
            try:
                validate_name_part(part)
            except InvalidNameError as e:
                raise InvalidNameError(name, f"component '{part}': {e.reason}") from None

    @property
    def components(self) -> tuple[str, ...]:
        return tuple(self.value.split("/"))

    def __str__(self):
        return self.value


def validate_repository_name(name) -> RepositoryName:
    """Return a RepositoryName, or raise InvalidNameError."""
    if isinstance(name, RepositoryName):
        return name
    return RepositoryName(name)


def validate_tag(tag: str) -> str:
    """
    Tags are opaque to the client but end up in URL paths, so only
    [A-Za-z0-9_][A-Za-z0-9_.-]{0,127} is accepted.
    """
    if not isinstance(tag, str) or not TAG_PATTERN.match(tag):
        raise InvalidNameError(str(tag), "tag must be 1-128 characters of [A-Za-z0-9_.-]")
    return tag


def construct_image_name(realm: str, repo: str, image: str, version: str) -> tuple[RepositoryName, str]:
    """
    Compose '<realm>/<repo>/<image>' and use version as the tag.

    Examples:
        >>> construct_image_name("realm4", "repo1", "myimage", "1.0")
        (RepositoryName(value='realm4/repo1/myimage'), '1.0')
    """
    name = validate_repository_name(f"{realm}/{repo}/{image}")
    return name, validate_tag(version)


# =============================================================================
# Digests
# =============================================================================

@dataclass(frozen=True)
class Digest:
    """Content digest; str() gives 'sha256:<hex>'."""
    hex: str
    algorithm: str = DIGEST_ALGORITHM

    def __post_init__(self):
        if self.algorithm != DIGEST_ALGORITHM or not re.fullmatch(r"[a-f0-9]{64}", self.hex or ""):
            raise InvalidDigestError(f"{self.algorithm}:{self.hex}")

    @classmethod
    def from_hex(cls, hex_value: str) -> "Digest":
        return cls(hex_value)

    def __str__(self):
        return f"{self.algorithm}:{self.hex}"


def parse_digest(value) -> Digest:
    """Parse 'sha256:<hex>' into a Digest."""
    if isinstance(value, Digest):
        return value
    match = DIGEST_PATTERN.match(value) if isinstance(value, str) else None
    if not match:
        raise InvalidDigestError(value)
    return Digest(match.group(1))


def compute_digest(data: Union[bytes, BinaryIO]) -> tuple[Digest, int]:
    """
    Hash bytes or a readable binary stream.

    Streams are read to EOF in HASH_CHUNK_SIZE pieces and not rewound.

    Returns:
        (Digest, number of bytes hashed)
    """
    stream = io.BytesIO(data) if isinstance(data, (bytes, bytearray)) else data
    sha256 = hashlib.sha256()
    size = 0
    for chunk in iter(lambda: stream.read(HASH_CHUNK_SIZE), b""):
        sha256.update(chunk)
        size += len(chunk)
    return Digest(sha256.hexdigest()), size


def compute_file_digest(path) -> tuple[Digest, int]:
    """Hash a file on disk; see compute_digest."""
    with open(path, "rb") as f:
        return compute_digest(f)
