# archiver.py
# Conversion between the legacy local image archive and per-layer blobs.
#
# Legacy archive layout (docker save, v1 image format):
#
#   repositories            {"<repo>": {"<tag>": "<image-id>"}}
#   <layer-id>/layer.tar    one payload per layer
#   <layer-id>/json, VERSION, ...   ignored
#
# Packed (pulled) archives hold one entry per layer, named by its digest,
# in manifest order.

import json
import logging
import os
import tarfile
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional

from dockhand.modules.errors import (
    LocalIOError,
    MalformedArchiveError,
    MalformedArchiveIndexError,
    ProtocolError,
)
from dockhand.modules.finders.naming import Digest, parse_digest
from dockhand.modules.formatters import human_readable_size, short_digest

logger = logging.getLogger(__name__)


INDEX_NAME = "repositories"
LAYER_PAYLOAD = "layer.tar"
COPY_CHUNK_SIZE = 65536

BlobFetcher = Callable[[Digest], Iterable[bytes]]


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class ArchiveIndex:
    """The single repository -> tag -> image id mapping of a legacy archive."""
    repo_name: str
    tag: str
    image_id: str

    @classmethod
    def from_json(cls, raw: bytes) -> "ArchiveIndex":
        """
        Parse the 'repositories' file.

        Exactly one repository with exactly one tag is accepted; archives
        describing several repositories or tags are rejected.

        Raises:
            MalformedArchiveIndexError: Bad JSON, wrong types, or wrong cardinality
        """
        try:
            repositories = json.loads(raw)
        except ValueError as e:
            raise MalformedArchiveIndexError(f"repositories file is not valid JSON: {e}") from e

        if not isinstance(repositories, dict):
            raise MalformedArchiveIndexError("repositories file must hold a JSON object")
        if len(repositories) == 0:
            raise MalformedArchiveIndexError("No entries found in repository map for image")
        if len(repositories) > 1:
            raise MalformedArchiveIndexError(
                f"More than one entry found in repository map for image: {sorted(repositories)}"
            )

        repo_name, tags = next(iter(repositories.items()))
        if not isinstance(tags, dict):
            raise MalformedArchiveIndexError(f"Tag map for repository '{repo_name}' must be a JSON object")
        if len(tags) == 0:
            raise MalformedArchiveIndexError(f"No entries found in tag map for repo '{repo_name}'")
        if len(tags) > 1:
            raise MalformedArchiveIndexError(
                f"More than one entry found in tag map for repo '{repo_name}': {sorted(tags)}"
            )

        tag, image_id = next(iter(tags.items()))
        if not isinstance(image_id, str):
            raise MalformedArchiveIndexError(f"Image id for {repo_name}:{tag} is not a string")
        return cls(repo_name=repo_name, tag=tag, image_id=image_id)


@dataclass
class UnpackedImage:
    """Staged contents of a local archive; valid only inside ImageArchiver.unpack()."""
    scratch_dir: str
    repo_name: str
    tag: str
    image_id: str
    layer_ids: list[str] = field(default_factory=list)

    @property
    def layers(self) -> list[str]:
        """Paths of the per-layer layer.tar files, in archive order."""
        return [os.path.join(self.scratch_dir, lid, LAYER_PAYLOAD) for lid in self.layer_ids]


def _member_path(name: str) -> str:
    """Normalise a tar member name and refuse anything that escapes the scratch dir."""
    while name.startswith("./"):
        name = name[2:]
    if name.startswith("/") or ".." in name.split("/"):
        raise MalformedArchiveError(f"Unsafe path in image archive: {name}")
    return name


# =============================================================================
# Image Archiver
# =============================================================================

class ImageArchiver:
    """
    Unpacks legacy image archives into layers and packs fetched blobs back
    into a tar file. All staging happens under private temporary
    directories that are removed on every exit path.
    """

    def __init__(self, scratch_root: Optional[str] = None):
        self.scratch_root = scratch_root
        if scratch_root:
            os.makedirs(scratch_root, exist_ok=True)

    # -------------------------------------------------------------------------
    # Unpack
    # -------------------------------------------------------------------------

    @contextmanager
    def unpack(self, archive_path) -> Iterator[UnpackedImage]:
        """
        Expand a legacy archive into a scratch directory.

        Usage:
            with archiver.unpack("image.tar") as image:
                for path in image.layers:
                    ...

        Raises:
            MalformedArchiveIndexError: repositories missing or not exactly one repo/tag
            MalformedArchiveError: Unsafe member names or a layer dir without layer.tar
            ProtocolError: An extracted entry was empty
            LocalIOError: The archive or scratch files could not be read/written
        """
        with tempfile.TemporaryDirectory(prefix="dockhand-unpack-", dir=self.scratch_root) as scratch:
            layer_order = self._expand(archive_path, scratch)
            index = self._read_index(scratch)
            layer_ids = self._list_layers(scratch, layer_order)
            logger.info(
                f"Unpacked {archive_path}: {index.repo_name}:{index.tag} "
                f"({len(layer_ids)} layers)"
            )
            yield UnpackedImage(
                scratch_dir=scratch,
                repo_name=index.repo_name,
                tag=index.tag,
                image_id=index.image_id,
                layer_ids=layer_ids,
            )

    def _expand(self, archive_path, scratch: str) -> list[str]:
        """Write index and layer.tar entries under scratch; return layer ids in stream order."""
        layer_order: list[str] = []
        try:
            with tarfile.open(archive_path, "r|*") as tar:
                for member in tar:
                    name = _member_path(member.name.rstrip("/") if member.isdir() else member.name)
                    if not name:
                        continue
                    target = os.path.join(scratch, name)

                    if member.isdir():
                        os.makedirs(target, exist_ok=True)
                        continue
                    if name != INDEX_NAME and not name.endswith("/" + LAYER_PAYLOAD):
                        continue
                    if not member.isfile():
                        raise MalformedArchiveError(f"Archive entry {name} is not a regular file")

                    os.makedirs(os.path.dirname(target) or scratch, exist_ok=True)
                    source = tar.extractfile(member)
                    written = 0
                    with open(target, "wb") as out:
                        for chunk in iter(lambda: source.read(COPY_CHUNK_SIZE), b""):
                            out.write(chunk)
                            written += len(chunk)
                    if written == 0:
                        raise ProtocolError(f"No data written to {target}")
                    logger.debug(f"Extracted {name} ({human_readable_size(written)})")

                    if name != INDEX_NAME:
                        layer_id = name.split("/", 1)[0]
                        if layer_id not in layer_order:
                            layer_order.append(layer_id)
        except (OSError, tarfile.TarError) as e:
            raise LocalIOError(f"Cannot expand image archive ({e})", os.fspath(archive_path)) from e
        return layer_order

    def _read_index(self, scratch: str) -> ArchiveIndex:
        path = os.path.join(scratch, INDEX_NAME)
        if not os.path.isfile(path):
            raise MalformedArchiveIndexError("No 'repositories' entry found in image archive")
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except OSError as e:
            raise LocalIOError(f"Cannot read archive index ({e.strerror})", path) from e
        return ArchiveIndex.from_json(raw)

    def _list_layers(self, scratch: str, layer_order: list[str]) -> list[str]:
        """
        Every directory in scratch is a layer and must hold layer.tar.
        Order follows the archive stream.
        """
        for entry in sorted(os.listdir(scratch)):
            if entry == INDEX_NAME:
                continue
            if entry not in layer_order or not os.path.isfile(os.path.join(scratch, entry, LAYER_PAYLOAD)):
                raise MalformedArchiveError(f"Layer directory '{entry}' has no {LAYER_PAYLOAD}")
        return list(layer_order)

    # -------------------------------------------------------------------------
    # Pack
    # -------------------------------------------------------------------------

    def pack(self, destination, digests: Iterable, fetch: BlobFetcher) -> str:
        """
        Fetch each blob in manifest order and append it to a new tar file.

        Args:
            destination: Output tar path (created or truncated)
            digests: Layer digests in manifest order
            fetch: Returns an iterable of byte chunks for a digest

        Returns:
            The destination path

        Raises:
            ProtocolError: A fetched blob was empty
            LocalIOError: Filesystem or tar failure

        A failure part-way through leaves the partially written destination
        file in place.
        """
        digests = [parse_digest(d) for d in digests]
        destination = os.fspath(destination)
        with tempfile.TemporaryDirectory(prefix="dockhand-pack-", dir=self.scratch_root) as staging:
            try:
                tar = tarfile.open(destination, "w")
            except (OSError, tarfile.TarError) as e:
                raise LocalIOError(f"Cannot create image file ({e})", destination) from e

            with tar:
                for idx, digest in enumerate(digests):
                    layer_path = os.path.join(staging, digest.hex)
                    size = self._stage_blob(layer_path, digest, fetch)
                    self._append(tar, layer_path, str(digest), size)
                    logger.info(
                        f"[{idx + 1}/{len(digests)}] Packed {short_digest(digest)} "
                        f"({human_readable_size(size)})"
                    )
                    os.remove(layer_path)
        return destination

    def _stage_blob(self, layer_path: str, digest: Digest, fetch: BlobFetcher) -> int:
        try:
            out = open(layer_path, "wb")
        except OSError as e:
            raise LocalIOError(f"Cannot write layer file ({e})", layer_path) from e
        with out:
            chunks = fetch(digest)
            try:
                for chunk in chunks:
                    out.write(chunk)
            except OSError as e:
                raise LocalIOError(f"Cannot write layer file ({e})", layer_path) from e
            finally:
                # release the response even if iteration stopped early
                close = getattr(chunks, "close", None)
                if close is not None:
                    close()
        size = os.path.getsize(layer_path)
        if size == 0:
            raise ProtocolError(f"Layer file that was written, '{layer_path}', has zero size")
        return size

    def _append(self, tar: tarfile.TarFile, layer_path: str, arcname: str, size: int) -> None:
        info = tarfile.TarInfo(name=arcname)
        info.size = size
        info.mode = 0o600
        info.mtime = int(time.time())
        try:
            with open(layer_path, "rb") as f:
                tar.addfile(info, f)
        except (OSError, tarfile.TarError) as e:
            raise LocalIOError(f"Cannot write layer to tar archive ({e})", layer_path) from e

