"""
Image stores: one interface, two places an image can live.

    RegistryImageStore - a Docker Registry v2 server, via RegistryClient
    LocalImageStore    - archive files in a local directory, catalogued in SQLite

open_image_store() picks the variant once, from configuration.
"""

import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from typing import Optional

from dockhand.config import RegistryConfig
from dockhand.modules.errors import ImageNotFoundError, LocalIOError
from dockhand.modules.finders.naming import validate_repository_name, validate_tag
from dockhand.modules.keepers import storage
from dockhand.modules.keepers.archiver import ImageArchiver
from dockhand.modules.registry.client import RegistryClient, open_registry_connection

logger = logging.getLogger(__name__)


class ImageStore(ABC):
    """Where images are kept: existence, store, retrieve, delete."""

    scratch_dir: Optional[str] = None

    @abstractmethod
    def image_exists(self, repo_name, tag: str) -> bool:
        ...

    @abstractmethod
    def store_image(self, repo_name, tag: str, archive_path) -> None:
        """Add a legacy image archive to the store as repo_name:tag."""

    @abstractmethod
    def get_image(self, repo_name, tag: str, destination) -> str:
        """Write the image to destination and return its path."""

    @abstractmethod
    def delete_image(self, repo_name, tag: str) -> None:
        ...

    def save_image(self, repo_name, tag: str) -> str:
        """
        Retrieve the image into a new temporary file and return its path.

        The caller owns the file and must remove it.
        """
        fd, path = tempfile.mkstemp(prefix="dockhand-image-", suffix=".tar", dir=self.scratch_dir)
        os.close(fd)
        try:
            return self.get_image(repo_name, tag, path)
        except BaseException:
            os.remove(path)
            raise

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class RegistryImageStore(ImageStore):
    """Images live in a registry; get_image writes the packed per-layer tar."""

    def __init__(self, client: RegistryClient):
        self.client = client
        self.scratch_dir = client.config.scratch_dir

    def image_exists(self, repo_name, tag: str) -> bool:
        return self.client.image_exists(repo_name, tag)

    def store_image(self, repo_name, tag: str, archive_path) -> None:
        self.client.push_image(repo_name, tag, archive_path)

    def get_image(self, repo_name, tag: str, destination) -> str:
        return self.client.get_image(repo_name, tag, destination)

    def delete_image(self, repo_name, tag: str) -> None:
        self.client.delete_image(repo_name, tag)

    def close(self) -> None:
        self.client.close()


class LocalImageStore(ImageStore):
    """
    Images live as archive files under a local directory.

    Layout:
        <root>/catalog.db
        <root>/_images/<repo component>/.../_tags/<tag>.tar

    Components never start with '_', so one repository's directory cannot
    be another's tag directory or the catalog.
    """

    def __init__(self, root: str, archiver: Optional[ImageArchiver] = None):
        self.root = root
        self.archiver = archiver or ImageArchiver()
        self.scratch_dir = self.archiver.scratch_root

    def _archive_path(self, repo_name, tag: str) -> str:
        return os.path.join(self.root, "_images", *repo_name.components, "_tags", f"{tag}.tar")

    def _record(self, repo_name, tag: str) -> Optional[dict]:
        conn = storage.init_database(self.root)
        try:
            return storage.get_image_record(conn, str(repo_name), tag)
        finally:
            conn.close()

    def image_exists(self, repo_name, tag: str) -> bool:
        repo_name = validate_repository_name(repo_name)
        validate_tag(tag)
        record = self._record(repo_name, tag)
        return record is not None and os.path.isfile(record["archive_path"])

    def store_image(self, repo_name, tag: str, archive_path) -> None:
        """Validate the archive the same way a push does, then copy it in."""
        repo_name = validate_repository_name(repo_name)
        validate_tag(tag)
        with self.archiver.unpack(archive_path) as image:
            image_id = image.image_id
            layer_count = len(image.layers)

        target = self._archive_path(repo_name, tag)
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            shutil.copyfile(archive_path, target)
            size = os.path.getsize(target)
        except OSError as e:
            raise LocalIOError(f"Cannot copy archive into local store ({e})", target) from e

        conn = storage.init_database(self.root)
        try:
            storage.save_image_record(conn, str(repo_name), tag, image_id, target, layer_count, size)
        finally:
            conn.close()
        logger.info(f"Stored {repo_name}:{tag} in {self.root} ({layer_count} layers)")

    def get_image(self, repo_name, tag: str, destination) -> str:
        repo_name = validate_repository_name(repo_name)
        validate_tag(tag)
        record = self._record(repo_name, tag)
        if record is None:
            raise ImageNotFoundError(str(repo_name), tag)
        destination = os.fspath(destination)
        try:
            shutil.copyfile(record["archive_path"], destination)
        except FileNotFoundError as e:
            raise ImageNotFoundError(str(repo_name), tag) from e
        except OSError as e:
            raise LocalIOError(f"Cannot copy image out of local store ({e})", destination) from e
        return destination

    def delete_image(self, repo_name, tag: str) -> None:
        repo_name = validate_repository_name(repo_name)
        validate_tag(tag)
        conn = storage.init_database(self.root)
        try:
            record = storage.get_image_record(conn, str(repo_name), tag)
            if record is None:
                raise ImageNotFoundError(str(repo_name), tag)
            try:
                os.remove(record["archive_path"])
            except FileNotFoundError:
                logger.warning(f"Archive for {repo_name}:{tag} already gone: {record['archive_path']}")
            except OSError as e:
                raise LocalIOError(f"Cannot remove archive ({e})", record["archive_path"]) from e
            storage.delete_image_record(conn, str(repo_name), tag)
        finally:
            conn.close()
        logger.info(f"Deleted {repo_name}:{tag} from {self.root}")

    def list_images(self, repo_name=None) -> list[dict]:
        conn = storage.init_database(self.root)
        try:
            return storage.list_image_records(conn, str(repo_name) if repo_name else None)
        finally:
            conn.close()


def open_image_store(config: RegistryConfig) -> ImageStore:
    """Registry-backed when config.host is set, local otherwise."""
    if config.has_registry:
        return RegistryImageStore(open_registry_connection(config))
    return LocalImageStore(config.store_dir, ImageArchiver(config.scratch_dir))
