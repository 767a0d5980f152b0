"""
Docker Registry v2 client.

Composes naming, the manifest codec, the layer transferer and the image
archiver into whole-image operations:

    push_image:  unpack archive -> push each layer -> build manifest -> PUT manifest
    get_image:   GET manifest -> parse layer list -> fetch each blob -> pack tar

Every call is synchronous and transfers one layer at a time, in order.
Nothing is retried; the first non-success response ends the operation.
Layers already uploaded by a push that later fails are left in the registry.
"""

import logging
from typing import Optional

from dockhand.config import RegistryConfig
from dockhand.modules.auth import RegistryAuth, is_success
from dockhand.modules.errors import (
    ProtocolError,
    RegistryConnectionError,
    RegistryError,
)
from dockhand.modules.finders.manifest import (
    MANIFEST_CONTENT_TYPE,
    Manifest,
    build_manifest,
    extract_content_digest,
    manifest_digest,
    parse_manifest,
)
from dockhand.modules.finders.naming import (
    Digest,
    validate_repository_name,
    validate_tag,
)
from dockhand.modules.formatters import manifest_url, response_headers, short_digest
from dockhand.modules.keepers.archiver import ImageArchiver
from dockhand.modules.keepers.transfer import LayerTransferer, LayerSource

logger = logging.getLogger(__name__)


class RegistryClient:
    """
    Client for one registry, owning its authenticated session.

    Usage:
        with open_registry_connection(config) as client:
            client.push_image("acme/app", "v1", "image.tar")
            client.get_image("acme/app", "v1", "pulled.tar")
    """

    def __init__(self, config: RegistryConfig, auth: Optional[RegistryAuth] = None):
        self.config = config
        self.auth = auth or RegistryAuth(config)
        self.transferer = LayerTransferer(self.auth, spool_dir=config.scratch_dir)
        self.archiver = ImageArchiver(config.scratch_dir)

    def close(self):
        self.auth.invalidate()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def __repr__(self):
        return f"RegistryClient({self.config.base_url})"

    # =========================================================================
    # Health / existence
    # =========================================================================

    def ping(self) -> None:
        """GET /v2/; anything but 2xx means the registry is not usable."""
        resp = self.auth.request("GET", self.auth.url("/v2/"))
        if not is_success(resp):
            raise RegistryConnectionError(
                "ping", "registry health check failed", resp.status_code, resp.reason or "", resp.url or ""
            )

    def image_exists(self, repo_name, tag: str) -> bool:
        """HEAD the manifest. 404 -> False, other failures raise RegistryError."""
        repo_name = validate_repository_name(repo_name)
        validate_tag(tag)
        resp = self.auth.request("HEAD", manifest_url(self.auth.base_url, repo_name, tag))
        if resp.status_code == 404:
            return False
        if not is_success(resp):
            raise RegistryError.from_response("image existence check", resp)
        return True

    def layer_exists(self, repo_name, digest) -> bool:
        return self.transferer.exists(repo_name, digest)

    # =========================================================================
    # Pull side
    # =========================================================================

    def get_manifest(self, repo_name, tag: str) -> Manifest:
        """GET and parse the manifest, annotating it with Docker-Content-Digest."""
        repo_name = validate_repository_name(repo_name)
        validate_tag(tag)
        resp = self.auth.request("GET", manifest_url(self.auth.base_url, repo_name, tag))
        if not is_success(resp):
            raise RegistryError.from_response("manifest fetch", resp)
        manifest = parse_manifest(resp.content, name=str(repo_name), tag=tag)
        manifest.content_digest = extract_content_digest(response_headers(resp))
        logger.debug(f"Manifest {repo_name}:{tag} has {len(manifest.layers)} layers")
        return manifest

    def get_image_info(self, repo_name, tag: str) -> tuple[Optional[str], list[Digest]]:
        """
        Returns:
            (content digest header or None, layer digests in manifest order)
        """
        manifest = self.get_manifest(repo_name, tag)
        return manifest.content_digest, list(manifest.layers)

    def get_image(self, repo_name, tag: str, destination) -> str:
        """
        Pull an image into a tar file whose entries are the layer blobs,
        named by digest, in manifest order.
        """
        repo_name = validate_repository_name(repo_name)
        _, layers = self.get_image_info(repo_name, tag)
        logger.info(f"Pulling {repo_name}:{tag} ({len(layers)} layers) to {destination}")
        return self.archiver.pack(
            destination,
            layers,
            lambda digest: self.transferer.fetch(repo_name, digest),
        )

    # =========================================================================
    # Delete
    # =========================================================================

    def delete_image(self, repo_name, tag: str) -> None:
        """
        Delete every layer blob of the image, then its manifest.

        The first failed deletion aborts; blobs already deleted stay deleted.
        """
        repo_name = validate_repository_name(repo_name)
        manifest = self.get_manifest(repo_name, tag)
        for digest in manifest.layers:
            self.transferer.delete(repo_name, digest)

        resp = self.auth.request("DELETE", manifest_url(self.auth.base_url, repo_name, tag))
        if not is_success(resp):
            raise RegistryError.from_response("manifest delete", resp)
        logger.info(f"Deleted {repo_name}:{tag}")

    # =========================================================================
    # Push side
    # =========================================================================

    def push_layer(self, layer: LayerSource, repo_name) -> Digest:
        return self.transferer.push(repo_name, layer)

    def push_manifest(self, repo_name, tag: str, digests) -> Digest:
        """
        PUT the manifest naming the given layers, in the given order.

        Returns:
            sha256 of the manifest body that was sent

        Raises:
            RegistryError: Non-success status (stage "manifest put"), with body
            ProtocolError: verify_manifest_digest is on and the registry
                reported a different Docker-Content-Digest
        """
        repo_name = validate_repository_name(repo_name)
        validate_tag(tag)
        body = build_manifest(repo_name, tag, digests)
        headers = {"Content-Type": MANIFEST_CONTENT_TYPE}
        headers.update(self.auth.authorization_header())

        url = manifest_url(self.auth.base_url, repo_name, tag)
        logger.debug(f"PUT {url}: {body.decode('utf-8')}")
        resp = self.auth.request("PUT", url, data=body, headers=headers)
        if not is_success(resp):
            logger.error(f"Manifest put for {repo_name}:{tag} failed: {resp.status_code} {resp.reason}")
            raise RegistryError.from_response("manifest put", resp)

        sent = manifest_digest(body)
        if self.config.verify_manifest_digest:
            reported = extract_content_digest(response_headers(resp))
            if reported is not None and reported != str(sent):
                raise ProtocolError(
                    f"Registry reported manifest digest {reported}, expected {sent}"
                )
        logger.info(f"Published manifest {repo_name}:{tag} ({short_digest(sent)})")
        return sent

    def push_image(self, repo_name, tag: str, archive_path) -> Digest:
        """
        Push a legacy image archive as <repo_name>:<tag>.

        The archive's own repository/tag index is validated but only the
        arguments decide where the image is published.

        Returns:
            Digest of the published manifest body
        """
        repo_name = validate_repository_name(repo_name)
        validate_tag(tag)
        with self.archiver.unpack(archive_path) as image:
            logger.info(
                f"Pushing {image.repo_name}:{image.tag} (image {image.image_id[:12]}) "
                f"as {repo_name}:{tag}, {len(image.layers)} layers"
            )
            digests = []
            for idx, layer_path in enumerate(image.layers):
                logger.info(f"[{idx + 1}/{len(image.layers)}] Pushing layer {image.layer_ids[idx][:12]}")
                digests.append(self.transferer.push(repo_name, layer_path))
        return self.push_manifest(repo_name, tag, digests)


def open_registry_connection(config: RegistryConfig, auth: Optional[RegistryAuth] = None) -> RegistryClient:
    """Create a client and ping the registry; the client is closed if the ping fails."""
    logger.info(f"Opening connection to registry {config.base_url}")
    client = RegistryClient(config, auth)
    try:
        client.ping()
    except Exception:
        client.close()
        raise
    logger.info("Registry responded to ping")
    return client
