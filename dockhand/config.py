"""
Configuration for dockhand.

Values come from environment variables with sensible defaults and are carried
in an explicit RegistryConfig passed to every client and store constructor.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Optional


def _log_level(value: str) -> str:
    """logging only knows upper-case level names."""
    return value.strip().upper() or "INFO"


LOG_LEVEL = _log_level(os.getenv("LOG_LEVEL", "INFO"))

# Registry connection
REGISTRY_HOST = os.getenv("DOCKHAND_REGISTRY_HOST", "")
REGISTRY_PORT = int(os.getenv("DOCKHAND_REGISTRY_PORT", "0"))
REGISTRY_SCHEME = os.getenv("DOCKHAND_REGISTRY_SCHEME", "http")
REGISTRY_USER = os.getenv("DOCKHAND_REGISTRY_USER", "")
REGISTRY_PASSWORD = os.getenv("DOCKHAND_REGISTRY_PASSWORD", "")

# Transfers
DEFAULT_TIMEOUT = float(os.getenv("DOCKHAND_TIMEOUT", "300"))  # seconds
DEFAULT_SCRATCH_DIR = os.getenv("DOCKHAND_SCRATCH_DIR") or None
DEFAULT_STORE_DIR = os.getenv("DOCKHAND_STORE_DIR", "data/images")


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RegistryConfig:
    """
    Connection and transfer settings for one registry.

    Attributes:
        host: Registry hostname. Empty means no registry (local store only).
        port: TCP port, 0 to use the scheme default.
        scheme: "http" or "https".
        username: Basic-auth user id.
        password: Basic-auth password.
        timeout: Per-request timeout in seconds handed to requests.
        scratch_dir: Parent for temporary staging directories (None = system tmp).
        store_dir: Root directory of the local image store.
        verify_manifest_digest: Compare the registry's Docker-Content-Digest
            against the pushed manifest body.
        verify_tls: Passed to requests as ``verify``.
    """
    host: str = ""
    port: int = 0
    scheme: str = "http"
    username: str = ""
    password: str = field(default="", repr=False)
    timeout: float = DEFAULT_TIMEOUT
    scratch_dir: Optional[str] = None
    store_dir: str = DEFAULT_STORE_DIR
    verify_manifest_digest: bool = False
    verify_tls: bool = True

    @classmethod
    def from_env(cls, **overrides) -> "RegistryConfig":
        """Build a config from DOCKHAND_* environment variables, then apply overrides."""
        cfg = cls(
            host=REGISTRY_HOST,
            port=REGISTRY_PORT,
            scheme=REGISTRY_SCHEME,
            username=REGISTRY_USER,
            password=REGISTRY_PASSWORD,
            timeout=DEFAULT_TIMEOUT,
            scratch_dir=DEFAULT_SCRATCH_DIR,
            store_dir=DEFAULT_STORE_DIR,
            verify_manifest_digest=_env_flag("DOCKHAND_VERIFY_MANIFEST_DIGEST", False),
            verify_tls=_env_flag("DOCKHAND_VERIFY_TLS", True),
        )
        # Ignore unset CLI options so the environment still wins for them
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(cfg, **overrides) if overrides else cfg

    @property
    def base_url(self) -> str:
        """scheme://host[:port] with no trailing slash."""
        url = f"{self.scheme}://{self.host}"
        if self.port:
            url += f":{self.port}"
        return url

    @property
    def has_registry(self) -> bool:
        return bool(self.host)

    @property
    def credentials(self) -> Optional[tuple[str, str]]:
        if not self.username:
            return None
        return (self.username, self.password)

    def __repr__(self):
        """String representation for logging; never shows the password."""
        return (
            f"RegistryConfig(base_url={self.base_url}, "
            f"username={self.username or '-'}, "
            f"password={'***' if self.password else '-'}, "
            f"timeout={self.timeout}, "
            f"store_dir={self.store_dir})"
        )
