"""
Registry session and credentials.

RegistryAuth owns the single requests.Session used to talk to one registry:
- Basic authentication taken from an explicit RegistryConfig
- Per-request timeout and TLS verification from the same config
- Transport failures surfaced as RegistryConnectionError
- invalidate() to drop pooled connections
"""

import base64
import logging
from typing import Optional

import requests

from dockhand.config import RegistryConfig
from dockhand.modules.errors import RegistryConnectionError

logger = logging.getLogger(__name__)


def is_success(resp: requests.Response) -> bool:
    """2xx only; redirects that were not followed count as failures."""
    return 200 <= resp.status_code < 300


def basic_auth_value(username: str, password: str) -> str:
    """Authorization header value per RFC 2617 section 2."""
    encoded = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {encoded}"


class RegistryAuth:
    """
    Authenticated access to one registry.

    Usage:
        auth = RegistryAuth(config)
        resp = auth.request("GET", auth.url("/v2/"))
        # ... do work ...
        auth.invalidate()  # cleanup when done
    """

    def __init__(self, config: RegistryConfig):
        """
        Initialize auth for one registry.

        Args:
            config: Registry host, credentials and timeout
        """
        self.config = config
        self._session: Optional[requests.Session] = None

    @property
    def base_url(self) -> str:
        return self.config.base_url

    def url(self, path: str) -> str:
        """Absolute URL for a registry path such as '/v2/'."""
        return self.base_url + "/" + path.lstrip("/")

    def authorization_header(self) -> dict:
        """Authorization header built from the stored credentials, or {} when anonymous."""
        creds = self.config.credentials
        if not creds:
            return {}
        return {"Authorization": basic_auth_value(*creds)}

    def get_session(self) -> requests.Session:
        """
        Return the shared session.

        Created on first use and reused until invalidate().
        Credentials are injected into the Authorization header.
        """
        if not self._session:
            self._session = requests.Session()
            self._session.verify = self.config.verify_tls
            self._session.headers.update(self.authorization_header())
        return self._session

    def request(
        self,
        method: str,
        url: str,
        **kwargs
    ) -> requests.Response:
        """
        Make an HTTP request on the shared session.

        Non-success statuses are returned to the caller untouched; only
        transport failures (DNS, refused connection, timeout) raise.

        Args:
            method: HTTP method ("GET", "HEAD", "PATCH", etc.)
            url: Full URL to request
            **kwargs: Passed to requests (e.g., stream=True, data=f, headers={})

        Returns:
            requests.Response object

        Raises:
            RegistryConnectionError: If no response could be obtained
        """
        kwargs.setdefault("timeout", self.config.timeout)
        session = self.get_session()
        logger.debug(f"{method} {url}")
        try:
            resp = session.request(method, url, **kwargs)
        except requests.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise RegistryConnectionError(f"{method} {url}", str(e)) from e
        logger.debug(f"{method} {url} -> {resp.status_code}")
        return resp

    def invalidate(self):
        """
        Close the session and drop pooled connections.

        The next request opens a fresh session with the same credentials.
        """
        if self._session:
            self._session.close()
        self._session = None
