"""
Error taxonomy for dockhand.

Every failure surfaced by the naming, manifest, transfer, archive and client
layers derives from DockhandError so callers can catch one base class.
A 404 on an existence probe is not an error; those probes return False.
"""

from typing import Optional


class DockhandError(Exception):
    """Base exception for all dockhand errors."""


class InvalidNameError(DockhandError, ValueError):
    """Repository name, name component or tag does not follow the registry rules."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid name '{name}': {reason}")


class InvalidDigestError(DockhandError, ValueError):
    """Digest is not of the form sha256:<64 lowercase hex chars>."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid digest '{value}': expected sha256:<64 hex characters>")


class RegistryError(DockhandError):
    """
    Registry answered with a non-success status.

    Attributes:
        stage: Which step failed (e.g. "existence check", "finalize").
        status_code: HTTP status code, or None when no response was received.
        reason: HTTP reason phrase.
        body: Response body text, when the server sent one.
    """

    def __init__(
        self,
        stage: str,
        status_code: Optional[int] = None,
        reason: str = "",
        body: str = "",
        url: str = "",
    ):
        self.stage = stage
        self.status_code = status_code
        self.reason = reason
        self.body = body
        self.url = url
        super().__init__(self._format())

    def _format(self) -> str:
        msg = f"Registry error during {self.stage}"
        if self.status_code is not None:
            msg += f": {self.status_code} {self.reason}".rstrip()
        if self.url:
            msg += f" ({self.url})"
        if self.body:
            msg += f"; response body: {self.body.strip()}"
        return msg

    @classmethod
    def from_response(cls, stage: str, resp) -> "RegistryError":
        """Build from a requests.Response, capturing its body."""
        try:
            body = resp.text
        except RuntimeError:  # streamed body already consumed
            body = ""
        return cls(stage, resp.status_code, resp.reason or "", body, resp.url or "")


class RegistryConnectionError(RegistryError):
    """Registry unreachable, or the /v2/ health check failed."""

    def __init__(self, stage: str, detail: str = "", status_code: Optional[int] = None,
                 reason: str = "", url: str = ""):
        self.detail = detail
        super().__init__(stage, status_code, reason, "", url)

    def _format(self) -> str:
        msg = super()._format().replace("Registry error", "Cannot reach registry", 1)
        if self.detail:
            msg += f": {self.detail}"
        return msg


class MalformedManifestError(DockhandError):
    """Manifest body is not valid JSON or is missing/mistyping a field."""

    def __init__(self, field: str, detail: str):
        self.field = field
        self.detail = detail
        super().__init__(f"Malformed manifest: field '{field}' {detail}")


class MalformedArchiveError(DockhandError):
    """Local image archive has an unexpected layout."""


class MalformedArchiveIndexError(MalformedArchiveError):
    """The archive's 'repositories' index is missing, invalid, or has the wrong cardinality."""


class ProtocolError(DockhandError):
    """A response or file violated an expectation of the transfer protocol."""


class LocalIOError(DockhandError):
    """Filesystem failure while reading or writing archives and staging files."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(f"{message}: {path}" if path else message)


class ImageNotFoundError(DockhandError, LookupError):
    """Image is not present in the store it was looked up in."""

    def __init__(self, repo_name: str, tag: str):
        self.repo_name = repo_name
        self.tag = tag
        super().__init__(f"Image {repo_name}:{tag} not found")
