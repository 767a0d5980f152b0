from typing import Optional
from urllib.parse import urljoin


def human_readable_size(size):
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} TB"


def short_digest(digest) -> str:
    """sha256:0123456789ab... for display."""
    digest = str(digest)
    return digest[:19] + "..." if len(digest) > 22 else digest


## Image references are <repo>:<tag>; private registries have no "library/" default

def parse_image_ref(image_ref, default_tag="latest"):
    """
    Split 'acme/app:v1' into ('acme/app', 'v1').

    The tag separator is the last ':' after the last '/', so a registry
    host:port prefix is not mistaken for a tag.
    """
    slash = image_ref.rfind("/")
    colon = image_ref.rfind(":")
    if colon > slash:
        repo, tag = image_ref[:colon], image_ref[colon + 1:]
    else:
        repo, tag = image_ref, default_tag
    return repo, tag


## URL builders for the Registry v2 API

def registry_base_url(base_url, repo_name):
    return f"{base_url.rstrip('/')}/v2/{repo_name}"


def manifest_url(base_url, repo_name, tag):
    return f"{registry_base_url(base_url, repo_name)}/manifests/{tag}"


def blob_url(base_url, repo_name, digest):
    return f"{registry_base_url(base_url, repo_name)}/blobs/{digest}"


def upload_url(base_url, repo_name):
    return f"{registry_base_url(base_url, repo_name)}/blobs/uploads/"


def resolve_location(base_url: str, location: str) -> str:
    """Registries may hand back a path-only Location; make it absolute."""
    return urljoin(base_url.rstrip("/") + "/", location)


def append_query(url: str, param: str) -> str:
    """Append 'name=value' using '&' if the URL already has a query, else '?'."""
    return f"{url}{'&' if '?' in url else '?'}{param}"


## Response headers

def response_headers(resp):
    """
    The headers of a response, one entry per header line where possible.

    requests folds repeated headers into one comma-joined string; the urllib3
    headers underneath keep each line apart and answer getlist().
    """
    raw_headers = getattr(resp.raw, "headers", None)
    if hasattr(raw_headers, "getlist"):
        return raw_headers
    return resp.headers


def header_values(headers, name: str) -> list[str]:
    """
    Return every value of a header, one per header line.

    A plain mapping holds at most one value per name. Values are never split
    on ',' because a URL may contain one. Missing or blank headers give an
    empty list.
    """
    if headers is None:
        return []
    if hasattr(headers, "getlist"):
        values = headers.getlist(name)
    else:
        value: Optional[str] = headers.get(name)
        values = [value] if value is not None else []
    return [v.strip() for v in values if v.strip()]
