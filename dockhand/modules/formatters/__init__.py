from .formatters import (
    human_readable_size,
    short_digest,
    parse_image_ref,
    registry_base_url,
    manifest_url,
    blob_url,
    upload_url,
    resolve_location,
    append_query,
    header_values,
    response_headers,
)
