from .naming import (
    RepositoryName,
    Digest,
    validate_repository_name,
    validate_name_part,
    validate_tag,
    construct_image_name,
    parse_digest,
    compute_digest,
    compute_file_digest,
)
from .manifest import (
    Manifest,
    parse_manifest,
    build_manifest,
    extract_content_digest,
    manifest_digest,
    CONTENT_DIGEST_HEADER,
    MANIFEST_CONTENT_TYPE,
)
