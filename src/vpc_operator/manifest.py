"""ClusterRequest manifest loading with validation.

SECURITY: File reads enforce a size limit. Input validation is performed at
the boundary so a malformed manifest never reaches the reconciler.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import CLUSTER_REQUEST_KIND, ClusterRequest

logger = logging.getLogger(__name__)


class ManifestLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def load_manifest(path: Path) -> ClusterRequest:
    """Load and validate a ClusterRequest manifest from YAML.

    Args:
        path: Path to a single-document YAML manifest.

    Returns:
        Validated ClusterRequest.

    Raises:
        ManifestLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ManifestLoadError(f"Manifest file must contain a YAML mapping: {path}")

    kind = raw_data.get("kind", CLUSTER_REQUEST_KIND)
    if kind != CLUSTER_REQUEST_KIND:
        raise ManifestLoadError(f"Expected kind {CLUSTER_REQUEST_KIND}, got {kind}: {path}")

    try:
        cluster_request = ClusterRequest.from_manifest(raw_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise ManifestLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded manifest for %s from %s", cluster_request.key, path)
    return cluster_request
