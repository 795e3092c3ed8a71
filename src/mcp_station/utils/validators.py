"""
Validation utilities for MCP Station.

Provides validation and normalization helpers for package identifiers,
archive paths, extraction targets and configuration keys.
"""

import re
import zipfile
from pathlib import Path

from mcp_station.core.exceptions import ValidationError
from mcp_station.utils.logging import get_logger

logger = get_logger(__name__)

# Substrings that mark a configuration key as a secret.
CREDENTIAL_KEY_MARKERS = ("api_key", "apikey", "token", "credential", "password", "secret")

_PACKAGE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


def slugify_package_name(name: str) -> str:
    """
    Derive a package id from a display name.

    Every character outside ``[A-Za-z0-9_-]`` becomes ``-`` and the
    result is lower-cased, so ``@scope/My Server`` becomes ``-scope-my-server``.

    Args:
        name: Package display name

    Returns:
        Slugified id

    Raises:
        ValidationError: If the name is empty
    """
    if not name or not name.strip():
        raise ValidationError("Package name cannot be empty")
    return re.sub(r"[^a-zA-Z0-9_-]", "-", name).lower()


def validate_package_id(package_id: str) -> bool:
    """
    Validate a package id.

    Ids become directory names and registry store path segments, so they
    may not contain dots, slashes or whitespace.

    Args:
        package_id: Package id to validate

    Returns:
        True if valid

    Raises:
        ValidationError: If the id is invalid
    """
    if not package_id or not package_id.strip():
        raise ValidationError("Package id cannot be empty")

    if len(package_id) > 100:
        raise ValidationError("Package id too long (max 100 characters)")

    if package_id in (".", ".."):
        raise ValidationError(f"'{package_id}' is not a valid package id")

    # Slugified scoped names start with '-', allow that too
    if not _PACKAGE_ID_PATTERN.match(package_id.lstrip("-")):
        raise ValidationError(
            f"Invalid package id '{package_id}'. Ids can only contain letters, "
            "numbers, hyphens and underscores"
        )

    return True


def is_credential_key(key: str) -> bool:
    """Return True if a configuration key looks like it holds a secret."""
    lowered = key.lower()
    return any(marker in lowered for marker in CREDENTIAL_KEY_MARKERS)


def validate_archive_path(archive_path: Path) -> bool:
    """
    Validate a package archive before import.

    Args:
        archive_path: Path to the zip archive

    Returns:
        True if valid

    Raises:
        ValidationError: If the archive is missing or not a zip file
    """
    if not archive_path.exists():
        raise ValidationError(f"Archive not found: {archive_path}")

    if not archive_path.is_file():
        raise ValidationError(f"Archive is not a file: {archive_path}")

    if not zipfile.is_zipfile(archive_path):
        raise ValidationError(f"Not a zip archive: {archive_path}")

    return True


def safe_extract_path(root: Path, member_name: str) -> Path:
    """
    Resolve an archive member inside an extraction root.

    Args:
        root: Extraction directory
        member_name: Name of the member inside the archive

    Returns:
        Resolved destination path

    Raises:
        ValidationError: If the member would land outside ``root``
    """
    resolved_root = root.resolve()
    destination = (resolved_root / member_name).resolve()
    if destination != resolved_root and resolved_root not in destination.parents:
        raise ValidationError(f"Archive member escapes extraction directory: {member_name}")
    return destination
