"""Workspace manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import KIND, Workspace

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def read_yaml_mapping(path: Path, max_size: int) -> dict[str, Any]:
    """Read a YAML file that must contain a mapping.

    Args:
        path: File to read.
        max_size: Maximum accepted file size in bytes.

    Returns:
        The parsed mapping.

    Raises:
        SpecLoadError: If the file is missing, too large, unreadable or not a mapping.
    """
    if not path.exists():
        raise SpecLoadError(f"File not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat file {path}: {e}") from e

    if file_size > max_size:
        raise SpecLoadError(f"File exceeds maximum size of {max_size} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"File must contain a YAML mapping: {path}")

    return raw_data


def parse_workspace(raw_data: dict[str, Any], origin: str = "<manifest>") -> Workspace:
    """Validate a manifest mapping into a Workspace.

    Raises:
        SpecLoadError: If validation fails.
    """
    try:
        return Workspace.model_validate(raw_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {origin}:\n{error_list}") from e


def load_workspace(path: Path) -> Workspace:
    """Load and validate a single Workspace manifest.

    Args:
        path: Path to the YAML manifest.

    Returns:
        Validated Workspace.

    Raises:
        SpecLoadError: If the manifest cannot be loaded or fails validation.
    """
    raw_data = read_yaml_mapping(path, MAX_MANIFEST_FILE_SIZE_BYTES)
    workspace = parse_workspace(raw_data, str(path))
    logger.debug("Loaded workspace '%s' from %s", workspace.metadata.name, path)
    return workspace


def load_workspaces(manifests_dir: Path) -> tuple[list[Workspace], dict[Path, SpecLoadError]]:
    """Load every Workspace manifest in a directory.

    Files whose kind is not Workspace are skipped. A broken manifest does not
    prevent the others from loading; its error is returned alongside.

    Returns:
        Tuple of (workspaces sorted by name, errors keyed by file).
    """
    workspaces: list[Workspace] = []
    errors: dict[Path, SpecLoadError] = {}

    if not manifests_dir.is_dir():
        raise SpecLoadError(f"Manifests directory does not exist: {manifests_dir}")

    for path in sorted(manifests_dir.iterdir()):
        if path.suffix not in MANIFEST_SUFFIXES or not path.is_file():
            continue
        try:
            raw_data = read_yaml_mapping(path, MAX_MANIFEST_FILE_SIZE_BYTES)
            if raw_data.get("kind") != KIND:
                logger.debug("Skipping non-workspace manifest %s", path)
                continue
            workspaces.append(parse_workspace(raw_data, str(path)))
        except SpecLoadError as e:
            logger.error("Failed to load manifest", extra={"path": str(path), "error": str(e)})
            errors[path] = e

    seen: set[str] = set()
    unique: list[Workspace] = []
    for workspace in sorted(workspaces, key=lambda w: w.metadata.name):
        if workspace.metadata.name in seen:
            logger.error(
                "Duplicate workspace name, ignoring later manifest",
                extra={"workspace": workspace.metadata.name},
            )
            continue
        seen.add(workspace.metadata.name)
        unique.append(workspace)

    return unique, errors
