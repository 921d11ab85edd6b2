"""On-disk workspace directories.

One directory per external name holds the module files, the provider cache,
the opaque state blob owned by terraform, and the operator's own markers:

    <workspaces_dir>/<external-name>/
        main.tf | fetched module files
        .terraform/                     provider/plugin cache (terraform-owned)
        terraform.tfstate               opaque, never parsed here
        .tfoperator.lock                lock artifact (see locking.py)
        .tfoperator-owner               uid of the owning resource
        .tfoperator-source              last fetched remote reference and file list
        .tfoperator.tfvars.json         generated variable file

The directory is not durable storage. Losing it without a remote state backend
loses the ability to manage the infrastructure it created.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any

from .errors import OwnershipConflict, ResolutionError

logger = logging.getLogger(__name__)

LOCK_FILE = ".tfoperator.lock"
OWNER_FILE = ".tfoperator-owner"
SOURCE_FILE = ".tfoperator-source"
VARS_FILE = ".tfoperator.tfvars.json"
MAIN_FILE = "main.tf"

# Files and directories the operator or terraform own; never treated as module files
RESERVED_NAMES = frozenset(
    {LOCK_FILE, OWNER_FILE, SOURCE_FILE, VARS_FILE, ".terraform", ".terraform.lock.hcl"}
)
STATE_FILE_PATTERN = re.compile(r"^terraform\.tfstate(\.backup)?$|^terraform\.tfstate\.d$")

VALID_EXTERNAL_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,252}$"


def is_reserved(name: str) -> bool:
    """Return True if a top-level entry must survive module re-materialization."""
    return name in RESERVED_NAMES or bool(STATE_FILE_PATTERN.match(name))


class WorkspaceDirectory:
    """Paths and markers of a single workspace directory."""

    def __init__(self, root: Path, external_name: str) -> None:
        if not re.match(VALID_EXTERNAL_NAME_PATTERN, external_name) or external_name in (
            ".",
            "..",
        ):
            raise ResolutionError(f"Invalid external name for a workspace directory: {external_name!r}")
        self._root = root
        self._external_name = external_name

    @property
    def external_name(self) -> str:
        return self._external_name

    @property
    def path(self) -> Path:
        return self._root / self._external_name

    @property
    def lock_path(self) -> Path:
        return self.path / LOCK_FILE

    @property
    def owner_path(self) -> Path:
        return self.path / OWNER_FILE

    @property
    def source_path(self) -> Path:
        return self.path / SOURCE_FILE

    @property
    def vars_path(self) -> Path:
        return self.path / VARS_FILE

    @property
    def main_path(self) -> Path:
        return self.path / MAIN_FILE

    def exists(self) -> bool:
        return self.path.is_dir()

    def working_dir(self, entrypoint: str = "") -> Path:
        """Directory terraform runs in."""
        return self.path / entrypoint if entrypoint else self.path

    def check_owner(self, owner_id: str) -> None:
        """Fail if the directory exists and belongs to another resource.

        Raises:
            OwnershipConflict: If a different owner is recorded.
        """
        if not self.owner_path.exists():
            return
        recorded = self.owner_path.read_text(encoding="utf-8").strip()
        if recorded and recorded != owner_id:
            raise OwnershipConflict(
                f"Workspace directory {self.path} is owned by another resource ({recorded})"
            )

    def ensure(self, owner_id: str) -> None:
        """Create the directory on first use and record its owner.

        Raises:
            OwnershipConflict: If the directory belongs to another resource.
            ResolutionError: If the directory cannot be created.
        """
        self.check_owner(owner_id)
        try:
            created = not self.path.exists()
            self.path.mkdir(parents=True, exist_ok=True)
            if not self.owner_path.exists():
                self.owner_path.write_text(owner_id + "\n", encoding="utf-8")
        except OSError as e:
            raise ResolutionError(f"Failed to create workspace directory {self.path}: {e}") from e

        if created:
            logger.info(
                "Created workspace directory",
                extra={"workspace": self._external_name, "path": str(self.path)},
            )

    def read_source_marker(self) -> dict[str, Any] | None:
        """Return the recorded remote checkout, if any."""
        try:
            data = json.loads(self.source_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            logger.warning(
                "Ignoring unreadable source marker",
                extra={"workspace": self._external_name, "path": str(self.source_path)},
            )
            return None
        return data if isinstance(data, dict) else None

    def write_source_marker(self, marker: dict[str, Any]) -> None:
        self.source_path.write_text(json.dumps(marker, sort_keys=True), encoding="utf-8")

    def clear_source_marker(self) -> None:
        self.source_path.unlink(missing_ok=True)

    def write_vars(self, variables: list[tuple[str, Any]]) -> Path:
        """Write resolved variables as a JSON var file readable only by the operator."""
        content = json.dumps(dict(variables), indent=2, sort_keys=True)
        fd = os.open(self.vars_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        return self.vars_path

    def remove(self) -> None:
        """Delete the directory and everything in it."""
        if not self.path.exists():
            return
        shutil.rmtree(self.path)
        logger.info(
            "Removed workspace directory",
            extra={"workspace": self._external_name, "path": str(self.path)},
        )
