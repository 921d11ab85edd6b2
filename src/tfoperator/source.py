"""Materialization of module configuration into workspace directories.

INLINE:
The module text is written verbatim to main.tf. The file is only rewritten
when its content differs, so an unchanged module never touches mtimes that
terraform or its provider cache may depend on.

REMOTE:
The module is fetched with `terraform init -from-module=<ref>`, which accepts
every source terraform understands (archives, git, registry, ...). Fetching
happens in a staging directory that is then copied over the workspace files,
leaving terraform state, the provider cache and operator markers alone. A
fetch happens when the reference differs from the last fetched one or the
checkout is missing. Providers are still re-initialized on every reconcile by
the `init` step, since provider requirements can change independently of the
reference.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Mapping
from pathlib import Path

from .errors import ProcessKilled, ResolutionError
from .models import SourceMode, WorkspaceParameters
from .runner import ProcessRunner
from .workdir import WorkspaceDirectory, is_reserved

logger = logging.getLogger(__name__)


class SourceResolver:
    """Writes or fetches module files for a workspace."""

    def __init__(self, runner: ProcessRunner) -> None:
        self._runner = runner

    async def resolve(
        self,
        params: WorkspaceParameters,
        directory: WorkspaceDirectory,
        env: Mapping[str, str] | None = None,
    ) -> bool:
        """Bring the module files in a workspace directory up to date.

        The directory must already exist (see WorkspaceDirectory.ensure).

        Args:
            params: Workspace parameters naming the source.
            directory: Target workspace directory.
            env: Environment for a remote fetch (credentials for private sources).

        Returns:
            True if any module file changed.

        Raises:
            ResolutionError: If the module cannot be written or fetched.
            SpawnError: If the terraform binary cannot be started for a fetch.
        """
        match params.source:
            case SourceMode.INLINE:
                changed = self._write_inline(params.module, directory)
            case SourceMode.REMOTE:
                changed = await self._fetch_remote(params.module, directory, env)
            case _:
                raise ResolutionError(f"Unsupported module source: {params.source}")

        working_dir = directory.working_dir(params.entrypoint)
        if not working_dir.is_dir():
            raise ResolutionError(f"Entrypoint {params.entrypoint!r} does not exist in module")
        return changed

    def _write_inline(self, module: str, directory: WorkspaceDirectory) -> bool:
        changed = False

        # Switching from Remote: drop files of the previous checkout
        if directory.read_source_marker() is not None:
            self._clear_module_files(directory)
            directory.clear_source_marker()
            changed = True

        main_path = directory.main_path
        try:
            if main_path.exists() and main_path.read_text(encoding="utf-8") == module:
                return changed
            main_path.write_text(module, encoding="utf-8")
        except OSError as e:
            raise ResolutionError(f"Failed to write module to {main_path}: {e}") from e

        logger.info(
            "Wrote inline module",
            extra={"workspace": directory.external_name, "bytes": len(module)},
        )
        return True

    def _needs_fetch(self, reference: str, directory: WorkspaceDirectory) -> bool:
        marker = directory.read_source_marker()
        if marker is None or marker.get("source") != reference:
            return True
        files = marker.get("files") or []
        return not files or not all((directory.path / name).exists() for name in files)

    async def _fetch_remote(
        self,
        reference: str,
        directory: WorkspaceDirectory,
        env: Mapping[str, str] | None,
    ) -> bool:
        if not self._needs_fetch(reference, directory):
            logger.debug(
                "Remote module unchanged, skipping fetch",
                extra={"workspace": directory.external_name, "source": reference},
            )
            return False

        logger.info(
            "Fetching remote module",
            extra={"workspace": directory.external_name, "source": reference},
        )

        staging = Path(
            tempfile.mkdtemp(prefix=f".fetch-{directory.external_name}-", dir=directory.path.parent)
        )
        try:
            try:
                result = await self._runner.run(
                    staging,
                    "init",
                    [f"-from-module={reference}", "-backend=false", "-input=false"],
                    env=env,
                )
            except ProcessKilled as e:
                # Fetch runs in staging; workspace state was not touched
                raise ResolutionError(f"Fetching module {reference} was killed: {e}") from e

            if not result.succeeded:
                raise ResolutionError(
                    f"Fetching module {reference} failed (exit {result.exit_code}): "
                    f"{result.stderr.strip()}"
                )

            self._clear_module_files(directory)
            files = self._copy_checkout(staging, directory.path)
        except OSError as e:
            raise ResolutionError(f"Failed to materialize module {reference}: {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        directory.write_source_marker({"source": reference, "files": files})
        logger.info(
            "Fetched remote module",
            extra={"workspace": directory.external_name, "source": reference, "files": len(files)},
        )
        return True

    @staticmethod
    def _clear_module_files(directory: WorkspaceDirectory) -> None:
        """Remove every top-level entry that is not state, cache or a marker."""
        for entry in directory.path.iterdir():
            if is_reserved(entry.name):
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    @staticmethod
    def _copy_checkout(staging: Path, target: Path) -> list[str]:
        files: list[str] = []
        for entry in sorted(staging.iterdir()):
            if is_reserved(entry.name):
                continue
            destination = target / entry.name
            if entry.is_dir() and not entry.is_symlink():
                shutil.copytree(entry, destination, symlinks=True)
            else:
                shutil.copy2(entry, destination, follow_symlinks=False)
            files.append(entry.name)
        return files
