"""Polling host for the workspace reconciler.

Loads Workspace manifests from disk every poll interval and reconciles each
of them, at most `max_concurrent_reconciles` at a time. Reconciles of
different workspaces run in parallel and share nothing but the lock manager.

Manifests are treated as read-only desired state (e.g. synced by git-sync);
status and finalizers are persisted separately by StatusStore as JSON:

    <status_dir>/<workspace-name>.json
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .config import Config
from .models import Workspace, WorkspaceStatus
from .objects import FileObjectStore, ObjectStore
from .reconciler import ReconcileResult, WorkspaceReconciler
from .spec_loader import SpecLoadError, load_workspaces

logger = logging.getLogger(__name__)


class StoredState(BaseModel):
    """Operator-owned state of one workspace."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    status: WorkspaceStatus = Field(default_factory=WorkspaceStatus)
    finalizers: list[str] = Field(default_factory=list)
    removed: bool = False


class StatusStore:
    """Persists workspace status and finalizers next to read-only manifests."""

    def __init__(self, status_dir: Path) -> None:
        self._status_dir = status_dir

    def _path(self, name: str) -> Path:
        return self._status_dir / f"{name}.json"

    def load(self, name: str) -> StoredState | None:
        path = self._path(name)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return StoredState.model_validate(raw)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            # Losing status forces a re-apply, which is safe; crashing the loop is not
            logger.error(
                "Ignoring unreadable workspace status",
                extra={"workspace": name, "path": str(path), "error": str(e)},
            )
            return None

    def merge(self, workspace: Workspace) -> Workspace | None:
        """Overlay stored status and finalizers onto a freshly loaded manifest.

        Returns:
            The merged workspace, or None if it was already removed.
        """
        stored = self.load(workspace.metadata.name)
        if stored is None:
            return workspace
        if stored.removed:
            if workspace.deletion_requested:
                return None
            # Deletion was withdrawn after removal: a new resource with the same name
            return workspace

        merged = workspace.model_copy(deep=True)
        merged.status = stored.status
        merged.metadata.finalizers = list(
            dict.fromkeys([*workspace.metadata.finalizers, *stored.finalizers])
        )
        return merged

    def save(self, result: ReconcileResult, removed: bool = False) -> None:
        state = StoredState(status=result.status, finalizers=result.finalizers, removed=removed)
        content = json.dumps(state.model_dump(mode="json", by_alias=True), indent=2)

        self._status_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._status_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, self._path(result.workspace))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class Controller:
    """Runs reconcile cycles until shutdown."""

    def __init__(
        self,
        config: Config,
        *,
        objects: ObjectStore | None = None,
        reconciler: WorkspaceReconciler | None = None,
        status_store: StatusStore | None = None,
    ) -> None:
        self._config = config
        self._shutdown_event = asyncio.Event()
        self._objects = objects or FileObjectStore(config.objects_dir)
        self._reconciler = reconciler or WorkspaceReconciler(
            config, self._objects, shutdown_event=self._shutdown_event
        )
        self._status = status_store or StatusStore(config.status_dir)
        self._semaphore = asyncio.Semaphore(config.max_concurrent_reconciles)

    @property
    def reconciler(self) -> WorkspaceReconciler:
        return self._reconciler

    @property
    def status_store(self) -> StatusStore:
        return self._status

    async def run(self) -> None:
        """Run reconcile cycles at the poll interval until shutdown."""
        logger.info(
            "Starting controller",
            extra={
                "manifests_dir": str(self._config.manifests_dir),
                "workspaces_dir": str(self._config.workspaces_dir),
                "poll_interval_seconds": self._config.poll_interval_seconds,
                "sync_interval_seconds": self._config.sync_interval_seconds,
                "max_concurrent_reconciles": self._config.max_concurrent_reconciles,
            },
        )

        while not self._shutdown_event.is_set():
            try:
                await self.reconcile_all()
            except SpecLoadError as e:
                logger.error("Failed to list workspaces", extra={"error": str(e)})

            # Wait for next cycle or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.poll_interval_seconds,
                )
            except TimeoutError:
                pass

        logger.info("Controller shutdown complete")

    def shutdown(self) -> None:
        """Signal the controller to stop; running terraform processes are killed."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def reconcile_all(self) -> list[ReconcileResult]:
        """Reconcile every workspace manifest once.

        Raises:
            SpecLoadError: If the manifests directory cannot be listed.
        """
        workspaces, errors = load_workspaces(self._config.manifests_dir)
        if errors:
            logger.warning("Some manifests failed to load", extra={"failed": len(errors)})

        results = await asyncio.gather(*(self._reconcile_one(w) for w in workspaces))
        return [r for r in results if r is not None]

    async def _reconcile_one(self, workspace: Workspace) -> ReconcileResult | None:
        async with self._semaphore:
            if self._shutdown_event.is_set():
                return None

            merged = self._status.merge(workspace)
            if merged is None:
                logger.debug("Workspace already removed", extra={"workspace": workspace.metadata.name})
                return None

            result = await self._reconciler.reconcile(merged)
            removed = merged.deletion_requested and result.removable
            self._status.save(result, removed=removed)
            self._log_result(result)
            return result

    def _log_result(self, result: ReconcileResult) -> None:
        extra = {
            "workspace": result.workspace,
            "action": result.action.value,
            "phase": result.status.at_provider.phase.value,
            "duration_seconds": result.duration_seconds,
        }
        if result.success:
            logger.info("Reconcile complete", extra=extra)
        else:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.warning("Reconcile failed, will retry next poll", extra=extra)
