"""Single-writer access to workspace directories.

Exactly one guard may be outstanding per workspace at a time. The lock is a
lock artifact created with O_CREAT|O_EXCL inside the workspace directory, so it
also excludes other operator processes sharing the same volume, plus an
in-process registry of held guards.

STRANDED LOCKS:
A guard is released automatically when its block exits, including on ordinary
exceptions. When the block exits because a process was hard-killed
(ProcessKilled), or because the task was cancelled while holding the lock
(the runner kills the process group on cancellation as well), the artifact is
left in place: the killed run may have left terraform state half-written, and
running again silently could corrupt it further. Every later acquire() raises WorkspaceBusy until an
operator inspects the directory and removes the lock with clear()
(`tfo unlock <name>`). There is no automatic stale-lock recovery.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from .errors import ProcessKilled, WorkspaceBusy
from .workdir import WorkspaceDirectory

logger = logging.getLogger(__name__)


class WorkspaceGuard:
    """Proof of exclusive access to one workspace directory.

    Usage:
        with lock_manager.acquire("my-workspace"):
            await runner.run(...)
    """

    def __init__(self, manager: WorkspaceLockManager, workspace_id: str, lock_path: Path) -> None:
        self._manager = manager
        self._workspace_id = workspace_id
        self._lock_path = lock_path
        self._released = False
        self._stranded = False

    @property
    def workspace_id(self) -> str:
        return self._workspace_id

    @property
    def released(self) -> bool:
        return self._released

    @property
    def stranded(self) -> bool:
        return self._stranded

    def release(self) -> None:
        """Remove the lock artifact. Safe to call more than once."""
        if self._released or self._stranded:
            return
        self._lock_path.unlink(missing_ok=True)
        self._released = True
        self._manager._forget(self._workspace_id)
        logger.debug("Released workspace lock", extra={"workspace": self._workspace_id})

    def strand(self, reason: str) -> None:
        """Leave the lock artifact in place after a killed process."""
        if self._released:
            return
        self._stranded = True
        self._manager._forget(self._workspace_id)
        logger.warning(
            "Workspace lock stranded, manual removal required",
            extra={
                "workspace": self._workspace_id,
                "lock_path": str(self._lock_path),
                "reason": reason,
            },
        )

    def __enter__(self) -> WorkspaceGuard:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if isinstance(exc, (ProcessKilled, asyncio.CancelledError)):
            self.strand(str(exc) or type(exc).__name__)
        else:
            self.release()


class WorkspaceLockManager:
    """Hands out at most one WorkspaceGuard per workspace id."""

    def __init__(self, workspaces_dir: Path) -> None:
        self._workspaces_dir = workspaces_dir
        self._held: dict[str, WorkspaceGuard] = {}

    def _lock_path(self, workspace_id: str) -> Path:
        return WorkspaceDirectory(self._workspaces_dir, workspace_id).lock_path

    def _forget(self, workspace_id: str) -> None:
        self._held.pop(workspace_id, None)

    def acquire(self, workspace_id: str) -> WorkspaceGuard:
        """Acquire exclusive access to a workspace.

        Args:
            workspace_id: External name of the workspace.

        Returns:
            A guard; use it as a context manager.

        Raises:
            WorkspaceBusy: If another run holds the lock or a stranded lock exists.
        """
        if workspace_id in self._held:
            raise WorkspaceBusy(f"Workspace {workspace_id} is locked by a running reconcile")

        lock_path = self._lock_path(workspace_id)
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            holder = self.describe(workspace_id) or {}
            raise WorkspaceBusy(
                f"Workspace {workspace_id} is locked (pid={holder.get('pid', '?')}, "
                f"since {holder.get('acquiredAt', '?')}); "
                "if the holder was killed, remove the lock with `tfo unlock`"
            ) from e

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(
                {"pid": os.getpid(), "acquiredAt": datetime.now(UTC).isoformat()},
                f,
            )

        guard = WorkspaceGuard(self, workspace_id, lock_path)
        self._held[workspace_id] = guard
        logger.debug("Acquired workspace lock", extra={"workspace": workspace_id})
        return guard

    def is_locked(self, workspace_id: str) -> bool:
        return workspace_id in self._held or self._lock_path(workspace_id).exists()

    def describe(self, workspace_id: str) -> dict | None:
        """Return the recorded holder of a lock, if the artifact exists."""
        try:
            data = json.loads(self._lock_path(workspace_id).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def clear(self, workspace_id: str) -> bool:
        """Manually remove a lock artifact.

        Returns:
            True if a lock was removed.

        Raises:
            WorkspaceBusy: If this process is actively holding the lock.
        """
        if workspace_id in self._held:
            raise WorkspaceBusy(f"Workspace {workspace_id} is held by a running reconcile")

        lock_path = self._lock_path(workspace_id)
        if not lock_path.exists():
            return False
        lock_path.unlink()
        logger.warning(
            "Workspace lock removed manually",
            extra={"workspace": workspace_id, "lock_path": str(lock_path)},
        )
        return True
