"""Error taxonomy for workspace reconciliation.

Every failure the reconciler can report derives from WorkspaceError and
carries the phase it happened in. The reconciler converts these into status
conditions; none of them are allowed to crash the controller loop.

CLASSIFICATION:
- ResolutionError: bad source/var references. Configuration problem, resurfaced each cycle.
- WorkspaceBusy: lock contention. Always transient.
- ProcessKilled: timeout or cancellation. Directory and lock may be stranded.
- SpawnError: binary missing or not runnable. Fatal until an operator intervenes.
- OutputParseError: output report malformed. Never blocks already-applied state.
- InitFailure/PlanFailure/ApplyFailure/DestroyFailure: non-zero exit, surfaced verbatim.
"""

from __future__ import annotations


class WorkspaceError(Exception):
    """Base class for all reconcile failures."""

    default_phase = "reconcile"

    def __init__(self, message: str, *, phase: str | None = None) -> None:
        super().__init__(message)
        self.phase = phase or self.default_phase


class ResolutionError(WorkspaceError):
    """Raised when a module source or variable reference cannot be resolved."""

    default_phase = "resolve"


class OwnershipConflict(ResolutionError):
    """Raised when a workspace directory belongs to a different resource."""

    pass


class WorkspaceBusy(WorkspaceError):
    """Raised when another run holds the workspace lock."""

    default_phase = "lock"


class ProcessKilled(WorkspaceError):
    """Raised when a process was terminated on timeout or cancellation."""

    default_phase = "process"

    def __init__(self, message: str, *, phase: str | None = None, reason: str = "timeout") -> None:
        super().__init__(message, phase=phase)
        self.reason = reason


class SpawnError(WorkspaceError):
    """Raised when the external binary cannot be started."""

    default_phase = "process"


class OutputParseError(WorkspaceError):
    """Raised when the machine-readable output report is malformed."""

    default_phase = "outputs"


class ProcessFailure(WorkspaceError):
    """A process ran to completion but reported a non-zero exit code."""

    def __init__(
        self, message: str, *, exit_code: int, stderr: str = "", phase: str | None = None
    ) -> None:
        super().__init__(message, phase=phase)
        self.exit_code = exit_code
        self.stderr = stderr


class InitFailure(ProcessFailure):
    """Raised when `init` exits non-zero."""

    default_phase = "init"


class PlanFailure(ProcessFailure):
    """Raised when the drift-check `plan` exits with an error."""

    default_phase = "plan"


class ApplyFailure(ProcessFailure):
    """Raised when `apply` exits non-zero."""

    default_phase = "apply"


class DestroyFailure(ProcessFailure):
    """Raised when `destroy` exits non-zero."""

    default_phase = "destroy"
