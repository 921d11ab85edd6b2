"""Workspace reconciliation state machine.

This module implements the Kubernetes-style reconcile contract for one
Workspace at a time:

    reconcile(workspace) -> ReconcileResult(new status, finalizers, error)

It makes no assumption about how or how often it is invoked. Scheduling,
dedup and backoff belong to the host (see controller.py).

PHASES:
    Uninitialized -> Initialized -> Planned -> Applied      (steady state)
    Destroying -> Destroyed                                 (terminal)

FLOW:
1. Observe: resolve variables, fingerprint the desired configuration, and
   compare with the fingerprint of the last successful apply. Equal means up
   to date and no process runs, unless a periodic drift check is due.
2. Create/Update: lock -> materialize module -> init -> apply -> output -json
   -> connection secret and status outputs -> persist fingerprint -> unlock.
   Synced=True is only reported after apply succeeded.
3. Delete: lock -> materialize module -> init -> destroy -> remove directory
   -> drop finalizer. A failed destroy keeps the finalizer so the resource
   cannot disappear while its infrastructure still exists.

Failures before apply/destroy leave the directory and the recorded
fingerprint untouched, so a retried reconcile resumes from the same on-disk
state. No failure escapes reconcile(); every error becomes a status condition.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from .config import Config
from .errors import (
    ApplyFailure,
    DestroyFailure,
    InitFailure,
    OutputParseError,
    PlanFailure,
    ProcessKilled,
    ResolutionError,
    SpawnError,
    WorkspaceBusy,
    WorkspaceError,
)
from .locking import WorkspaceLockManager
from .models import (
    WORKSPACE_FINALIZER,
    Condition,
    ConditionType,
    ManagementAction,
    Workspace,
    WorkspaceParameters,
    WorkspacePhase,
    WorkspaceStatus,
)
from .objects import ObjectStore, ObjectStoreError
from .outputs import Output, connection_details, extract, status_outputs
from .provenance import ProvenanceLogger, ReconcileProvenance, get_provenance_logger
from .runner import ProcessResult, ProcessRunner
from .source import SourceResolver
from .variables import VariableLoader
from .workdir import WorkspaceDirectory

logger = logging.getLogger(__name__)

# Bump when the fingerprint payload changes shape; forces one re-apply
FINGERPRINT_VERSION = 1

# `plan -detailed-exitcode`: 0 = no changes, 1 = error, 2 = changes present
PLAN_EXIT_NO_CHANGES = 0
PLAN_EXIT_CHANGES = 2

ALL_ACTIONS = frozenset(
    {
        ManagementAction.OBSERVE,
        ManagementAction.CREATE,
        ManagementAction.UPDATE,
        ManagementAction.DELETE,
    }
)


class ReconcileAction(str, Enum):
    """What a reconcile decided to do."""

    NONE = "none"
    OBSERVE = "observe"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ORPHAN = "orphan"
    SKIP = "skip"


def compute_fingerprint(
    params: WorkspaceParameters,
    variables: Sequence[tuple[str, Any]],
    env: dict[str, str],
) -> str:
    """Deterministic hash of the resolved desired configuration.

    Covers the module content or reference, entrypoint, resolved variables in
    order, resolved environment and the extra init/plan/apply arguments.
    destroyArgs are excluded; they do not affect applied state.
    """
    payload = {
        "version": FINGERPRINT_VERSION,
        "source": params.source.value,
        "module": params.module,
        "entrypoint": params.entrypoint,
        "vars": [[key, value] for key, value in variables],
        "env": sorted(env.items()),
        "initArgs": params.init_args,
        "planArgs": params.plan_args,
        "applyArgs": params.apply_args,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class Observation:
    """Result of observing a workspace without changing infrastructure."""

    up_to_date: bool
    fingerprint: str
    reason: str
    variables: list[tuple[str, Any]] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    drift_checked_at: datetime | None = None


@dataclass
class ReconcileResult:
    """Result of a single reconcile of one workspace."""

    workspace: str
    status: WorkspaceStatus
    finalizers: list[str]
    action: ReconcileAction = ReconcileAction.NONE
    removable: bool = False  # finalizer cleared, the resource may now be removed
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None


def _condition(
    condition_type: ConditionType, ok: bool, reason: str, message: str = ""
) -> Condition:
    return Condition(
        type=condition_type,
        status="True" if ok else "False",
        reason=reason,
        message=message,
    )


class WorkspaceReconciler:
    """Drives terraform to converge one Workspace at a time.

    The reconciler holds no per-workspace state between calls. Everything it
    needs to resume is in the workspace status and on disk.
    """

    def __init__(
        self,
        config: Config,
        objects: ObjectStore,
        *,
        runner: ProcessRunner | None = None,
        lock_manager: WorkspaceLockManager | None = None,
        provenance_logger: ProvenanceLogger | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated operator configuration.
            objects: Store for ConfigMaps and Secrets.
            runner: Process runner; built from config when omitted.
            lock_manager: Workspace locks; built from config when omitted.
            provenance_logger: Audit logger; the global one when omitted.
            shutdown_event: Kills running processes when set.
        """
        self._config = config
        self._objects = objects
        self._runner = runner or ProcessRunner(
            config.terraform_binary,
            timeout_seconds=config.timeout_seconds,
            plugin_cache_dir=config.plugin_cache_dir,
            shutdown_event=shutdown_event,
        )
        self._locks = lock_manager or WorkspaceLockManager(config.workspaces_dir)
        self._sources = SourceResolver(self._runner)
        self._variables = VariableLoader(objects, config.namespace)
        self._provenance = provenance_logger or get_provenance_logger()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def lock_manager(self) -> WorkspaceLockManager:
        return self._locks

    def directory_for(self, workspace: Workspace) -> WorkspaceDirectory:
        return WorkspaceDirectory(self._config.workspaces_dir, workspace.external_name)

    # -------------------------------------------------------------------------
    # Public contract
    # -------------------------------------------------------------------------

    async def reconcile(self, workspace: Workspace) -> ReconcileResult:
        """Reconcile one workspace.

        The input is not modified. The returned result carries the new status
        and finalizer list for the host to persist.

        Returns:
            ReconcileResult; `error` is set on failure, nothing is raised.
        """
        status = workspace.status.model_copy(deep=True)
        finalizers = list(workspace.metadata.finalizers)
        result = ReconcileResult(
            workspace=workspace.metadata.name, status=status, finalizers=finalizers
        )
        provenance = self._provenance.create_provenance(
            workspace=workspace.metadata.name, external_name=workspace.external_name
        )
        provenance.previous_fingerprint = status.at_provider.checksum or ""

        try:
            directory = self.directory_for(workspace)
            policies = self._effective_policies(workspace)

            if workspace.deletion_requested:
                await self._reconcile_deletion(workspace, directory, policies, result, provenance)
            else:
                if WORKSPACE_FINALIZER not in finalizers:
                    finalizers.append(WORKSPACE_FINALIZER)
                await self._reconcile_present(workspace, directory, policies, result, provenance)

        except WorkspaceBusy as e:
            # Lock contention is always transient
            logger.warning(
                "Workspace busy, reconcile skipped",
                extra={"workspace": workspace.metadata.name, "reason": str(e)},
            )
            self._record_error(result, e)
        except ResolutionError as e:
            logger.error(
                "Failed to resolve workspace inputs",
                extra={"workspace": workspace.metadata.name, "error": str(e)},
            )
            self._record_error(result, e)
        except ProcessKilled as e:
            logger.error(
                "terraform process killed, workspace lock may be stranded",
                extra={"workspace": workspace.metadata.name, "phase": e.phase, "reason": e.reason},
            )
            self._record_error(result, e)
        except SpawnError as e:
            logger.critical(
                "Cannot run terraform binary",
                extra={"workspace": workspace.metadata.name, "error": str(e)},
            )
            self._record_error(result, e)
        except WorkspaceError as e:
            logger.error(
                "Reconcile failed",
                extra={"workspace": workspace.metadata.name, "phase": e.phase, "error": str(e)},
            )
            self._record_error(result, e)
        except Exception as e:
            logger.exception(
                "Unexpected error during reconcile", extra={"workspace": workspace.metadata.name}
            )
            result.error = e
            status.set_condition(
                _condition(ConditionType.SYNCED, False, "ReconcileError", f"reconcile: {e}")
            )

        result.end_time = datetime.now(UTC)

        provenance.action = result.action.value
        provenance.phase = status.at_provider.phase.value
        provenance.duration_seconds = result.duration_seconds
        if result.error is not None:
            provenance.error = str(result.error)
            provenance.error_type = type(result.error).__name__
            provenance.error_phase = getattr(result.error, "phase", None)
        self._provenance.log_provenance(provenance)

        return result

    async def observe(self, workspace: Workspace) -> Observation:
        """Decide whether a workspace needs an apply.

        Never changes infrastructure. No process runs unless the periodic
        drift check is due, in which case `init` and `plan -detailed-exitcode`
        run under the workspace lock.

        Raises:
            ResolutionError: If variables or env cannot be resolved, or the
                directory belongs to another resource.
            WorkspaceBusy, ProcessKilled, SpawnError, InitFailure, PlanFailure:
                From the drift check.
        """
        return await self._observe(workspace, None)

    # -------------------------------------------------------------------------
    # Observe
    # -------------------------------------------------------------------------

    async def _observe(
        self, workspace: Workspace, provenance: ReconcileProvenance | None
    ) -> Observation:
        params = workspace.spec.for_provider
        namespace = workspace.metadata.namespace
        variables = self._variables.load(params, namespace)
        env = self._variables.load_env(params, namespace)
        fingerprint = compute_fingerprint(params, variables, env)

        directory = self.directory_for(workspace)
        directory.check_owner(workspace.owner_id)
        applied = workspace.status.at_provider.checksum

        def needs_apply(reason: str) -> Observation:
            return Observation(False, fingerprint, reason, variables, env)

        if workspace.deletion_requested:
            return needs_apply("deletion requested")
        if applied is None:
            return needs_apply("never applied")
        if applied != fingerprint:
            return needs_apply("desired configuration changed")
        if not directory.exists():
            return needs_apply("workspace directory missing")
        published = workspace.status.get_condition(ConditionType.OUTPUTS_AVAILABLE)
        if published is None or not published.is_true:
            return needs_apply("outputs not published")

        if not self._drift_check_due(workspace.status):
            return Observation(True, fingerprint, "fingerprint unchanged", variables, env)

        checked_at = datetime.now(UTC)
        drifted = await self._check_drift(workspace, directory, variables, env, provenance)
        return Observation(
            not drifted,
            fingerprint,
            "drift detected by plan" if drifted else "no drift detected by plan",
            variables,
            env,
            drift_checked_at=checked_at,
        )

    def _drift_check_due(self, status: WorkspaceStatus) -> bool:
        if not self._config.drift_check:
            return False
        last = status.at_provider.last_drift_check
        if last is None:
            return True
        if last.tzinfo is None:
            last = last.replace(tzinfo=UTC)
        return datetime.now(UTC) - last >= timedelta(seconds=self._config.sync_interval_seconds)

    async def _check_drift(
        self,
        workspace: Workspace,
        directory: WorkspaceDirectory,
        variables: list[tuple[str, Any]],
        env: dict[str, str],
        provenance: ReconcileProvenance | None,
    ) -> bool:
        params = workspace.spec.for_provider
        with self._locks.acquire(directory.external_name):
            await self._sources.resolve(params, directory, env)
            vars_path = directory.write_vars(variables)
            working_dir = directory.working_dir(params.entrypoint)

            await self._init(working_dir, params, env, provenance)
            result = await self._run(
                provenance,
                working_dir,
                "plan",
                ["-detailed-exitcode", "-input=false", f"-var-file={vars_path}", *params.plan_args],
                env,
            )

        if result.exit_code == PLAN_EXIT_NO_CHANGES:
            return False
        if result.exit_code == PLAN_EXIT_CHANGES:
            logger.info("Drift detected", extra={"workspace": workspace.metadata.name})
            return True
        raise PlanFailure(
            f"plan failed (exit {result.exit_code}): {result.stderr.strip()}",
            exit_code=result.exit_code,
            stderr=result.stderr,
        )

    # -------------------------------------------------------------------------
    # Create / update
    # -------------------------------------------------------------------------

    async def _reconcile_present(
        self,
        workspace: Workspace,
        directory: WorkspaceDirectory,
        policies: frozenset[ManagementAction],
        result: ReconcileResult,
        provenance: ReconcileProvenance,
    ) -> None:
        status = result.status
        observation = await self._observe(workspace, provenance)
        provenance.fingerprint = observation.fingerprint
        provenance.up_to_date = observation.up_to_date

        if observation.drift_checked_at is not None:
            status.at_provider.last_drift_check = observation.drift_checked_at

        if observation.up_to_date:
            result.action = ReconcileAction.OBSERVE
            status.set_condition(_condition(ConditionType.SYNCED, True, "ReconcileSuccess"))
            status.set_condition(_condition(ConditionType.READY, True, "Available"))
            logger.debug(
                "Workspace up to date",
                extra={"workspace": workspace.metadata.name, "reason": observation.reason},
            )
            return

        if observation.drift_checked_at is not None:
            status.at_provider.phase = WorkspacePhase.PLANNED

        action = (
            ReconcileAction.CREATE
            if status.at_provider.checksum is None
            else ReconcileAction.UPDATE
        )
        required = (
            ManagementAction.CREATE if action == ReconcileAction.CREATE else ManagementAction.UPDATE
        )
        if required not in policies:
            result.action = ReconcileAction.SKIP
            status.set_condition(
                _condition(
                    ConditionType.SYNCED,
                    True,
                    "ReconcileSkipped",
                    f"{observation.reason}; management policies do not allow {required.value}",
                )
            )
            logger.info(
                "Apply skipped by management policies",
                extra={"workspace": workspace.metadata.name, "required": required.value},
            )
            return

        logger.info(
            "Workspace needs apply",
            extra={
                "workspace": workspace.metadata.name,
                "action": action.value,
                "reason": observation.reason,
            },
        )
        result.action = action
        if status.get_condition(ConditionType.READY) is None or action == ReconcileAction.CREATE:
            status.set_condition(_condition(ConditionType.READY, False, "Creating"))

        await self._apply(workspace, directory, observation, status, provenance)

    async def _apply(
        self,
        workspace: Workspace,
        directory: WorkspaceDirectory,
        observation: Observation,
        status: WorkspaceStatus,
        provenance: ReconcileProvenance,
    ) -> None:
        params = workspace.spec.for_provider
        env = observation.env
        directory.ensure(workspace.owner_id)

        with self._locks.acquire(directory.external_name):
            await self._sources.resolve(params, directory, env)
            vars_path = directory.write_vars(observation.variables)
            working_dir = directory.working_dir(params.entrypoint)

            await self._init(working_dir, params, env, provenance)
            if status.at_provider.phase == WorkspacePhase.UNINITIALIZED:
                status.at_provider.phase = WorkspacePhase.INITIALIZED

            applied = await self._run(
                provenance,
                working_dir,
                "apply",
                ["-auto-approve", "-input=false", f"-var-file={vars_path}", *params.apply_args],
                env,
            )
            if not applied.succeeded:
                raise ApplyFailure(
                    f"apply failed (exit {applied.exit_code}): {applied.stderr.strip()}",
                    exit_code=applied.exit_code,
                    stderr=applied.stderr,
                )

            # Infrastructure changed: record it before anything else can fail
            status.at_provider.phase = WorkspacePhase.APPLIED
            status.at_provider.checksum = observation.fingerprint
            status.at_provider.last_drift_check = datetime.now(UTC)
            status.set_condition(_condition(ConditionType.SYNCED, True, "ReconcileSuccess"))
            status.set_condition(_condition(ConditionType.READY, True, "Available"))
            logger.info(
                "Workspace applied",
                extra={"workspace": workspace.metadata.name, "checksum": observation.fingerprint},
            )

            try:
                reported = await self._run(provenance, working_dir, "output", ["-json"], env)
                if not reported.succeeded:
                    raise OutputParseError(
                        f"output exited {reported.exit_code}: {reported.stderr.strip()}"
                    )
                outputs = extract(reported.stdout)
            except OutputParseError as e:
                # Apply already happened; surface the failure without hiding it
                logger.warning(
                    "Failed to parse outputs after apply",
                    extra={"workspace": workspace.metadata.name, "error": str(e)},
                )
                status.set_condition(
                    _condition(ConditionType.OUTPUTS_AVAILABLE, False, "ParseError", str(e))
                )
                return
            except (ProcessKilled, SpawnError) as e:
                # Still inside the lock: a killed output run strands it
                status.set_condition(
                    _condition(
                        ConditionType.OUTPUTS_AVAILABLE, False, type(e).__name__, f"{e.phase}: {e}"
                    )
                )
                raise

        self._publish_outputs(workspace, outputs, status)

    def _publish_outputs(
        self, workspace: Workspace, outputs: dict[str, Output], status: WorkspaceStatus
    ) -> None:
        status.at_provider.outputs = status_outputs(outputs)

        ref = workspace.spec.write_connection_secret_to_ref
        if ref is not None:
            namespace = ref.namespace or workspace.metadata.namespace or self._config.namespace
            try:
                self._objects.put_secret(namespace, ref.name, connection_details(outputs))
            except ObjectStoreError as e:
                logger.error(
                    "Failed to write connection secret",
                    extra={"workspace": workspace.metadata.name, "error": str(e)},
                )
                status.set_condition(
                    _condition(
                        ConditionType.OUTPUTS_AVAILABLE, False, "ConnectionSecretError", str(e)
                    )
                )
                return

        status.set_condition(
            _condition(
                ConditionType.OUTPUTS_AVAILABLE,
                True,
                "OutputsPublished",
                f"{len(outputs)} outputs",
            )
        )

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def _reconcile_deletion(
        self,
        workspace: Workspace,
        directory: WorkspaceDirectory,
        policies: frozenset[ManagementAction],
        result: ReconcileResult,
        provenance: ReconcileProvenance,
    ) -> None:
        status = result.status

        if WORKSPACE_FINALIZER not in result.finalizers:
            result.removable = True
            return

        if ManagementAction.DELETE not in policies:
            # Leave infrastructure and directory in place
            result.action = ReconcileAction.ORPHAN
            result.finalizers.remove(WORKSPACE_FINALIZER)
            result.removable = True
            status.set_condition(
                _condition(ConditionType.READY, False, "Orphaned", "infrastructure left in place")
            )
            logger.warning(
                "Workspace orphaned, management policies do not allow Delete",
                extra={"workspace": workspace.metadata.name},
            )
            return

        result.action = ReconcileAction.DELETE
        status.at_provider.phase = WorkspacePhase.DESTROYING
        status.set_condition(_condition(ConditionType.READY, False, "Deleting"))

        if status.at_provider.checksum is None and not directory.exists():
            logger.info(
                "Workspace never applied, nothing to destroy",
                extra={"workspace": workspace.metadata.name},
            )
        else:
            await self._destroy(workspace, directory, provenance)

        self._delete_connection_secret(workspace)

        status.at_provider.phase = WorkspacePhase.DESTROYED
        status.at_provider.checksum = None
        status.at_provider.outputs = {}
        status.remove_condition(ConditionType.OUTPUTS_AVAILABLE)
        status.set_condition(_condition(ConditionType.SYNCED, True, "ReconcileSuccess"))
        result.finalizers.remove(WORKSPACE_FINALIZER)
        result.removable = True

    async def _destroy(
        self,
        workspace: Workspace,
        directory: WorkspaceDirectory,
        provenance: ReconcileProvenance,
    ) -> None:
        params = workspace.spec.for_provider
        namespace = workspace.metadata.namespace
        variables = self._variables.load(params, namespace)
        env = self._variables.load_env(params, namespace)
        directory.ensure(workspace.owner_id)

        with self._locks.acquire(directory.external_name):
            await self._sources.resolve(params, directory, env)
            vars_path = directory.write_vars(variables)
            working_dir = directory.working_dir(params.entrypoint)

            await self._init(working_dir, params, env, provenance)
            destroyed = await self._run(
                provenance,
                working_dir,
                "destroy",
                ["-auto-approve", "-input=false", f"-var-file={vars_path}", *params.destroy_args],
                env,
            )
            if not destroyed.succeeded:
                raise DestroyFailure(
                    f"destroy failed (exit {destroyed.exit_code}): {destroyed.stderr.strip()}",
                    exit_code=destroyed.exit_code,
                    stderr=destroyed.stderr,
                )

        directory.remove()
        logger.info("Workspace destroyed", extra={"workspace": workspace.metadata.name})

    def _delete_connection_secret(self, workspace: Workspace) -> None:
        ref = workspace.spec.write_connection_secret_to_ref
        if ref is None:
            return
        namespace = ref.namespace or workspace.metadata.namespace or self._config.namespace
        try:
            self._objects.delete_secret(namespace, ref.name)
        except ObjectStoreError as e:
            logger.warning(
                "Failed to delete connection secret",
                extra={"workspace": workspace.metadata.name, "error": str(e)},
            )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _effective_policies(self, workspace: Workspace) -> frozenset[ManagementAction]:
        """Resolve spec.managementPolicies to the set of allowed actions.

        Raises:
            ResolutionError: If non-default policies are used while the feature
                is disabled, or the policies omit Observe.
        """
        declared = set(workspace.spec.management_policies)
        if not self._config.enable_management_policies:
            if declared != {ManagementAction.ALL}:
                raise ResolutionError(
                    "managementPolicies other than ['*'] require management policies "
                    "to be enabled (TFO_ENABLE_MANAGEMENT_POLICIES)",
                    phase="policy",
                )
            return ALL_ACTIONS
        if ManagementAction.ALL in declared:
            return ALL_ACTIONS
        if ManagementAction.OBSERVE not in declared:
            raise ResolutionError("managementPolicies must include Observe", phase="policy")
        return frozenset(declared)

    async def _init(
        self,
        working_dir: Path,
        params: WorkspaceParameters,
        env: dict[str, str],
        provenance: ReconcileProvenance | None,
    ) -> None:
        result = await self._run(
            provenance, working_dir, "init", ["-input=false", *params.init_args], env
        )
        if not result.succeeded:
            raise InitFailure(
                f"init failed (exit {result.exit_code}): {result.stderr.strip()}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

    async def _run(
        self,
        provenance: ReconcileProvenance | None,
        working_dir: Path,
        subcommand: str,
        args: list[str],
        env: dict[str, str],
    ) -> ProcessResult:
        """Run a subcommand and record it in the provenance record."""
        try:
            result = await self._runner.run(working_dir, subcommand, args, env=env)
        except ProcessKilled:
            if provenance is not None:
                provenance.record_process(subcommand, outcome="killed")
            raise
        except SpawnError:
            if provenance is not None:
                provenance.record_process(subcommand, outcome="spawn_error")
            raise

        if provenance is not None:
            provenance.record_process(
                subcommand,
                exit_code=result.exit_code,
                duration_seconds=result.duration_seconds,
            )
        return result

    @staticmethod
    def _record_error(result: ReconcileResult, error: WorkspaceError) -> None:
        result.error = error
        result.status.set_condition(
            _condition(
                ConditionType.SYNCED,
                False,
                type(error).__name__,
                f"{error.phase}: {error}",
            )
        )
