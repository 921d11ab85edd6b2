"""Integration tests for the reconcile flow.

These tests run the real ProcessRunner against a shell script standing in for
the terraform binary (see terraform_mock.write_fake_terraform), so process
spawning, timeouts and the lock manager interact for real.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest
from terraform_mock import InMemoryObjectStore, make_workspace, write_fake_terraform

from tfoperator.config import Config
from tfoperator.errors import ProcessKilled, SpawnError, WorkspaceBusy
from tfoperator.models import ConditionType, WorkspacePhase
from tfoperator.objects import FileObjectStore
from tfoperator.reconciler import ReconcileAction, WorkspaceReconciler

OUTPUTS = {
    "url": {"value": "https://x", "type": "string", "sensitive": False},
    "token": {"value": "t0k3n", "type": "string", "sensitive": True},
}


def make_config(tmp_path: Path, binary: Path | str, timeout_seconds: int = 60) -> Config:
    return Config(
        workspaces_dir=tmp_path / "tf",
        manifests_dir=tmp_path / "manifests",
        objects_dir=tmp_path / "objects",
        status_dir=tmp_path / "status",
        sync_interval_seconds=3600,
        poll_interval_seconds=60,
        timeout_seconds=timeout_seconds,
        terraform_binary=str(binary),
    )


def logged_calls(binary: Path) -> list[str]:
    log = binary.parent / "calls.log"
    return log.read_text().split() if log.exists() else []


class TestReconcilerIntegration:
    """Integration tests for WorkspaceReconciler with a fake terraform binary."""

    @pytest.mark.asyncio
    async def test_create_observe_delete(self, tmp_path: Path) -> None:
        """Test the full lifecycle of one workspace."""
        binary = write_fake_terraform(tmp_path / "bin", outputs=OUTPUTS)
        config = make_config(tmp_path, binary)
        objects = FileObjectStore(config.objects_dir)
        reconciler = WorkspaceReconciler(config, objects)
        workspace = make_workspace("demo", connection_secret="demo-conn")

        created = await reconciler.reconcile(workspace)

        assert created.success, created.error
        assert created.action == ReconcileAction.CREATE
        assert logged_calls(binary) == ["init", "apply", "output"]
        assert created.status.at_provider.outputs == {"url": "https://x"}
        assert objects.get_secret("default", "demo-conn") == {"url": "https://x", "token": "t0k3n"}

        workspace.status = created.status
        workspace.metadata.finalizers = created.finalizers
        observed = await reconciler.reconcile(workspace)

        assert observed.action == ReconcileAction.OBSERVE
        assert logged_calls(binary) == ["init", "apply", "output"]

        workspace.status = observed.status
        workspace.metadata.deletion_timestamp = created.end_time
        deleted = await reconciler.reconcile(workspace)

        assert deleted.success, deleted.error
        assert deleted.removable
        assert logged_calls(binary)[-2:] == ["init", "destroy"]
        assert not (config.workspaces_dir / "demo").exists()
        assert objects.get_secret("default", "demo-conn") is None

    @pytest.mark.asyncio
    async def test_timeout_kills_apply_and_strands_lock(self, tmp_path: Path) -> None:
        """Test that a hanging apply is killed at the deadline and the lock stays."""
        binary = write_fake_terraform(tmp_path / "bin", apply_seconds=60)
        config = make_config(tmp_path, binary, timeout_seconds=1)
        reconciler = WorkspaceReconciler(config, InMemoryObjectStore())
        workspace = make_workspace("demo")
        start = time.monotonic()

        result = await reconciler.reconcile(workspace)

        assert time.monotonic() - start < 15
        assert isinstance(result.error, ProcessKilled)
        assert result.error.reason == "timeout"
        assert result.status.at_provider.checksum is None
        synced = result.status.get_condition(ConditionType.SYNCED)
        assert synced is not None and synced.reason == "ProcessKilled"
        assert (config.workspaces_dir / "demo" / ".tfoperator.lock").exists()

        workspace.status = result.status
        retried = await reconciler.reconcile(workspace)

        assert isinstance(retried.error, WorkspaceBusy)

    @pytest.mark.asyncio
    async def test_apply_failure_exit_code(self, tmp_path: Path) -> None:
        binary = write_fake_terraform(tmp_path / "bin", apply_exit=1)
        reconciler = WorkspaceReconciler(make_config(tmp_path, binary), InMemoryObjectStore())

        result = await reconciler.reconcile(make_workspace("demo"))

        assert result.status.at_provider.phase == WorkspacePhase.INITIALIZED
        synced = result.status.get_condition(ConditionType.SYNCED)
        assert synced is not None and synced.reason == "ApplyFailure"
        assert not reconciler.lock_manager.is_locked("demo")

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path: Path) -> None:
        reconciler = WorkspaceReconciler(
            make_config(tmp_path, tmp_path / "bin" / "terraform"), InMemoryObjectStore()
        )

        result = await reconciler.reconcile(make_workspace("demo"))

        assert isinstance(result.error, SpawnError)
        assert not reconciler.lock_manager.is_locked("demo")

    @pytest.mark.asyncio
    async def test_cancelled_apply_strands_lock(self, tmp_path: Path) -> None:
        """Test that cancelling a reconcile kills apply and keeps the lock."""
        binary = write_fake_terraform(tmp_path / "bin", apply_seconds=60)
        config = make_config(tmp_path, binary)
        reconciler = WorkspaceReconciler(config, InMemoryObjectStore())
        task = asyncio.create_task(reconciler.reconcile(make_workspace("demo")))
        deadline = time.monotonic() + 10
        while "apply" not in logged_calls(binary) and time.monotonic() < deadline:
            await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (config.workspaces_dir / "demo" / ".tfoperator.lock").exists()
        assert reconciler.lock_manager.is_locked("demo")
