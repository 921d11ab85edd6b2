"""terraform mock for reconciler testing.

This module provides stand-ins for the terraform binary and the object store
so reconcile flows can be tested without terraform or a cluster.

Key Features:
- Scripted exit codes, output and failures per subcommand
- Recording of every invocation (directory, args, env)
- Remote module simulation for `init -from-module`
- Concurrency tracking for bounded-parallelism tests
- In-memory ConfigMaps and Secrets

Usage:
    from terraform_mock import FakeRunner, InMemoryObjectStore, make_workspace

    runner = FakeRunner()
    runner.script("apply", exit_code=1, stderr="boom")
    reconciler = WorkspaceReconciler(config, InMemoryObjectStore(), runner=runner)
    result = await reconciler.reconcile(make_workspace("demo"))

    assert runner.subcommands == ["init", "apply"]
"""

from .objects import InMemoryObjectStore
from .runner import FakeRunner, RunCall, write_fake_terraform
from .workspaces import make_workspace

__all__ = [
    "FakeRunner",
    "InMemoryObjectStore",
    "RunCall",
    "make_workspace",
    "write_fake_terraform",
]
