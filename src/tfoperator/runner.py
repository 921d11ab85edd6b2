"""Execution of the external terraform binary.

Each invocation runs as a child process rooted at the workspace directory and
either completes, is killed, or fails to spawn. There is no retry here; retry
policy belongs to whoever schedules reconciles.

PROCESS TREE:
terraform starts provider plugins as child processes. The child is started in
its own session (and so its own process group), and termination sends SIGKILL
to the whole group so no grandchild helper outlives a timed-out run.

CANCELLATION:
Timeout, the shutdown event, and asyncio task cancellation all take the same
path: kill the process group immediately, no graceful wind-down.

Only stdout is a structured channel. stderr is captured for diagnostics and
error messages and must never drive control decisions.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import DEFAULT_TERRAFORM_BINARY, DEFAULT_TIMEOUT_SECONDS
from .errors import ProcessKilled, SpawnError

logger = logging.getLogger(__name__)

# Time allowed for pipes to drain after the process group was killed
KILL_GRACE_SECONDS = 5.0

# Environment that keeps terraform non-interactive
AUTOMATION_ENV: dict[str, str] = {
    "TF_IN_AUTOMATION": "1",
    "TF_INPUT": "0",
    "CHECKPOINT_DISABLE": "1",
}


@dataclass(frozen=True)
class ProcessResult:
    """Captured result of a completed process."""

    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class ProcessRunner:
    """Runs terraform subcommands with a hard wall-clock deadline."""

    def __init__(
        self,
        binary: str = DEFAULT_TERRAFORM_BINARY,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        plugin_cache_dir: Path | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Initialize runner.

        Args:
            binary: terraform executable name or path.
            timeout_seconds: Default deadline per invocation.
            plugin_cache_dir: Shared provider plugin cache, if any.
            shutdown_event: When set, running processes are killed.
        """
        self._binary = binary
        self._timeout_seconds = timeout_seconds
        self._plugin_cache_dir = plugin_cache_dir
        self._shutdown_event = shutdown_event

    @property
    def binary(self) -> str:
        return self._binary

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def _build_env(self, env: Mapping[str, str] | None) -> dict[str, str]:
        full_env = os.environ.copy()
        full_env.update(AUTOMATION_ENV)
        if self._plugin_cache_dir is not None:
            full_env["TF_PLUGIN_CACHE_DIR"] = str(self._plugin_cache_dir)
        if env:
            full_env.update(env)
        return full_env

    async def run(
        self,
        directory: Path,
        subcommand: str,
        args: Sequence[str] = (),
        *,
        timeout_seconds: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        """Run `<binary> <subcommand> <args...>` in a directory.

        A non-zero exit code is returned, not raised; the caller decides what
        it means for the phase it is running.

        Args:
            directory: Working directory for the process.
            subcommand: terraform subcommand (init, plan, apply, destroy, output).
            args: Additional arguments.
            timeout_seconds: Override of the default deadline.
            env: Extra environment variables for this invocation.

        Returns:
            ProcessResult with exit code and decoded output.

        Raises:
            ProcessKilled: If the deadline expired or the run was cancelled.
            SpawnError: If the binary could not be started.
        """
        timeout = timeout_seconds if timeout_seconds is not None else self._timeout_seconds
        cmd = [self._binary, subcommand, *args]

        if self._shutdown_event is not None and self._shutdown_event.is_set():
            raise ProcessKilled(
                f"{subcommand} not started, shutdown in progress",
                phase=subcommand,
                reason="cancelled",
            )

        logger.info(
            "Running terraform",
            extra={"subcommand": subcommand, "directory": str(directory), "timeout_seconds": timeout},
        )

        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=directory,
                env=self._build_env(env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            # FileNotFoundError, PermissionError and friends: binary missing or not runnable
            raise SpawnError(f"Cannot start {self._binary} {subcommand}: {e}", phase=subcommand) from e

        communicate = asyncio.ensure_future(process.communicate())
        waiters: set[asyncio.Future] = {communicate}
        shutdown_wait: asyncio.Future | None = None
        if self._shutdown_event is not None:
            shutdown_wait = asyncio.ensure_future(self._shutdown_event.wait())
            waiters.add(shutdown_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await self._terminate(process, communicate)
            raise
        finally:
            if shutdown_wait is not None:
                shutdown_wait.cancel()

        if communicate not in done:
            reason = "cancelled" if shutdown_wait is not None and shutdown_wait in done else "timeout"
            await self._terminate(process, communicate)
            elapsed = time.monotonic() - start
            logger.error(
                "terraform process killed",
                extra={
                    "subcommand": subcommand,
                    "directory": str(directory),
                    "reason": reason,
                    "duration_seconds": elapsed,
                },
            )
            if reason == "timeout":
                message = f"{subcommand} exceeded timeout of {timeout}s and was killed"
            else:
                message = f"{subcommand} was cancelled and killed"
            raise ProcessKilled(message, phase=subcommand, reason=reason)

        stdout_b, stderr_b = communicate.result()
        elapsed = time.monotonic() - start
        result = ProcessResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout_b.decode(errors="replace"),
            stderr=stderr_b.decode(errors="replace"),
            duration_seconds=elapsed,
        )

        logger.info(
            "terraform exited",
            extra={
                "subcommand": subcommand,
                "exit_code": result.exit_code,
                "duration_seconds": round(elapsed, 3),
            },
        )
        return result

    async def _terminate(
        self, process: asyncio.subprocess.Process, communicate: asyncio.Future
    ) -> None:
        """Kill the whole process group and reap the child."""
        try:
            # start_new_session makes the child a group leader: pgid == pid
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            process.kill()

        try:
            await asyncio.wait_for(asyncio.shield(communicate), timeout=KILL_GRACE_SECONDS)
        except TimeoutError:
            # A helper escaped the group and still holds the pipes open
            communicate.cancel()
            logger.warning("Output pipes still open after kill", extra={"pid": process.pid})
            try:
                await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
            except TimeoutError:
                logger.error("terraform process did not exit after SIGKILL", extra={"pid": process.pid})
