"""Tests for module materialization."""

from __future__ import annotations

from pathlib import Path

import pytest
from terraform_mock import FakeRunner

from tfoperator.errors import ProcessKilled, ResolutionError
from tfoperator.models import WorkspaceParameters
from tfoperator.source import SourceResolver
from tfoperator.workdir import WorkspaceDirectory

REF_V1 = "git::https://example.com/network.git?ref=v1"
REF_V2 = "git::https://example.com/network.git?ref=v2"


def inline(module: str, **fields: object) -> WorkspaceParameters:
    return WorkspaceParameters.model_validate({"source": "Inline", "module": module, **fields})


def remote(reference: str, **fields: object) -> WorkspaceParameters:
    return WorkspaceParameters.model_validate({"source": "Remote", "module": reference, **fields})


@pytest.fixture
def runner() -> FakeRunner:
    fake = FakeRunner()
    fake.remote_modules[REF_V1] = {
        "main.tf": "# v1\n",
        "modules/vpc/main.tf": "# vpc\n",
    }
    fake.remote_modules[REF_V2] = {
        "main.tf": "# v2\n",
        "outputs.tf": "# outputs\n",
    }
    return fake


@pytest.fixture
def directory(tmp_path: Path) -> WorkspaceDirectory:
    workdir = WorkspaceDirectory(tmp_path, "demo")
    workdir.ensure("uid-demo")
    return workdir


class TestInlineSource:
    """Tests for inline modules."""

    @pytest.mark.asyncio
    async def test_writes_main_tf(self, runner: FakeRunner, directory: WorkspaceDirectory) -> None:
        changed = await SourceResolver(runner).resolve(inline("# hello\n"), directory)

        assert changed is True
        assert directory.main_path.read_text() == "# hello\n"
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_unchanged_module_not_rewritten(
        self, runner: FakeRunner, directory: WorkspaceDirectory
    ) -> None:
        """Test that an identical module leaves the file untouched."""
        resolver = SourceResolver(runner)
        await resolver.resolve(inline("# hello\n"), directory)
        mtime = directory.main_path.stat().st_mtime_ns

        changed = await resolver.resolve(inline("# hello\n"), directory)

        assert changed is False
        assert directory.main_path.stat().st_mtime_ns == mtime

    @pytest.mark.asyncio
    async def test_changed_module_rewritten(
        self, runner: FakeRunner, directory: WorkspaceDirectory
    ) -> None:
        resolver = SourceResolver(runner)
        await resolver.resolve(inline("# one\n"), directory)

        changed = await resolver.resolve(inline("# two\n"), directory)

        assert changed is True
        assert directory.main_path.read_text() == "# two\n"

    @pytest.mark.asyncio
    async def test_missing_entrypoint(self, runner: FakeRunner, directory: WorkspaceDirectory) -> None:
        with pytest.raises(ResolutionError) as exc_info:
            await SourceResolver(runner).resolve(inline("# x", entrypoint="envs/prod"), directory)

        assert "envs/prod" in str(exc_info.value)


class TestRemoteSource:
    """Tests for remote modules fetched with init -from-module."""

    @pytest.mark.asyncio
    async def test_fetches_module(
        self, runner: FakeRunner, directory: WorkspaceDirectory, tmp_path: Path
    ) -> None:
        changed = await SourceResolver(runner).resolve(
            remote(REF_V1), directory, env={"GIT_TOKEN": "t"}
        )

        assert changed is True
        assert (directory.path / "main.tf").read_text() == "# v1\n"
        assert (directory.path / "modules" / "vpc" / "main.tf").exists()
        assert directory.read_source_marker() == {"source": REF_V1, "files": ["main.tf", "modules"]}

        (call,) = runner.calls
        assert call.subcommand == "init"
        assert f"-from-module={REF_V1}" in call.args
        assert "-backend=false" in call.args
        assert call.env == {"GIT_TOKEN": "t"}
        assert call.directory != directory.path
        # Staging directory is cleaned up
        assert not [p for p in tmp_path.iterdir() if p.name.startswith(".fetch-")]

    @pytest.mark.asyncio
    async def test_unchanged_reference_not_refetched(
        self, runner: FakeRunner, directory: WorkspaceDirectory
    ) -> None:
        resolver = SourceResolver(runner)
        await resolver.resolve(remote(REF_V1), directory)

        changed = await resolver.resolve(remote(REF_V1), directory)

        assert changed is False
        assert len(runner.calls) == 1

    @pytest.mark.asyncio
    async def test_new_reference_replaces_module_files(
        self, runner: FakeRunner, directory: WorkspaceDirectory
    ) -> None:
        """Test that a new ref swaps module files but keeps state and provider cache."""
        resolver = SourceResolver(runner)
        await resolver.resolve(remote(REF_V1), directory)
        (directory.path / "terraform.tfstate").write_text('{"version": 4}')
        (directory.path / ".terraform").mkdir()

        changed = await resolver.resolve(remote(REF_V2), directory)

        assert changed is True
        assert (directory.path / "main.tf").read_text() == "# v2\n"
        assert (directory.path / "outputs.tf").exists()
        assert not (directory.path / "modules").exists()
        assert (directory.path / "terraform.tfstate").read_text() == '{"version": 4}'
        assert (directory.path / ".terraform").is_dir()
        assert directory.owner_path.exists()

    @pytest.mark.asyncio
    async def test_missing_checkout_refetched(
        self, runner: FakeRunner, directory: WorkspaceDirectory
    ) -> None:
        resolver = SourceResolver(runner)
        await resolver.resolve(remote(REF_V1), directory)
        (directory.path / "main.tf").unlink()

        changed = await resolver.resolve(remote(REF_V1), directory)

        assert changed is True
        assert (directory.path / "main.tf").exists()
        assert len(runner.calls) == 2

    @pytest.mark.asyncio
    async def test_fetch_failure(self, runner: FakeRunner, directory: WorkspaceDirectory) -> None:
        """Test that a failed fetch is a resolution error and leaves files alone."""
        resolver = SourceResolver(runner)
        await resolver.resolve(remote(REF_V1), directory)

        with pytest.raises(ResolutionError) as exc_info:
            await resolver.resolve(remote("git::https://example.com/missing.git"), directory)

        assert "Failed to download module" in str(exc_info.value)
        assert (directory.path / "main.tf").read_text() == "# v1\n"
        assert directory.read_source_marker() == {"source": REF_V1, "files": ["main.tf", "modules"]}

    @pytest.mark.asyncio
    async def test_killed_fetch(self, runner: FakeRunner, directory: WorkspaceDirectory) -> None:
        runner.script("init", raises=ProcessKilled("init exceeded timeout", phase="init"))

        with pytest.raises(ResolutionError) as exc_info:
            await SourceResolver(runner).resolve(remote(REF_V1), directory)

        assert "killed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_remote_entrypoint(self, runner: FakeRunner, directory: WorkspaceDirectory) -> None:
        await SourceResolver(runner).resolve(remote(REF_V1, entrypoint="modules/vpc"), directory)

        assert directory.working_dir("modules/vpc").is_dir()

    @pytest.mark.asyncio
    async def test_switch_to_inline_clears_checkout(
        self, runner: FakeRunner, directory: WorkspaceDirectory
    ) -> None:
        resolver = SourceResolver(runner)
        await resolver.resolve(remote(REF_V1), directory)

        changed = await resolver.resolve(inline("# inline\n"), directory)

        assert changed is True
        assert directory.main_path.read_text() == "# inline\n"
        assert not (directory.path / "modules").exists()
        assert directory.read_source_marker() is None
