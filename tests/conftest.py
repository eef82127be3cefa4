"""Shared pytest fixtures for the create-ao-app test suite.

Provides reusable fixtures for:
- Temporary project directories with Lua sources and ao.config.yml
- Record stores and settings pointing into tmp_path
- Supervisors wired to those stores
- Mock subprocess helpers
"""

from __future__ import annotations

import textwrap
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from create_ao_app.config import Settings
from create_ao_app.process.records import ProcessRecord, RecordStore, ScheduleRecord
from create_ao_app.process.supervisor import ProcessSupervisor


# ---------------------------------------------------------------------------
# Paths & Directories
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """Temporary project directory (auto-cleanup)."""
    project_dir = tmp_path / "test-project"
    project_dir.mkdir()
    yield project_dir


@pytest.fixture
def lua_project(tmp_project_dir: Path) -> Path:
    """Project with Lua files at several depths, one of them hidden."""
    (tmp_project_dir / "process.lua").write_text("Handlers.add('ping')\n")
    (tmp_project_dir / "ao" / "handlers").mkdir(parents=True)
    (tmp_project_dir / "ao" / "handlers" / "tick.lua").write_text("-- tick\n")
    (tmp_project_dir / ".hidden").mkdir()
    (tmp_project_dir / ".hidden" / "secret.lua").write_text("-- hidden\n")
    (tmp_project_dir / "README.md").write_text("# Project\n")
    return tmp_project_dir


@pytest.fixture
def sample_config_yaml() -> str:
    return textwrap.dedent(
        """\
        luaFiles:
          - process.lua
          - ao/handlers/tick.lua
        packageManager: npm
        framework: nextjs
        processName: my-process
        ports:
          dev: 4000
        tags:
          Environment: staging
          App-Name: demo
        monitor: true
        scheduler:
          interval: 5000
          tick: onTick
          maxRetries: 2
          onError: onFailure
        """
    )


# ---------------------------------------------------------------------------
# Records & Settings
# ---------------------------------------------------------------------------

@pytest.fixture
def process_store(tmp_path: Path) -> RecordStore[ProcessRecord]:
    return RecordStore(tmp_path / "ao-processes.json", ProcessRecord)


@pytest.fixture
def schedule_store(tmp_path: Path) -> RecordStore[ScheduleRecord]:
    return RecordStore(tmp_path / "ao-schedule.json", ScheduleRecord)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings whose record files live in tmp_path."""
    return Settings(
        process_file=tmp_path / "ao-processes.json",
        schedule_file=tmp_path / "ao-schedule.json",
        eval_timeout=5.0,
        readiness_timeout=5.0,
    )


@pytest.fixture
def supervisor(process_store: RecordStore[ProcessRecord]) -> ProcessSupervisor:
    return ProcessSupervisor(worker_binary="aos", store=process_store, eval_timeout=5.0)


# ---------------------------------------------------------------------------
# Mock Subprocess (generic)
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_subprocess():
    """Mock asyncio subprocess for testing command execution.

    Returns a factory that creates mock subprocess instances with configurable
    stdout, stderr, and return codes.

    Usage:
        def test_command(mock_subprocess):
            proc = mock_subprocess(stdout="output", returncode=0)
            with patch("asyncio.create_subprocess_exec", return_value=proc):
                ...
    """
    def factory(
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        pid: int = 99999,
    ) -> AsyncMock:
        mock_proc = AsyncMock()

        # Like a real child, the exit code is only known once it is awaited.
        async def communicate(*args, **kwargs):
            mock_proc.returncode = returncode
            return (stdout.encode("utf-8"), stderr.encode("utf-8"))

        async def wait():
            mock_proc.returncode = returncode
            return returncode

        mock_proc.communicate = AsyncMock(side_effect=communicate)
        mock_proc.returncode = None
        mock_proc.pid = pid
        mock_proc.kill = MagicMock()
        mock_proc.terminate = MagicMock()
        mock_proc.wait = AsyncMock(side_effect=wait)
        return mock_proc

    return factory
