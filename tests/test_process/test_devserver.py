"""Unit tests for dev server sequencing (create_ao_app.process.devserver).

Tests cover:
- extract_url
- read_chunks decoding
- DevServerSequencer.run: command, environment, readiness, worker hand-off
- Failure paths: spawn failure, readiness timeout, early exit, worker failure
- shutdown
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from create_ao_app.config import AOConfig, PortConfig, Settings
from create_ao_app.process.devserver import DevServerSequencer, extract_url, read_chunks
from create_ao_app.process.errors import (
    DevServerExited,
    ReadinessTimeout,
    SpawnFailed,
)
from create_ao_app.process.launch import LaunchSpec


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dev_process(output: bytes | None, returncode: int = 0, pid: int = 5555) -> MagicMock:
    """Fake dev server whose stdout yields *output* then EOF.

    ``output=None`` leaves the stream open and silent.
    """
    reader = asyncio.StreamReader()
    if output is not None:
        reader.feed_data(output)
        reader.feed_eof()

    process = MagicMock()
    process.pid = pid
    process.returncode = None
    process.stdout = reader
    process.wait = AsyncMock(return_value=returncode)
    return process


def _supervisor() -> MagicMock:
    supervisor = MagicMock()
    supervisor.start = AsyncMock(return_value=MagicMock(name="worker-handle"))
    supervisor.stop = MagicMock(return_value=True)
    return supervisor


READY_OUTPUT = (
    b"> next dev\n"
    b"   \x1b[1m\xe2\x96\xb2 Next.js 14.1.0\x1b[0m\n"
    b"   - Local:        http://localhost:3000\n"
)


# ---------------------------------------------------------------------------
# extract_url / read_chunks
# ---------------------------------------------------------------------------


class TestExtractUrl:
    @pytest.mark.unit
    def test_plain(self):
        assert extract_url("ready on http://localhost:3000/") == "http://localhost:3000/"

    @pytest.mark.unit
    def test_ansi_colours_removed(self):
        text = "Local: \x1b[36mhttp://localhost:\x1b[1m5173\x1b[22m/\x1b[39m"
        assert extract_url(text) == "http://localhost:5173/"

    @pytest.mark.unit
    def test_trailing_punctuation_stripped(self):
        assert extract_url("(see http://127.0.0.1:8080).") == "http://127.0.0.1:8080"

    @pytest.mark.unit
    def test_no_url(self):
        assert extract_url("compiling...") is None


class TestReadChunks:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_multibyte_split_across_reads(self):
        reader = asyncio.StreamReader()
        reader.feed_data("✓ ok".encode("utf-8"))
        reader.feed_eof()

        chunks = [chunk async for chunk in read_chunks(reader, size=2, echo=False)]
        assert "".join(chunks) == "✓ ok"
        assert "" not in chunks

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_stream(self):
        reader = asyncio.StreamReader()
        reader.feed_eof()
        assert [chunk async for chunk in read_chunks(reader, echo=False)] == []


# ---------------------------------------------------------------------------
# DevServerSequencer
# ---------------------------------------------------------------------------


class TestCommandAndEnv:
    @pytest.mark.unit
    def test_build_command(self):
        sequencer = DevServerSequencer(_supervisor())
        assert sequencer.build_command(AOConfig(package_manager="yarn")) == ["yarn", "run", "dev"]

    @pytest.mark.unit
    def test_build_env(self):
        sequencer = DevServerSequencer(_supervisor())
        config = AOConfig(ports=PortConfig(dev=4000), env={"API_URL": "http://api"})
        assert sequencer.build_env(config) == {"API_URL": "http://api", "PORT": "4000"}

    @pytest.mark.unit
    def test_from_settings(self, settings: Settings):
        sequencer = DevServerSequencer.from_settings(_supervisor(), settings, verify_url=True)
        assert sequencer.ready_signal == "http://localhost:"
        assert sequencer.timeout == settings.readiness_timeout
        assert sequencer.verify_url is True


class TestRun:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ready_then_worker_started(self, tmp_project_dir: Path):
        supervisor = _supervisor()
        process = _dev_process(READY_OUTPUT)
        config = AOConfig(package_manager="npm", ports=PortConfig(dev=4000))
        spec = LaunchSpec(name="p1")

        with patch("asyncio.create_subprocess_exec", return_value=process) as mock_exec:
            sequencer = DevServerSequencer(supervisor, timeout=1.0)
            handle = await sequencer.run(tmp_project_dir, config, spec)

        assert mock_exec.call_args.args == ("npm", "run", "dev")
        kwargs = mock_exec.call_args.kwargs
        assert kwargs["cwd"] == str(tmp_project_dir.resolve())
        assert kwargs["env"]["PORT"] == "4000"
        assert kwargs["start_new_session"] is True
        assert kwargs["stderr"] == asyncio.subprocess.STDOUT

        assert handle.url == "http://localhost:3000"
        assert handle.worker is supervisor.start.return_value
        supervisor.start.assert_awaited_once_with(tmp_project_dir.resolve(), config, spec)

        assert await sequencer.wait() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_default_launch_spec_from_config(self, tmp_project_dir: Path):
        supervisor = _supervisor()
        config = AOConfig(process_name="cfg", lua_files=["process.lua"])

        with patch("asyncio.create_subprocess_exec", return_value=_dev_process(READY_OUTPUT)):
            await DevServerSequencer(supervisor, timeout=1.0).run(tmp_project_dir, config)

        spec = supervisor.start.call_args.args[2]
        assert spec.name == "cfg"
        assert spec.load == ("process.lua",)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_with_ao_disabled(self, tmp_project_dir: Path):
        supervisor = _supervisor()
        config = AOConfig(run_with_ao=False)

        with patch("asyncio.create_subprocess_exec", return_value=_dev_process(READY_OUTPUT)):
            handle = await DevServerSequencer(supervisor, timeout=1.0).run(tmp_project_dir, config)

        supervisor.start.assert_not_called()
        assert handle.worker is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_explicit_start_worker_overrides_config(self, tmp_project_dir: Path):
        supervisor = _supervisor()

        with patch("asyncio.create_subprocess_exec", return_value=_dev_process(READY_OUTPUT)):
            await DevServerSequencer(supervisor, timeout=1.0).run(
                tmp_project_dir, AOConfig(), start_worker=False
            )

        supervisor.start.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_url(self, tmp_project_dir: Path):
        supervisor = _supervisor()
        health = AsyncMock(return_value=True)

        with patch("asyncio.create_subprocess_exec", return_value=_dev_process(READY_OUTPUT)):
            with patch("create_ao_app.process.devserver.wait_for_health", health):
                sequencer = DevServerSequencer(supervisor, timeout=1.0, verify_url=True)
                await sequencer.run(tmp_project_dir, AOConfig(), start_worker=False)

        assert health.call_args.args[0] == "http://localhost:3000"


    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_url_split_across_chunks(self, tmp_project_dir: Path):
        process = _dev_process(None)
        process.stdout.feed_data(b"  - Local:        http://localhost:30")

        def finish_line():
            process.stdout.feed_data(b"00\n  - Network: use --host to expose\n")
            process.stdout.feed_eof()

        asyncio.get_running_loop().call_later(0.05, finish_line)

        with patch("asyncio.create_subprocess_exec", return_value=process):
            sequencer = DevServerSequencer(_supervisor(), timeout=1.0)
            handle = await sequencer.run(tmp_project_dir, AOConfig(), start_worker=False)

        assert handle.url == "http://localhost:3000"
        assert await sequencer.wait() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unterminated_url_line_used_after_grace(self, tmp_project_dir: Path):
        process = _dev_process(None)
        process.stdout.feed_data(b"ready at http://localhost:5173")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with patch("create_ao_app.process.devserver.URL_LINE_GRACE", 0.05):
                sequencer = DevServerSequencer(_supervisor(), timeout=1.0)
                handle = await sequencer.run(tmp_project_dir, AOConfig(), start_worker=False)

        assert handle.url == "http://localhost:5173"
        process.stdout.feed_eof()
        assert await sequencer.wait() == 0


class TestRunFailures:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_package_manager_missing(self, tmp_project_dir: Path):
        supervisor = _supervisor()
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError):
            with pytest.raises(SpawnFailed, match="pnpm"):
                await DevServerSequencer(supervisor).run(tmp_project_dir, AOConfig())
        supervisor.start.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_kills_server_and_skips_worker(self, tmp_project_dir: Path):
        supervisor = _supervisor()
        process = _dev_process(None)

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with patch("os.killpg") as mock_killpg:
                with pytest.raises(ReadinessTimeout):
                    await DevServerSequencer(supervisor, timeout=0.1).run(
                        tmp_project_dir, AOConfig()
                    )

        mock_killpg.assert_called_once_with(5555, signal.SIGTERM)
        supervisor.start.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exit_before_ready(self, tmp_project_dir: Path):
        supervisor = _supervisor()
        process = _dev_process(b"Error: Cannot find module 'next'\n", returncode=1)

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(DevServerExited) as exc_info:
                await DevServerSequencer(supervisor, timeout=1.0).run(tmp_project_dir, AOConfig())

        assert exc_info.value.returncode == 1
        assert exc_info.value.operation == "dev"
        supervisor.start.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_closed_output_with_live_server_is_stopped(self, tmp_project_dir: Path):
        supervisor = _supervisor()
        process = _dev_process(b"compiling...\n")
        signalled = asyncio.Event()

        async def wait():
            # Stays up until its process group is signalled.
            await signalled.wait()
            process.returncode = -signal.SIGTERM
            return process.returncode

        process.wait = AsyncMock(side_effect=wait)
        loop = asyncio.get_running_loop()
        started = loop.time()

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with patch("os.killpg", side_effect=lambda pid, sig: signalled.set()) as mock_killpg:
                with pytest.raises(DevServerExited) as exc_info:
                    await DevServerSequencer(supervisor, timeout=0.2).run(
                        tmp_project_dir, AOConfig()
                    )

        assert loop.time() - started < 5
        mock_killpg.assert_called_once_with(5555, signal.SIGTERM)
        assert exc_info.value.returncode == -signal.SIGTERM
        assert "stopped" in str(exc_info.value)
        supervisor.start.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_worker_failure_terminates_server(self, tmp_project_dir: Path):
        supervisor = _supervisor()
        supervisor.start = AsyncMock(side_effect=SpawnFailed("aos missing", operation="start"))

        with patch("asyncio.create_subprocess_exec", return_value=_dev_process(READY_OUTPUT)):
            with patch("os.killpg") as mock_killpg:
                with pytest.raises(SpawnFailed):
                    await DevServerSequencer(supervisor, timeout=1.0).run(
                        tmp_project_dir, AOConfig()
                    )

        mock_killpg.assert_called_once_with(5555, signal.SIGTERM)
        supervisor.stop.assert_not_called()


class TestShutdown:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shutdown_stops_server_and_worker(self, tmp_project_dir: Path):
        supervisor = _supervisor()

        with patch("asyncio.create_subprocess_exec", return_value=_dev_process(READY_OUTPUT)):
            sequencer = DevServerSequencer(supervisor, timeout=1.0)
            await sequencer.run(tmp_project_dir, AOConfig())

        with patch("os.killpg") as mock_killpg:
            await sequencer.shutdown()

        mock_killpg.assert_called_once_with(5555, signal.SIGTERM)
        supervisor.stop.assert_called_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shutdown_skips_exited_server(self, tmp_project_dir: Path):
        supervisor = _supervisor()
        process = _dev_process(READY_OUTPUT)

        with patch("asyncio.create_subprocess_exec", return_value=process):
            sequencer = DevServerSequencer(supervisor, timeout=1.0)
            await sequencer.run(tmp_project_dir, AOConfig(), start_worker=False)

        process.returncode = 0
        with patch("os.killpg") as mock_killpg:
            await sequencer.shutdown()

        mock_killpg.assert_not_called()
        supervisor.stop.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shutdown_before_run_is_noop(self):
        supervisor = _supervisor()
        with patch("os.killpg") as mock_killpg:
            await DevServerSequencer(supervisor).shutdown()
        mock_killpg.assert_not_called()
        assert await DevServerSequencer(supervisor).wait() is None
