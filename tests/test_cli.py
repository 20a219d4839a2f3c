"""Unit tests for CLI commands.

Tests for:
- render exit codes (completed, failed, interrupted)
- resolve-output dry run
- version and config show
"""

import asyncio
import json
import logging
from unittest import mock
from unittest.mock import AsyncMock, MagicMock

import pytest
from click.testing import CliRunner
from loguru import logger

from render_orchestrator.cli import cli
from render_orchestrator.config import Config
from render_orchestrator.protocol import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROGRESS,
    JOB_STARTED,
    JobEvent,
)


@pytest.fixture
def runner():
    """Create a CLI runner for testing."""
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI reconfigures logging on every invocation; undo it afterwards."""
    yield
    logger.remove()
    logging.getLogger().handlers.clear()


@pytest.fixture
def cfg():
    """Default configuration, never read from disk."""
    config = Config()
    with mock.patch("render_orchestrator.cli.get_config", return_value=config):
        yield config


def _fake_supervisor(*events, start_error=None):
    """ProcessSupervisor stand-in that replays ``events`` into the sink."""
    supervisor = MagicMock()

    async def start(command, sink=None):
        if start_error is not None:
            raise start_error
        for event in events:
            sink(event)
        return "123"

    supervisor.start = AsyncMock(side_effect=start)
    supervisor.wait_closed = AsyncMock()
    return supervisor


STARTED = JobEvent(
    JOB_STARTED,
    "123",
    {"effective_command": "blender -b a.blend -f 1", "output_file": "/tmp/o0001.png"},
)
PROGRESS = JobEvent(
    JOB_PROGRESS, "123", {"progress": 100.0, "current_frame": 1, "total_frames": 1}
)


class TestRenderCommand:
    """Tests for 'render-orchestrator render'."""

    def test_completed_job_exits_zero(self, runner, cfg):
        supervisor = _fake_supervisor(
            STARTED, PROGRESS, JobEvent(JOB_COMPLETED, "123", {"exit_code": 0})
        )
        with mock.patch(
            "render_orchestrator.cli.ProcessSupervisor", return_value=supervisor
        ):
            result = runner.invoke(cli, ["render", "blender -b a.blend -f 1"])

        assert result.exit_code == 0
        assert "Started job 123" in result.output
        assert "100.00%" in result.output
        assert "Job 123 completed" in result.output
        supervisor.start.assert_awaited_once()
        assert supervisor.start.call_args.args == ("blender -b a.blend -f 1",)

    def test_failed_job_exits_one(self, runner, cfg):
        supervisor = _fake_supervisor(
            STARTED, JobEvent(JOB_FAILED, "123", {"error": "Segmentation fault"})
        )
        with mock.patch(
            "render_orchestrator.cli.ProcessSupervisor", return_value=supervisor
        ):
            result = runner.invoke(cli, ["render", "blender -b a.blend -f 1"])

        assert result.exit_code == 1
        assert "Segmentation fault" in result.output

    def test_json_output(self, runner, cfg):
        supervisor = _fake_supervisor(
            STARTED, JobEvent(JOB_COMPLETED, "123", {"exit_code": 0})
        )
        with mock.patch(
            "render_orchestrator.cli.ProcessSupervisor", return_value=supervisor
        ):
            result = runner.invoke(
                cli, ["--log-level", "error", "render", "--json", "x -f 1"]
            )

        assert result.exit_code == 0
        lines = [json.loads(line) for line in result.output.splitlines() if line]
        assert [line["type"] for line in lines] == ["job-started", "job-completed"]
        assert lines[0]["id"] == "123"

    def test_spawn_error_exits_one(self, runner, cfg):
        supervisor = _fake_supervisor(start_error=FileNotFoundError("no shell"))
        with mock.patch(
            "render_orchestrator.cli.ProcessSupervisor", return_value=supervisor
        ):
            result = runner.invoke(cli, ["render", "x -f 1"])

        assert result.exit_code == 1

    def test_interrupt_stops_all_and_exits_130(self, runner, cfg):
        supervisor = _fake_supervisor(STARTED)
        supervisor.wait_closed = AsyncMock(side_effect=asyncio.CancelledError())

        def run(coro):
            # Drive the coroutine like asyncio.run does after Ctrl+C
            loop = asyncio.new_event_loop()
            try:
                loop.run_until_complete(coro)
            except asyncio.CancelledError:
                raise KeyboardInterrupt()
            finally:
                loop.close()

        with mock.patch(
            "render_orchestrator.cli.ProcessSupervisor", return_value=supervisor
        ), mock.patch("render_orchestrator.cli.asyncio.run", side_effect=run):
            result = runner.invoke(cli, ["render", "x -f 1"])

        assert result.exit_code == 130
        supervisor.stop_all.assert_called_once()

    def test_relay_is_started_and_cleaned_up(self, runner, cfg):
        supervisor = _fake_supervisor(JobEvent(JOB_COMPLETED, "123", {"exit_code": 0}))
        relay = MagicMock()
        relay.async_cleanup = AsyncMock()
        with mock.patch(
            "render_orchestrator.cli.ProcessSupervisor", return_value=supervisor
        ), mock.patch(
            "render_orchestrator.cli.RemoteRelay", return_value=relay
        ) as relay_cls:
            result = runner.invoke(cli, ["render", "--relay", "x -f 1"])

        assert result.exit_code == 0
        relay_cls.assert_called_once_with(
            supervisor,
            publish_address=cfg.relay.publish_address,
            control_address=cfg.relay.control_address,
        )
        relay.start_publisher.assert_called_once()
        relay.start_control_listener_task.assert_called_once()
        relay.async_cleanup.assert_awaited_once()


class TestResolveOutputCommand:
    def test_prints_rewritten_command(self, runner, cfg, tmp_path):
        (tmp_path / "out_0001.png").write_bytes(b"png")
        result = runner.invoke(
            cli, ["resolve-output", f"blender -b a.blend -o {tmp_path}/out_ -f 1"]
        )

        assert result.exit_code == 0
        assert f'-o "{tmp_path}/out_1"' in result.output

    def test_unchanged_command(self, runner, cfg):
        result = runner.invoke(cli, ["resolve-output", "blender -b a.blend -f 1"])
        assert result.exit_code == 0
        assert result.output.strip() == "blender -b a.blend -f 1"


class TestVersionCommand:
    def test_prints_version(self, runner, cfg):
        supervisor = MagicMock()
        supervisor.get_version = AsyncMock(return_value="4.2.1")
        with mock.patch(
            "render_orchestrator.cli.ProcessSupervisor", return_value=supervisor
        ):
            result = runner.invoke(cli, ["version", "/opt/blender/blender"])

        assert result.exit_code == 0
        assert result.output.strip() == "4.2.1"
        supervisor.get_version.assert_awaited_once_with("/opt/blender/blender")


class TestConfigShow:
    def test_toml_like_output(self, runner, cfg):
        result = runner.invoke(cli, ["config", "show"])
        assert result.exit_code == 0
        assert "[supervisor]" in result.output
        assert "kill_grace_period = 2.0" in result.output
        assert 'output_path = "-o"' in result.output

    def test_json_output(self, runner, cfg):
        result = runner.invoke(cli, ["config", "show", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["relay"]["publish_address"] == "tcp://127.0.0.1:9101"


class TestLogLevel:
    def test_accepts_log_level(self, runner, cfg):
        result = runner.invoke(cli, ["--log-level", "debug", "config", "show"])
        assert result.exit_code == 0

    def test_rejects_unknown_level(self, runner, cfg):
        result = runner.invoke(cli, ["--log-level", "loud", "config", "show"])
        assert result.exit_code != 0
