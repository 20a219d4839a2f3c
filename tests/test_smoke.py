"""Smoke tests for the render-orchestrator package.

These tests verify that the installed package is structurally sound: all
subpackages importable and the CLI entry point reachable. They guard against
packaging bugs where a subpackage (such as the namespace-style ``worker``
directory) is missing from the wheel.
"""

from click.testing import CliRunner

from render_orchestrator.cli import cli


# ── Subpackage imports ────────────────────────────────────────────────────────


class TestSubpackageImports:
    """Each render_orchestrator module must be importable without error."""

    def test_import_jobs(self):
        """render_orchestrator.jobs must be importable."""
        import render_orchestrator.jobs  # noqa: F401

    def test_import_supervisor(self):
        """ProcessSupervisor must be importable from render_orchestrator.worker."""
        from render_orchestrator.worker.supervisor import ProcessSupervisor  # noqa: F401

    def test_import_relay(self):
        """RemoteRelay must be importable (requires pyzmq)."""
        from render_orchestrator.worker.remote_relay import RemoteRelay  # noqa: F401

    def test_version_attribute(self):
        import render_orchestrator

        assert render_orchestrator.__version__


# ── CLI entry point ───────────────────────────────────────────────────────────


class TestCLIEntryPoint:
    """The CLI entry point must be reachable and respond to --help."""

    def test_main_help(self):
        """render-orchestrator --help must exit 0 and list core commands."""
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "render" in result.output
        assert "resolve-output" in result.output
        assert "version" in result.output
        assert "config" in result.output

    def test_render_help(self):
        """render-orchestrator render --help must exit 0."""
        runner = CliRunner()
        result = runner.invoke(cli, ["render", "--help"])
        assert result.exit_code == 0
        assert "--relay" in result.output
