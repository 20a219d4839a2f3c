"""Unified CLI for render-orchestrator using Click."""

import asyncio
import json
import logging
import sys

import click
from loguru import logger

from render_orchestrator.config import Config, get_config
from render_orchestrator.errors import ConfigError, JobError
from render_orchestrator.jobs.output_paths import resolve_output_collision
from render_orchestrator.protocol import (
    JOB_COMPLETED,
    JOB_DIAGNOSTIC,
    JOB_FAILED,
    JOB_OUTPUT,
    JOB_PROGRESS,
    JOB_STARTED,
    JOB_STOPPED,
    JobEvent,
)
from render_orchestrator.worker.remote_relay import RemoteRelay
from render_orchestrator.worker.supervisor import ProcessSupervisor

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# Conventional exit status after SIGINT
EXIT_INTERRUPTED = 130


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Minimum level of log messages written to stderr.",
)
def cli(log_level):
    level = log_level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level)
    logging.basicConfig(level=getattr(logging, level), force=True)


def _load_config() -> Config:
    try:
        return get_config()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)


# =============================================================================
# Render
# =============================================================================


def _print_event(event: JobEvent, as_json: bool) -> None:
    if as_json:
        click.echo(event.to_json())
        return

    data = event.data
    if event.type == JOB_STARTED:
        click.echo(f"Started job {event.job_id}: {data['effective_command']}")
        if data.get("output_file"):
            click.echo(f"Output: {data['output_file']}")
    elif event.type == JOB_PROGRESS:
        done = data.get("frames_completed", 0)
        click.echo(
            f"[{event.job_id}] {data['progress']:6.2f}%  "
            f"frame {data['current_frame']} ({done}/{data['total_frames']} done)"
        )
    elif event.type == JOB_OUTPUT:
        logger.debug(f"[{event.job_id}] {data['stream']}: {data['line']}")
    elif event.type == JOB_DIAGNOSTIC:
        click.echo(f"[{event.job_id}] {data['stream']}: {data['message']}", err=True)
    elif event.type == JOB_COMPLETED:
        click.echo(f"Job {event.job_id} completed: {data.get('output_file') or ''}")
    elif event.type == JOB_FAILED:
        click.echo(f"Job {event.job_id} failed: {data['error']}", err=True)
    elif event.type == JOB_STOPPED:
        click.echo(f"Job {event.job_id} stopped", err=True)


async def _run_render(command: str, config: Config, as_json: bool, use_relay: bool):
    """Run one job to its end.

    Returns:
        The job id.

    Raises:
        JobError: If the job failed or was stopped.
    """
    supervisor = ProcessSupervisor(config=config.supervisor, flags=config.flags)
    relay = None
    if use_relay:
        relay = RemoteRelay(
            supervisor,
            publish_address=config.relay.publish_address,
            control_address=config.relay.control_address,
        )
        relay.start_publisher()
        relay.start_control_listener_task()

    outcome: list[JobEvent] = []

    def sink(event: JobEvent):
        if event.is_terminal:
            outcome.append(event)
        _print_event(event, as_json)

    try:
        job_id = await supervisor.start(command, sink=sink)
        await supervisor.wait_closed()
    except asyncio.CancelledError:
        logger.warning("Interrupted, stopping all renders")
        supervisor.stop_all()
        raise
    finally:
        if relay is not None:
            await relay.async_cleanup()

    if not outcome:
        raise JobError("Job ended without a result", job_id=job_id)
    final = outcome[-1]
    if final.type == JOB_FAILED:
        raise JobError(final.data.get("error", "failed"), job_id=job_id)
    if final.type == JOB_STOPPED:
        raise JobError("Job was stopped", job_id=job_id)
    return job_id


@cli.command()
@click.argument("command")
@click.option("--json", "as_json", is_flag=True, help="Print every event as a JSON line.")
@click.option(
    "--relay",
    "use_relay",
    is_flag=True,
    help="Publish events and accept stop commands over ZMQ.",
)
def render(command, as_json, use_relay):
    """Run a render job and follow it to completion.

    COMMAND is the full worker launch string. If its output path would
    overwrite existing files, a numeric suffix is added first.

    Exits with 0 when the job completes, 1 when it fails or is stopped, and
    130 after Ctrl+C.

    Examples:

        render-orchestrator render 'blender -b scene.blend -o /tmp/out_ -s 1 -e 10 -a'

        render-orchestrator render --json 'blender -b scene.blend -f 1'
    """
    config = _load_config()
    try:
        job_id = asyncio.run(_run_render(command, config, as_json, use_relay))
        logger.info(f"Job {job_id} finished")
    except KeyboardInterrupt:
        logger.info("Render cancelled by user")
        sys.exit(EXIT_INTERRUPTED)
    except JobError as e:
        logger.error(f"Job {e.job_id}: {e}")
        sys.exit(1)
    except OSError as e:
        logger.error(f"Failed to start render: {e}")
        sys.exit(1)


# =============================================================================
# Utilities
# =============================================================================


@cli.command(name="resolve-output")
@click.argument("command")
def resolve_output(command):
    """Print COMMAND as it would be launched (dry run).

    Existing outputs are detected the same way as in ``render`` and the
    output flag is rewritten if needed. Nothing is executed.
    """
    config = _load_config()
    result = resolve_output_collision(
        command, config.flags, config.supervisor.frame_padding
    )
    if result.renamed:
        logger.info(f"{result.original_path} exists, using {result.resolved_path}")
    click.echo(result.command)


@cli.command()
@click.argument("executable")
def version(executable):
    """Print the version reported by a worker EXECUTABLE."""
    config = _load_config()
    supervisor = ProcessSupervisor(config=config.supervisor, flags=config.flags)
    click.echo(asyncio.run(supervisor.get_version(executable)))


@cli.group(name="config")
def config_group():
    """Inspect configuration."""
    pass


@config_group.command(name="show")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON.")
def config_show(as_json):
    """Print the effective configuration (file plus environment overrides)."""
    config = _load_config()
    data = config.to_dict()
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    source = config.config_file or "defaults"
    click.echo(f"# source: {source}")
    for section, values in data.items():
        click.echo(f"\n[{section}]")
        for key, value in values.items():
            click.echo(f"{key} = {json.dumps(value)}")


if __name__ == "__main__":
    cli()
