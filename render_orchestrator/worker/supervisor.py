"""Supervision of render-worker processes.

This module launches worker command lines, streams their stdout/stderr
through the output parser and error classifier, keeps one JobRecord per
active job, and reports everything as JobEvents to a per-call sink and to the
shared EventBus.

All state lives on one asyncio event loop. Public methods must be called
from that loop; stream callbacks run on it too, so no further locking is
needed.
"""

import asyncio
import codecs
import logging
import os
import re
import signal
import subprocess
import sys
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable, Optional

from render_orchestrator.config import CommandFlags, SupervisorConfig, get_config
from render_orchestrator.jobs.command import (
    OutputInfo,
    extract_output_info,
    parse_frame_range,
    predict_output_path,
)
from render_orchestrator.jobs.output_paths import resolve_output_collision
from render_orchestrator.jobs.record import JobRecord, JobStatus
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
from render_orchestrator.worker.error_classifier import (
    FloodGuard,
    Severity,
    classify_line,
)
from render_orchestrator.worker.event_bus import EventBus
from render_orchestrator.worker.output_parser import (
    CompositingFact,
    Fact,
    FrameCompletedFact,
    FrameFact,
    MemoryFact,
    ParserState,
    ProgressFact,
    QuitFact,
    RemainingTimeFact,
    SampleFact,
    TileFact,
    parse_line,
    split_lines,
)

Sink = Callable[[JobEvent], None]

STDOUT = "stdout"
STDERR = "stderr"

UNKNOWN_VERSION = "Unknown"
VERSION_PATTERN = re.compile(r"Blender\s+(\d+(?:\.\d+)+)")
GENERIC_VERSION_PATTERN = re.compile(r"\d+(?:\.\d+)+")


def parse_version(output: str) -> str:
    """Return the first version token in ``output`` or ``"Unknown"``."""
    match = VERSION_PATTERN.search(output)
    if match:
        return match.group(1)
    match = GENERIC_VERSION_PATTERN.search(output)
    return match.group(0) if match else UNKNOWN_VERSION


@dataclass
class _ActiveJob:
    """Runtime companions of a JobRecord while its process is supervised."""

    record: JobRecord
    sink: Optional[Sink]
    parser: ParserState
    flood_guard: FloodGuard
    output_info: Optional[OutputInfo] = None
    stderr_pending: str = ""


class ProcessSupervisor:
    """Launches, supervises and stops render-worker processes.

    Attributes:
        bus: EventBus receiving every job event except raw output lines.
        config: Supervisor tunables (grace period, flood guard, padding).
        flags: Launch-command flag spellings.
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        config: Optional[SupervisorConfig] = None,
        flags: Optional[CommandFlags] = None,
    ):
        """Initialize the supervisor.

        Args:
            bus: EventBus to publish on. A private bus is created if omitted.
            config: Supervisor tunables; defaults to the global configuration.
            flags: Flag spellings; default to the global configuration.
        """
        if config is None or flags is None:
            global_config = get_config()
            config = config or global_config.supervisor
            flags = flags or global_config.flags

        self.bus = bus or EventBus()
        self.config = config
        self.flags = flags

        self._jobs: dict[str, _ActiveJob] = {}
        self._manually_stopped: set[str] = set()
        self._pending_kills: dict[str, asyncio.TimerHandle] = {}
        self._monitors: set[asyncio.Task] = set()
        self._outputs: OrderedDict[str, dict] = OrderedDict()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # =========================================================================
    # Launch
    # =========================================================================

    def _spawn_kwargs(self) -> dict:
        # Own session so the whole shell/worker group can be signalled.
        if sys.platform == "win32":
            return {}
        return {"start_new_session": True}

    async def start(self, command: str, sink: Optional[Sink] = None) -> str:
        """Launch a render job.

        Resolves output-path collisions, spawns the worker through the shell
        with all three standard streams piped, registers the job and emits
        job-started and an initial job-progress at 0%. Returns as soon as the
        process exists; telemetry arrives later.

        Args:
            command: Worker launch string.
            sink: Optional callable receiving this job's events, including
                raw output lines.

        Returns:
            Job id (the worker's PID as a string).

        Raises:
            OSError: If the process could not be spawned.
        """
        self._loop = asyncio.get_running_loop()

        resolution = resolve_output_collision(
            command, self.flags, self.config.frame_padding
        )
        effective = resolution.command

        logging.info(f"[RUNNING] {effective}")
        try:
            process = await asyncio.create_subprocess_shell(
                effective,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self._spawn_kwargs(),
            )
        except OSError as e:
            logging.error(f"Failed to start render process: {e}")
            raise

        job_id = str(process.pid)
        logging.info(f"Process started with PID: {process.pid}")

        frame_range = parse_frame_range(effective, self.flags)
        record = JobRecord(
            id=job_id,
            raw_command=command,
            effective_command=effective,
            frame_range=frame_range,
            process=process,
        )
        info = extract_output_info(effective, self.flags)
        if info is not None:
            record.output_file = predict_output_path(
                info, frame_range.start, self.config.frame_padding
            )
            record.output_dir = info.output_dir
            record.is_video = info.is_video
            record.is_animation = info.is_animation

        job = _ActiveJob(
            record=record,
            sink=sink,
            parser=ParserState(frame_range=frame_range),
            flood_guard=FloodGuard(
                threshold=self.config.flood_threshold,
                window=self.config.flood_window,
            ),
            output_info=info,
        )
        self._jobs[job_id] = job

        self._emit(
            job,
            JOB_STARTED,
            {
                "command": command,
                "effective_command": effective,
                "start_time": record.start_time.isoformat(),
                "frame_range": frame_range.to_dict(),
                "output_file": record.output_file,
                "output_dir": record.output_dir,
                "is_video": record.is_video,
                "is_animation": record.is_animation,
            },
        )
        self._emit(job, JOB_PROGRESS, record.telemetry())

        task = asyncio.create_task(self._monitor(job, process))
        self._monitors.add(task)
        task.add_done_callback(self._monitors.discard)
        return job_id

    # =========================================================================
    # Stream handling
    # =========================================================================

    async def _monitor(self, job: _ActiveJob, process) -> None:
        """Drain both pipes, then report the exit code."""
        await asyncio.gather(
            self._read_stream(job, process.stdout, STDOUT),
            self._read_stream(job, process.stderr, STDERR),
        )
        logging.info(f"Waiting for job {job.record.id} to exit...")
        code = await process.wait()
        logging.info(f"Job {job.record.id} exited with return code: {code}")
        self._on_exit(job, code)

    async def _read_stream(self, job: _ActiveJob, stream, name: str) -> None:
        # Pipes keep being drained after a terminal transition so the worker
        # never blocks on a full pipe; the data is discarded.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await stream.read(self.config.read_size)
                if not chunk:
                    break
                if self._is_active(job):
                    self._handle_chunk(job, name, decoder.decode(chunk))
            if self._is_active(job):
                tail = decoder.decode(b"", final=True)
                self._handle_chunk(job, name, tail, final=True)
        except Exception as e:
            logging.exception(f"{name} reader failed for job {job.record.id}: {e}")

    def _handle_chunk(self, job: _ActiveJob, name: str, text: str, final=False):
        try:
            self._handle_text(job, name, text, final=final)
        except Exception as e:
            logging.exception(
                f"Failed to handle {name} output of job {job.record.id}: {e}"
            )

    def _handle_text(self, job: _ActiveJob, name: str, text: str, final=False):
        if name == STDOUT:
            lines, pending = split_lines(job.parser.pending, text)
            job.parser = replace(job.parser, pending="" if final else pending)
        else:
            lines, pending = split_lines(job.stderr_pending, text)
            job.stderr_pending = "" if final else pending
        if final and pending.strip():
            lines.append(pending)
        self._handle_lines(job, name, lines)

    def _handle_lines(self, job: _ActiveJob, stream: str, lines: list[str]) -> None:
        record = job.record
        progress_dirty = False

        for line in lines:
            if not self._is_active(job):
                return
            severity = classify_line(line)
            if stream == STDOUT or severity is not Severity.CRITICAL:
                self._emit(
                    job, JOB_OUTPUT, {"line": line, "stream": stream}, sink_only=True
                )

            quit_seen = False
            if stream == STDOUT:
                try:
                    facts, job.parser = parse_line(job.parser, line)
                except Exception as e:
                    logging.exception(
                        f"Could not parse output of job {record.id}: {line!r}: {e}"
                    )
                    facts = []
                for fact in facts:
                    if isinstance(fact, QuitFact):
                        quit_seen = True
                    else:
                        self._apply_fact(job, fact)
                        progress_dirty = True

            if severity is Severity.CRITICAL:
                if progress_dirty:
                    self._emit(job, JOB_PROGRESS, record.telemetry())
                logging.error(f"Job {record.id} had critical {stream} error: {line}")
                self._fail(job, line)
                return

            if severity is Severity.DIAGNOSTIC:
                self._emit(job, JOB_DIAGNOSTIC, {"message": line, "stream": stream})
                if job.flood_guard.record():
                    if progress_dirty:
                        self._emit(job, JOB_PROGRESS, record.telemetry())
                    message = (
                        f"Diagnostic flood: more than {job.flood_guard.threshold} "
                        f"error/warning lines in {job.flood_guard.window:g}s"
                    )
                    logging.error(f"Job {record.id}: {message}; terminating")
                    self._terminate(job)
                    self._fail(job, message)
                    return

            if quit_seen:
                if progress_dirty:
                    self._emit(job, JOB_PROGRESS, record.telemetry())
                logging.info(f"Job {record.id} reported quit")
                self._complete(job, 0)
                return

        if progress_dirty:
            self._emit(job, JOB_PROGRESS, record.telemetry())

    def _apply_fact(self, job: _ActiveJob, fact: Fact) -> None:
        record = job.record
        if isinstance(fact, FrameFact):
            record.current_frame = (
                fact.frame
                if job.parser.current_frame is None
                else job.parser.current_frame
            )
            if job.output_info is not None:
                record.output_file = predict_output_path(
                    job.output_info, record.current_frame, self.config.frame_padding
                )
        elif isinstance(fact, MemoryFact):
            record.memory_usage_mb = fact.current_mb
            if fact.peak_mb is not None:
                record.peak_memory_mb = fact.peak_mb
        elif isinstance(fact, SampleFact):
            record.current_sample = fact.current
            record.total_samples = fact.total
        elif isinstance(fact, TileFact):
            record.current_tile = fact.current
            record.total_tiles = fact.total
        elif isinstance(fact, CompositingFact):
            record.in_compositing = True
            record.compositing_operation = fact.operation
        elif isinstance(fact, RemainingTimeFact):
            record.remaining_time = fact.text
        elif isinstance(fact, FrameCompletedFact):
            record.frames_completed = fact.frames_completed
            record.current_frame = fact.next_frame
        elif isinstance(fact, ProgressFact):
            record.progress = fact.progress
            record.frames_completed = fact.frames_completed

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    def _emit(
        self, job: _ActiveJob, event_type: str, data: dict, sink_only: bool = False
    ) -> None:
        event = JobEvent(type=event_type, job_id=job.record.id, data=data)
        if job.sink is not None:
            try:
                job.sink(event)
            except Exception as e:
                logging.exception(f"Sink failed on {event_type} for job {event.job_id}: {e}")
        if not sink_only:
            self.bus.emit(event)

    def _is_active(self, job: _ActiveJob) -> bool:
        return self._jobs.get(job.record.id) is job

    def _finish(
        self,
        job: _ActiveJob,
        status: JobStatus,
        event_type: str,
        data: dict,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> bool:
        if not self._is_active(job):
            return False
        record = job.record
        del self._jobs[record.id]
        record.finish(status, exit_code=exit_code, error=error)
        self._remember(record)
        logging.info(
            f"Job {record.id} {status.value} and removed from active jobs. "
            f"Remaining: {len(self._jobs)}"
        )
        self._emit(job, event_type, data)
        return True

    def _complete(self, job: _ActiveJob, exit_code: int) -> None:
        record = job.record
        if self._is_active(job) and record.progress < 100.0:
            record.progress = 100.0
            self._emit(job, JOB_PROGRESS, record.telemetry())
        self._finish(
            job,
            JobStatus.COMPLETED,
            JOB_COMPLETED,
            {
                "exit_code": exit_code,
                "output_file": record.output_file,
                "output_dir": record.output_dir,
                "is_video": record.is_video,
            },
            exit_code=exit_code,
        )

    def _fail(self, job: _ActiveJob, error: str, exit_code: Optional[int] = None):
        self._finish(
            job,
            JobStatus.FAILED,
            JOB_FAILED,
            {"error": error},
            exit_code=exit_code,
            error=error,
        )

    def _on_exit(self, job: _ActiveJob, code: int) -> None:
        job_id = job.record.id
        timer = self._pending_kills.pop(job_id, None)
        if timer is not None:
            timer.cancel()

        if job_id in self._manually_stopped:
            self._manually_stopped.discard(job_id)
            logging.info(
                f"Job {job_id} was manually stopped, not reporting exit code {code}"
            )
            return

        if not self._is_active(job):
            return

        if code == 0:
            self._complete(job, code)
        else:
            logging.warning(f"[FAILED] Job {job_id} exited with code {code}.")
            self._fail(job, f"Process exited with code {code}", exit_code=code)

    def _remember(self, record: JobRecord) -> None:
        self._outputs.pop(record.id, None)
        self._outputs[record.id] = record.to_dict()
        while len(self._outputs) > self.config.history_limit:
            self._outputs.popitem(last=False)

    # =========================================================================
    # Termination
    # =========================================================================

    def _terminate(self, job: _ActiveJob) -> bool:
        """Request termination of a job's process tree.

        On Windows the tree is killed with taskkill. Elsewhere the process
        group gets SIGTERM and, if still alive after the grace period,
        SIGKILL.

        Returns:
            True if the request was issued (or nothing was left to stop).
        """
        record = job.record
        process = record.process
        if process is None or process.returncode is not None:
            return True

        if sys.platform == "win32":
            return self._kill_tree_windows(record.id, process)

        try:
            pgid = os.getpgid(process.pid)
            logging.info(f"Sending SIGTERM to process group {pgid} (job {record.id})")
            os.killpg(pgid, signal.SIGTERM)
        except ProcessLookupError:
            return True
        except OSError as e:
            logging.error(f"Error stopping job {record.id}: {e}")
            return False

        self._schedule_kill(record.id, process, pgid)
        return True

    def _kill_tree_windows(self, job_id: str, process) -> bool:
        try:
            killer = subprocess.Popen(
                ["taskkill", "/pid", str(process.pid), "/T", "/F"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logging.error(f"taskkill failed for PID {process.pid}: {e}")
            return self._terminate_process(job_id, process)

        logging.info(f"Requested process tree termination for PID {process.pid}")
        task = asyncio.create_task(self._reap_taskkill(job_id, process, killer))
        self._monitors.add(task)
        task.add_done_callback(self._monitors.discard)
        return True

    async def _reap_taskkill(self, job_id: str, process, killer) -> None:
        # killer.wait() runs in the default executor.
        loop = asyncio.get_running_loop()
        code = await loop.run_in_executor(None, killer.wait)
        if code != 0 and process.returncode is None:
            logging.error(f"taskkill exited with code {code} for PID {process.pid}")
            self._terminate_process(job_id, process)

    def _terminate_process(self, job_id: str, process) -> bool:
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        except OSError as e:
            logging.error(f"Error terminating job {job_id}: {e}")
            return False
        return True

    def _schedule_kill(self, job_id: str, process, pgid: int) -> None:
        # One pending kill per job; a new request replaces the old timer.
        previous = self._pending_kills.pop(job_id, None)
        if previous is not None:
            previous.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._pending_kills[job_id] = loop.call_later(
            self.config.kill_grace_period, self._force_kill, job_id, process, pgid
        )

    def _force_kill(self, job_id: str, process, pgid: int) -> None:
        self._pending_kills.pop(job_id, None)
        if process.returncode is not None:
            return
        logging.info(f"Force killing job {job_id} (process group {pgid})")
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError as e:
            logging.error(f"Error force killing job {job_id}: {e}")

    # =========================================================================
    # Public control and queries
    # =========================================================================

    def stop(self, job_id: str) -> bool:
        """Stop one job.

        The job is marked as manually stopped before termination is
        requested, so its later exit is not reported as a failure. The job
        leaves the active table and job-stopped is emitted immediately.

        Args:
            job_id: Id returned by ``start``.

        Returns:
            True if termination was requested, False for unknown ids or if
            the signal could not be sent.
        """
        job = self._jobs.get(job_id)
        if job is None:
            logging.warning(f"Cannot stop job {job_id}: not active")
            return False

        self._manually_stopped.add(job_id)
        logging.info(f"Job {job_id} marked as manually stopped")
        requested = self._terminate(job)
        self._finish(job, JobStatus.STOPPED, JOB_STOPPED, {})
        return requested

    def stop_all(self) -> None:
        """Stop every active job and clear the active table.

        Does not wait for the processes to exit.
        """
        jobs = list(self._jobs.values())
        logging.info(f"Stopping {len(jobs)} active render processes...")

        for job in jobs:
            self._manually_stopped.add(job.record.id)
        for job in jobs:
            self._terminate(job)
        for job in jobs:
            self._finish(job, JobStatus.STOPPED, JOB_STOPPED, {})

        self._jobs.clear()
        logging.info("All render processes cleanup completed")

    def has_active_jobs(self) -> bool:
        return len(self._jobs) > 0

    def list_active_job_ids(self) -> list[str]:
        return list(self._jobs)

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        job = self._jobs.get(job_id)
        return job.record if job else None

    def get_render_outputs(self) -> list[dict]:
        """Snapshots of recently finished jobs followed by the active ones."""
        return list(self._outputs.values()) + [
            job.record.to_dict() for job in self._jobs.values()
        ]

    async def wait_closed(self) -> None:
        """Wait until every supervised process has exited and been reported."""
        while self._monitors:
            await asyncio.gather(*list(self._monitors), return_exceptions=True)

    async def get_version(self, executable_path: str) -> str:
        """Ask a worker executable for its version.

        Args:
            executable_path: Path of the worker binary.

        Returns:
            Version string such as ``"4.2.1"``, or ``"Unknown"`` if the
            binary cannot be run, exits non-zero, or prints no version.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                executable_path,
                self.flags.version,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            output, _ = await process.communicate()
        except OSError as e:
            logging.error(f"Failed to get version of {executable_path}: {e}")
            return UNKNOWN_VERSION

        if process.returncode != 0:
            logging.warning(
                f"{executable_path} {self.flags.version} exited with code "
                f"{process.returncode}"
            )
            return UNKNOWN_VERSION
        return parse_version(output.decode(errors="replace"))
