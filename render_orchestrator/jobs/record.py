"""In-memory record of one render job.

A JobRecord is created when a worker process is spawned and is owned by the
supervisor until the job reaches a terminal state. After that only its
``to_dict()`` snapshot is kept.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from render_orchestrator.jobs.command import FrameRange


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


# Telemetry fields reported in job-progress payloads once observed
TELEMETRY_FIELDS = (
    "frames_completed",
    "current_sample",
    "total_samples",
    "current_tile",
    "total_tiles",
    "memory_usage_mb",
    "peak_memory_mb",
    "in_compositing",
    "compositing_operation",
    "remaining_time",
)


@dataclass
class JobRecord:
    """State of one active render invocation.

    Attributes:
        id: Job id, the worker's PID as a string.
        raw_command: Command as supplied by the caller.
        effective_command: Command actually executed (output path may differ).
        frame_range: Frames the job renders.
        process: OS process handle; None once the job is terminal.
        progress: Overall progress in percent.
        status: Lifecycle state.
        output_file: Predicted artifact path of the current frame.
        output_dir: Directory the worker writes into.
        is_video: True when the output format is a video container.
        is_animation: True when the animation flag was given.
    """

    id: str
    raw_command: str
    effective_command: str
    frame_range: FrameRange = field(default_factory=FrameRange)
    process: Any = None
    progress: float = 0.0
    status: JobStatus = JobStatus.RUNNING
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None

    current_frame: Optional[int] = None
    frames_completed: Optional[int] = None
    current_sample: Optional[int] = None
    total_samples: Optional[int] = None
    current_tile: Optional[int] = None
    total_tiles: Optional[int] = None
    memory_usage_mb: Optional[float] = None
    peak_memory_mb: Optional[float] = None
    in_compositing: Optional[bool] = None
    compositing_operation: Optional[str] = None
    remaining_time: Optional[str] = None

    output_file: Optional[str] = None
    output_dir: Optional[str] = None
    is_video: bool = False
    is_animation: bool = False

    exit_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def name(self) -> str:
        if self.output_file:
            return self.output_file.replace("\\", "/").rsplit("/", 1)[-1]
        return f"Render {self.id}"

    def telemetry(self) -> dict:
        """Return the job-progress payload: progress plus observed fields."""
        data = {
            "progress": self.progress,
            "current_frame": (
                self.current_frame
                if self.current_frame is not None
                else self.frame_range.start
            ),
            "total_frames": self.frame_range.count,
        }
        for name in TELEMETRY_FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    def finish(
        self,
        status: JobStatus,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Move the record into a terminal state and drop the process handle."""
        if self.status.is_terminal:
            raise ValueError(f"Job {self.id} is already {self.status.value}")
        self.status = status
        self.end_time = _utcnow()
        self.exit_code = exit_code
        self.error = error
        if status is JobStatus.COMPLETED:
            self.progress = 100.0
        self.process = None

    def to_dict(self) -> dict:
        """Snapshot of the record for late queries and relay consumers."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "command": self.effective_command,
            "raw_command": self.raw_command,
            "frame_range": self.frame_range.to_dict(),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "output_file": self.output_file,
            "output_path": self.output_dir,
            "is_video": self.is_video,
            "is_animation": self.is_animation,
            "exit_code": self.exit_code,
            "error": self.error,
            **self.telemetry(),
        }
