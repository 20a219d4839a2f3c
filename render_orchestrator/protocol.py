"""Event protocol emitted by the process supervisor.

Every notification about a job is a JobEvent: a type string, the job id and a
JSON-serialisable payload. The same objects are delivered to the per-call
sink given to ``ProcessSupervisor.start`` and to the shared EventBus, and the
remote relay publishes them verbatim.

Event Types
-----------

**job-started**
    Payload: command, effective_command, start_time, frame_range,
    output_file, output_dir, is_video, is_animation

**job-progress**
    Payload: progress, current_frame, total_frames and every telemetry
    field observed so far (frames_completed, current_sample, total_samples,
    current_tile, total_tiles, memory_usage_mb, peak_memory_mb,
    in_compositing, compositing_operation, remaining_time)

**job-completed**
    Payload: exit_code, output_file, output_dir, is_video

**job-failed**
    Payload: error

**job-stopped**
    Payload: empty

**job-diagnostic**
    Payload: message, stream. Non-fatal error/warning lines.

**job-output**
    Payload: line, stream. Raw worker output; delivered to the sink only.

Consumers must not assume a fixed number of events per job. Events for one
job arrive in order; the terminal event (completed, failed or stopped) is the
last one.
"""

import json
from dataclasses import dataclass, field


JOB_STARTED = "job-started"
JOB_PROGRESS = "job-progress"
JOB_COMPLETED = "job-completed"
JOB_FAILED = "job-failed"
JOB_STOPPED = "job-stopped"
JOB_DIAGNOSTIC = "job-diagnostic"
JOB_OUTPUT = "job-output"

TERMINAL_EVENTS = frozenset({JOB_COMPLETED, JOB_FAILED, JOB_STOPPED})

# Prefix used when events are published over the remote relay
MSG_EVENT = "EVENT"
MSG_SEPARATOR = "::"


@dataclass(frozen=True)
class JobEvent:
    """A notification about one job."""

    type: str
    job_id: str
    data: dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict:
        return {"type": self.type, "id": self.job_id, **self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict) -> "JobEvent":
        data = dict(data)
        event_type = data.pop("type")
        job_id = data.pop("id")
        return cls(type=event_type, job_id=job_id, data=data)

    def to_message(self) -> str:
        """Format the event as a relay message (``EVENT::<json>``)."""
        return f"{MSG_EVENT}{MSG_SEPARATOR}{self.to_json()}"
