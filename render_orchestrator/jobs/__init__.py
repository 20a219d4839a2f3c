"""Jobs module for render-orchestrator.

This module provides the job-level building blocks of the orchestrator:
- command: Launch-command grammar (frame range, output path, format)
- output_paths: Output-path collision resolution before launch
- record: JobRecord and JobStatus
"""

from render_orchestrator.jobs.command import (
    FrameRange,
    OutputInfo,
    extract_output_info,
    parse_frame_range,
    predict_output_path,
)
from render_orchestrator.jobs.output_paths import (
    CollisionResult,
    resolve_output_collision,
    unique_file_path,
)
from render_orchestrator.jobs.record import (
    JobRecord,
    JobStatus,
)

__all__ = [
    # Command grammar
    "FrameRange",
    "OutputInfo",
    "extract_output_info",
    "parse_frame_range",
    "predict_output_path",
    # Collision resolution
    "CollisionResult",
    "resolve_output_collision",
    "unique_file_path",
    # Records
    "JobRecord",
    "JobStatus",
]
