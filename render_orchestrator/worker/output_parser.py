"""Structured telemetry from render-worker output.

The worker prints free-form progress lines. Two dialects are understood:

Protocol A (legacy)::

    Fra:12 Mem:150.00M (Peak 200.00M) | Time:00:02.15 | Sample 32/128
    Fra:12 Mem:150.00M (Peak 200.00M) | Compositing | Blur Node

Protocol B (newer)::

    Fra:12 Mem:1.20G, Peak:1.31G | Remaining:00:10.23 | Rendered 3/16 Tiles, Sample 32/128
    Append frame 12
    Time: 00:04.01 (Saving: 00:00.12)

Recognition is driven by the PATTERNS table; each row maps a regex to a fact
kind. Parsing is a pure function of (ParserState, text) returning the facts
found and the next state, so the same code serves both dialects and is easy
to exercise in isolation.
"""

import re
from dataclasses import dataclass, replace
from typing import Callable, Optional

from render_orchestrator.jobs.command import FrameRange

PROTOCOL_A = "A"
PROTOCOL_B = "B"

# Same separators the worker uses for full lines and carriage-return updates
SEP = re.compile(r"[\r\n]")

# A pending partial line longer than this is parsed as-is
MAX_PENDING = 64 * 1024


# =============================================================================
# Facts
# =============================================================================


@dataclass(frozen=True)
class Fact:
    """Base of all facts. ``protocol`` is the dialect that produced it."""

    protocol: str
    line: str


@dataclass(frozen=True)
class FrameFact(Fact):
    frame: int


@dataclass(frozen=True)
class MemoryFact(Fact):
    current_mb: float
    peak_mb: Optional[float] = None


@dataclass(frozen=True)
class SampleFact(Fact):
    current: int
    total: int


@dataclass(frozen=True)
class TileFact(Fact):
    current: int
    total: int


@dataclass(frozen=True)
class CompositingFact(Fact):
    operation: str


@dataclass(frozen=True)
class RemainingTimeFact(Fact):
    text: str


@dataclass(frozen=True)
class FrameCompletedFact(Fact):
    """A frame boundary was crossed.

    Attributes:
        frame: Frame that finished, if the marker names it.
        frames_completed: Completed frame count after this boundary.
        next_frame: Frame now assumed to be rendering.
    """

    frame: Optional[int]
    frames_completed: int
    next_frame: int


@dataclass(frozen=True)
class QuitFact(Fact):
    pass


@dataclass(frozen=True)
class ProgressFact(Fact):
    progress: float
    frames_completed: int


# =============================================================================
# Pattern table
# =============================================================================


@dataclass(frozen=True)
class LinePattern:
    """One row of the recognition table."""

    kind: str
    protocol: str
    regex: re.Pattern


PATTERNS: tuple[LinePattern, ...] = (
    LinePattern("frame", PROTOCOL_A, re.compile(r"Fra:\s*(\d+)")),
    LinePattern(
        "memory",
        PROTOCOL_A,
        re.compile(r"Mem:\s*(\d+(?:\.\d+)?)([MG])(?:[^|]*?Peak[:\s]\s*(\d+(?:\.\d+)?)([MG]))?"),
    ),
    LinePattern(
        "tiles",
        PROTOCOL_B,
        re.compile(r"Rendered (\d+)/(\d+) Tiles(?:,\s*Sample (\d+)/(\d+))?"),
    ),
    LinePattern("sample", PROTOCOL_A, re.compile(r"(?<!Tiles, )Sample (\d+)/(\d+)")),
    LinePattern(
        "compositing", PROTOCOL_A, re.compile(r"Compositing(?:\s*\|\s*([^|]*))?")
    ),
    LinePattern("remaining", PROTOCOL_B, re.compile(r"Remaining:\s*([\d:.]+)")),
    LinePattern(
        "video_append",
        PROTOCOL_B,
        re.compile(r"Append frame (\d+)", re.IGNORECASE),
    ),
    LinePattern(
        "frame_saved",
        PROTOCOL_B,
        re.compile(r"Time:\s*[\d:.]+\s*\(Saving:\s*[\d:.]+\)"),
    ),
    LinePattern("quit", PROTOCOL_A, re.compile(r"Blender quit|(?<!\w)Quit(?!\w)")),
)


# =============================================================================
# State
# =============================================================================


@dataclass(frozen=True)
class ParserState:
    """Accumulated per-job parser state.

    Attributes:
        frame_range: Frames the job renders.
        pending: Trailing text of the last chunk without a line separator.
        current_frame: Frame being rendered, observed or inferred.
        frames_completed: Frames known to be finished.
        frame_counted: True once the current frame boundary has been counted.
        last_counted_frame: Frame number of the last counted boundary.
        frame_seen: True once a frame marker for the range was observed.
        current_sample: Latest sample index of the current frame.
        total_samples: Samples per frame.
        progress: Last reported progress in percent.
    """

    frame_range: FrameRange = FrameRange()
    pending: str = ""
    current_frame: Optional[int] = None
    frames_completed: int = 0
    frame_counted: bool = False
    last_counted_frame: Optional[int] = None
    frame_seen: bool = False
    current_sample: int = 0
    total_samples: int = 0
    progress: float = 0.0


def _to_mb(value: str, unit: str) -> float:
    mb = float(value)
    return mb * 1024 if unit == "G" else mb


def compute_progress(state: ParserState) -> float:
    """Overall progress in percent for ``state``.

    Single-frame jobs are binary: 0 until the frame marker, then 100.
    Multi-frame jobs count finished frames plus the sample fraction of the
    frame in flight.
    """
    frame_range = state.frame_range
    if frame_range.is_single:
        return 100.0 if state.frame_seen else 0.0

    count = frame_range.count
    completed = min(state.frames_completed, count)
    fraction = 0.0
    if state.total_samples > 0 and completed < count:
        fraction = min(state.current_sample / state.total_samples, 1.0)
    return round(min((completed + fraction) / count * 100.0, 100.0), 2)


# =============================================================================
# Handlers
# =============================================================================


Handler = Callable[[ParserState, re.Match, str, str], tuple[list[Fact], ParserState]]


def _on_frame(state, match, protocol, line):
    frame = int(match.group(1))
    frame_range = state.frame_range
    completed = max(
        state.frames_completed, min(max(frame - frame_range.start, 0), frame_range.count)
    )
    changes = {"frames_completed": completed}
    if frame >= frame_range.start:
        changes["frame_seen"] = True
    if state.current_frame is None or frame > state.current_frame:
        changes.update(current_frame=frame, current_sample=0)
        if state.current_frame is not None:
            changes["frame_counted"] = False
    return [FrameFact(protocol=protocol, line=line, frame=frame)], replace(
        state, **changes
    )


def _on_memory(state, match, protocol, line):
    current = _to_mb(match.group(1), match.group(2))
    peak = _to_mb(match.group(3), match.group(4)) if match.group(3) else None
    fact = MemoryFact(protocol=protocol, line=line, current_mb=current, peak_mb=peak)
    return [fact], state


def _apply_sample(state, current, total, protocol, line):
    changes = {"current_sample": current, "total_samples": total}
    if current == 0:
        # First sample of a new frame opens the next boundary.
        changes["frame_counted"] = False
    fact = SampleFact(protocol=protocol, line=line, current=current, total=total)
    return [fact], replace(state, **changes)


def _on_sample(state, match, protocol, line):
    return _apply_sample(
        state, int(match.group(1)), int(match.group(2)), protocol, line
    )


def _on_tiles(state, match, protocol, line):
    facts = [
        TileFact(
            protocol=protocol,
            line=line,
            current=int(match.group(1)),
            total=int(match.group(2)),
        )
    ]
    if match.group(3):
        sample_facts, state = _apply_sample(
            state, int(match.group(3)), int(match.group(4)), protocol, line
        )
        facts.extend(sample_facts)
    return facts, state


def _on_compositing(state, match, protocol, line):
    operation = (match.group(1) or "").strip()
    return [CompositingFact(protocol=protocol, line=line, operation=operation)], state


def _on_remaining(state, match, protocol, line):
    return [RemainingTimeFact(protocol=protocol, line=line, text=match.group(1))], state


def _complete_frame(state, frame, protocol, line):
    frame_range = state.frame_range
    if frame is not None:
        finished = frame
    elif state.current_frame is not None:
        finished = state.current_frame
    else:
        finished = frame_range.start
    completed = min(state.frames_completed + 1, frame_range.count)
    next_frame = min(finished + 1, frame_range.end)
    state = replace(
        state,
        frames_completed=completed,
        frame_counted=True,
        last_counted_frame=finished,
        frame_seen=True,
        current_frame=next_frame,
        current_sample=0,
    )
    fact = FrameCompletedFact(
        protocol=protocol,
        line=line,
        frame=frame,
        frames_completed=completed,
        next_frame=next_frame,
    )
    return [fact], state


def _on_video_append(state, match, protocol, line):
    frame = int(match.group(1))
    if state.frame_counted and frame == state.last_counted_frame:
        return [], state
    return _complete_frame(state, frame, protocol, line)


def _on_frame_saved(state, match, protocol, line):
    if state.frame_counted:
        return [], state
    return _complete_frame(state, None, protocol, line)


def _on_quit(state, match, protocol, line):
    return [QuitFact(protocol=protocol, line=line)], state


_HANDLERS: dict[str, Handler] = {
    "frame": _on_frame,
    "memory": _on_memory,
    "tiles": _on_tiles,
    "sample": _on_sample,
    "compositing": _on_compositing,
    "remaining": _on_remaining,
    "video_append": _on_video_append,
    "frame_saved": _on_frame_saved,
    "quit": _on_quit,
}


# =============================================================================
# Public API
# =============================================================================


def split_lines(pending: str, chunk: str) -> tuple[list[str], str]:
    """Split ``pending + chunk`` into complete lines and a new pending tail.

    Empty lines are dropped. A tail longer than MAX_PENDING is returned as a
    line so a worker that never ends its line cannot grow the buffer forever.
    """
    parts = SEP.split(pending + chunk)
    tail = parts.pop()
    lines = [part for part in parts if part.strip()]
    if len(tail) > MAX_PENDING:
        lines.append(tail)
        tail = ""
    return lines, tail


def parse_line(state: ParserState, line: str) -> tuple[list[Fact], ParserState]:
    """Parse one complete line.

    Returns:
        Facts found in the line (in table order, plus a ProgressFact when the
        progress value changed) and the next state.
    """
    facts: list[Fact] = []
    for pattern in PATTERNS:
        match = pattern.regex.search(line)
        if match:
            found, state = _HANDLERS[pattern.kind](state, match, pattern.protocol, line)
            facts.extend(found)

    progress = compute_progress(state)
    if progress != state.progress:
        state = replace(state, progress=progress)
        facts.append(
            ProgressFact(
                protocol=facts[-1].protocol if facts else PROTOCOL_A,
                line=line,
                progress=progress,
                frames_completed=state.frames_completed,
            )
        )
    return facts, state


def parse_chunk(state: ParserState, chunk: str) -> tuple[list[Fact], ParserState]:
    """Parse a raw text chunk; incomplete trailing text stays in ``pending``."""
    lines, pending = split_lines(state.pending, chunk)
    state = replace(state, pending=pending)
    facts: list[Fact] = []
    for line in lines:
        found, state = parse_line(state, line)
        facts.extend(found)
    return facts, state


def flush(state: ParserState) -> tuple[list[Fact], ParserState]:
    """Parse whatever partial line is left once the stream has ended."""
    if not state.pending.strip():
        return [], replace(state, pending="")
    line = state.pending
    return parse_line(replace(state, pending=""), line)
