"""Launch-command grammar of the render worker.

This module reads frame selection, output path and output format out of a
worker launch string and predicts the file the worker will write for a given
frame. Flag spellings come from CommandFlags so other worker binaries can be
driven by configuration alone.
"""

import os
import re
from dataclasses import dataclass
from typing import Optional

from render_orchestrator.config import CommandFlags


# Output formats whose extension differs from the lower-cased format name
FORMAT_EXTENSIONS = {
    "JPEG": ".jpg",
    "OPEN_EXR": ".exr",
    "TIFF": ".tif",
}

# Formats that produce a single video container instead of numbered frames
VIDEO_FORMATS = {"AVI_JPEG", "AVI_RAW", "FFMPEG"}
VIDEO_EXTENSION = ".avi"

DEFAULT_EXTENSION = ".png"
DEFAULT_FRAME_PADDING = 4


@dataclass(frozen=True)
class FrameRange:
    """Inclusive range of frames a job renders."""

    start: int = 1
    end: int = 1

    @property
    def count(self) -> int:
        return max(self.end - self.start + 1, 1)

    @property
    def is_single(self) -> bool:
        return self.start == self.end

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class OutputInfo:
    """Output location and type derived from a launch command.

    Attributes:
        base_path: Value of the output flag with quotes removed.
        output_dir: Directory part of base_path.
        extension: File extension implied by the output format.
        is_video: True when the format writes a video container.
        is_animation: True when the animation flag is present.
    """

    base_path: str
    output_dir: str
    extension: str = DEFAULT_EXTENSION
    is_video: bool = False
    is_animation: bool = False


def _flag_value_pattern(flag: str, value: str) -> re.Pattern:
    # A flag only matches as a whole whitespace-separated token.
    return re.compile(rf"(?<!\S){re.escape(flag)}\s+({value})")


def _int_flag(command: str, flag: str) -> Optional[int]:
    match = _flag_value_pattern(flag, r"\d+").search(command)
    return int(match.group(1)) if match else None


def _output_match(command: str, flags: CommandFlags) -> Optional[re.Match]:
    return _flag_value_pattern(flags.output_path, r'"[^"]*"|\S+').search(command)


def has_flag(command: str, flag: str) -> bool:
    """Return True if ``flag`` appears as a standalone token in ``command``."""
    return re.search(rf"(?<!\S){re.escape(flag)}(?!\S)", command) is not None


def parse_frame_range(command: str, flags: CommandFlags) -> FrameRange:
    """Parse the frame range a command will render.

    A single-frame flag wins over a range. A range needs both its start and
    end flags; anything else falls back to frame 1.

    Args:
        command: Worker launch string.
        flags: Flag spellings of the launch grammar.

    Returns:
        FrameRange of the job.
    """
    single = _int_flag(command, flags.single_frame)
    if single is not None:
        return FrameRange(single, single)

    start = _int_flag(command, flags.frame_start)
    end = _int_flag(command, flags.frame_end)
    if start is None or end is None:
        return FrameRange(1, 1)
    return FrameRange(start, end)


def first_frame(command: str, flags: CommandFlags) -> Optional[int]:
    """Return the first frame the command will produce, if it selects one."""
    single = _int_flag(command, flags.single_frame)
    if single is not None:
        return single
    return _int_flag(command, flags.frame_start)


def extension_for_format(output_format: Optional[str]) -> tuple[str, bool]:
    """Map an output format name to ``(extension, is_video)``."""
    if not output_format:
        return DEFAULT_EXTENSION, False
    name = output_format.upper()
    if name in VIDEO_FORMATS:
        return VIDEO_EXTENSION, True
    return FORMAT_EXTENSIONS.get(name, f".{name.lower()}"), False


def extract_output_info(command: str, flags: CommandFlags) -> Optional[OutputInfo]:
    """Extract output path, extension and kind from a launch command.

    Returns:
        OutputInfo, or None when the command has no output flag.
    """
    match = _output_match(command, flags)
    if not match:
        return None

    base_path = match.group(1).replace('"', "")
    format_match = _flag_value_pattern(flags.output_format, r"\S+").search(command)
    extension, is_video = extension_for_format(
        format_match.group(1) if format_match else None
    )

    return OutputInfo(
        base_path=base_path,
        output_dir=os.path.dirname(base_path),
        extension=extension,
        is_video=is_video,
        is_animation=has_flag(command, flags.animation),
    )


def predict_output_path(
    info: OutputInfo,
    frame: Optional[int] = None,
    padding: int = DEFAULT_FRAME_PADDING,
) -> str:
    """Predict the artifact path the worker writes for ``frame``.

    Videos have no frame number. Animations and explicit frames get a
    zero-padded frame number between the base path and the extension.
    """
    if info.is_video:
        return f"{info.base_path}{info.extension}"

    if info.is_animation or frame is not None:
        number = 1 if frame is None else frame
        return f"{info.base_path}{str(number).zfill(padding)}{info.extension}"

    return f"{info.base_path}{info.extension}"


def replace_output_path(command: str, flags: CommandFlags, new_base: str) -> str:
    """Rewrite the value of the output flag to ``new_base`` (quoted)."""
    match = _output_match(command, flags)
    if not match:
        return command
    replacement = f'{flags.output_path} "{new_base}"'
    return command[: match.start()] + replacement + command[match.end() :]
