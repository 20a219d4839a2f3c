"""Output-path collision resolution.

Before a job is launched the predicted path of its first frame is checked on
disk. If a file is already there, the output prefix gets a numeric suffix so
the new job does not overwrite it. This is a presence check done once per
job, not a lock: two launches racing for the same prefix are not prevented.
"""

import logging
import os
from dataclasses import dataclass, replace
from typing import Callable, Optional

from render_orchestrator.config import CommandFlags
from render_orchestrator.jobs.command import (
    DEFAULT_FRAME_PADDING,
    extract_output_info,
    first_frame,
    predict_output_path,
    replace_output_path,
)


@dataclass(frozen=True)
class CollisionResult:
    """Outcome of a collision check.

    Attributes:
        command: Command to execute (rewritten if renamed is True).
        original_path: Predicted first-frame path of the raw command.
        resolved_path: Predicted first-frame path of the returned command.
        renamed: True when the output prefix was changed.
    """

    command: str
    original_path: Optional[str] = None
    resolved_path: Optional[str] = None
    renamed: bool = False


def _suffix_separator(base_path: str) -> str:
    if base_path.endswith("_") or base_path.endswith(("/", os.sep)):
        return ""
    return "_"


def resolve_output_collision(
    command: str,
    flags: CommandFlags,
    padding: int = DEFAULT_FRAME_PADDING,
    exists: Callable[[str], bool] = os.path.exists,
) -> CollisionResult:
    """Rewrite a command's output prefix so its first frame is a new file.

    Commands without an output flag or without a frame selection are
    returned unchanged.

    Args:
        command: Raw worker launch string.
        flags: Flag spellings of the launch grammar.
        padding: Zero-padding width of frame numbers.
        exists: Predicate used for the presence check.

    Returns:
        CollisionResult describing the command to run.
    """
    info = extract_output_info(command, flags)
    frame = first_frame(command, flags)
    if info is None or frame is None:
        return CollisionResult(command=command)

    predicted = predict_output_path(info, frame, padding)
    if not exists(predicted):
        return CollisionResult(
            command=command, original_path=predicted, resolved_path=predicted
        )

    separator = _suffix_separator(info.base_path)
    counter = 1
    while True:
        new_base = f"{info.base_path}{separator}{counter}"
        candidate = predict_output_path(
            replace(info, base_path=new_base), frame, padding
        )
        if not exists(candidate):
            break
        counter += 1

    new_command = replace_output_path(command, flags, new_base)
    logging.info(
        f"Predicted output existed: {predicted}. Changed render output to: {new_base}"
    )
    return CollisionResult(
        command=new_command,
        original_path=predicted,
        resolved_path=candidate,
        renamed=True,
    )


def unique_file_path(
    path: str, exists: Callable[[str], bool] = os.path.exists
) -> str:
    """Return ``path`` or the first free ``name_<n>.ext`` variant of it.

    Used for single-file artifacts whose full name is known up front.
    """
    if not exists(path):
        return path

    root, ext = os.path.splitext(path)
    separator = _suffix_separator(root)
    counter = 1
    while exists(f"{root}{separator}{counter}{ext}"):
        counter += 1
    return f"{root}{separator}{counter}{ext}"
