"""Classification of worker diagnostics.

Critical lines end a job immediately, whatever the eventual exit code.
Other lines mentioning errors or warnings are reported but never end a job on
their own; the FloodGuard only steps in when a worker emits them faster than
``threshold`` per window.
"""

import time
from collections import deque
from enum import Enum
from typing import Callable


# Substrings (matched case-insensitively) that make a line job-fatal
CRITICAL_ERRORS = (
    "No camera found in scene",
    "Process exited unexpectedly",
    "Failed to start",
    "Invalid command",
    "Segmentation fault",
    "Access violation",
    "Fatal error",
    "Exception",
    "terminated unexpectedly",
    "possible crash",
)

DIAGNOSTIC_WORDS = ("error", "exception", "warning")


class Severity(str, Enum):
    INFO = "info"
    DIAGNOSTIC = "diagnostic"
    CRITICAL = "critical"


def is_critical_error(text: str) -> bool:
    """Return True if ``text`` contains any critical-error phrase."""
    lowered = text.lower()
    return any(phrase.lower() in lowered for phrase in CRITICAL_ERRORS)


def is_diagnostic(text: str) -> bool:
    """Return True if ``text`` mentions an error, exception or warning."""
    lowered = text.lower()
    return any(word in lowered for word in DIAGNOSTIC_WORDS)


def classify_line(text: str) -> Severity:
    if is_critical_error(text):
        return Severity.CRITICAL
    if is_diagnostic(text):
        return Severity.DIAGNOSTIC
    return Severity.INFO


class FloodGuard:
    """Counts diagnostic lines over a rolling time window.

    Attributes:
        threshold: Maximum number of lines allowed inside one window.
        window: Window length in seconds.
    """

    def __init__(
        self,
        threshold: int = 50,
        window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window = window
        self._clock = clock
        self._hits: deque[float] = deque()

    def record(self) -> bool:
        """Record one diagnostic line.

        Returns:
            True if the count inside the current window exceeds the threshold.
        """
        now = self._clock()
        self._hits.append(now)
        while self._hits and now - self._hits[0] >= self.window:
            self._hits.popleft()
        return len(self._hits) > self.threshold

    @property
    def count(self) -> int:
        return len(self._hits)
