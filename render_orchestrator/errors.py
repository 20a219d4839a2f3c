"""Exception types raised by render-orchestrator."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for errors raised by the orchestrator."""

    pass


class ConfigError(OrchestratorError):
    """Raised when a configuration value is invalid."""

    pass


class JobError(OrchestratorError):
    """Raised when a job does not complete successfully.

    Attributes:
        job_id: Id of the job.
        exit_code: The process exit code (if available).
    """

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        exit_code: int | None = None,
    ):
        super().__init__(message)
        self.job_id = job_id
        self.exit_code = exit_code
