"""
Exception taxonomy for the generation pipeline.

Every failure a stage can raise is a PipelineError. The orchestrator turns
them into a human-readable `error_message` on the project; nothing is
surfaced to the request that created the project.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for the CGI generation pipeline."""

    def __init__(self, message: str, stage: Optional[str] = None):
        self.message = message
        self.stage = stage
        super().__init__(message)


# ── Configuration ────────────────────────────────────────────────────────────

class ConfigurationError(PipelineError):
    """A credential or setting needed by a stage is missing."""

    def __init__(self, setting: str, stage: Optional[str] = None):
        self.setting = setting
        super().__init__(f"{setting} is not configured", stage)


# ── Remote task lifecycle ────────────────────────────────────────────────────

class SubmissionError(PipelineError):
    """Creating a remote job failed, or the response carried no task id."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class TaskFailedError(PipelineError):
    """The provider reported the remote job as failed."""

    def __init__(self, task_id: str, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task {task_id} failed: {reason}")


class PollTimeoutError(PipelineError, TimeoutError):
    """The remote job did not finish within the polling budget."""

    def __init__(self, task_id: str, attempts: int):
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(f"Timeout: task {task_id} not finished after {attempts} polling attempts")


class PersistentTransientError(PipelineError):
    """Too many consecutive transient errors while polling a task."""

    def __init__(self, task_id: str, consecutive: int, last_error: str):
        self.task_id = task_id
        self.consecutive = consecutive
        self.last_error = last_error
        super().__init__(
            f"Status checks for task {task_id} kept failing "
            f"({consecutive} consecutive errors, last: {last_error})"
        )


class MalformedResponseError(PipelineError):
    """A provider response could not be interpreted."""


class MediaResolutionError(PipelineError):
    """A media reference could not be turned into bytes."""


# ── Stage outcomes ───────────────────────────────────────────────────────────

class NoImageProduced(PipelineError):
    """The image model answered but no image data could be found."""


class VideoGenerationFailed(PipelineError):
    """The image-to-video job failed remotely."""


class VideoUrlMissing(PipelineError):
    """The video job reported completion without an output location."""


class AudioAugmentationFailed(PipelineError):
    """The sound job failed. Never fatal to a run."""


# ── Run ownership ────────────────────────────────────────────────────────────

class RunConflictError(PipelineError):
    """A run cannot be started for the project in its current state."""


class RunSupersededError(PipelineError):
    """The run no longer owns the project (another run claimed it)."""
