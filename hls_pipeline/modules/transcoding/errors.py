"""Error taxonomy for a transcode job attempt.

Stages return these errors inside typed result values. Only the job
dispatcher decides whether an error is retried or terminal.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for errors that abort a job attempt."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def error_type(self) -> str:
        return type(self).__name__


class ResourceError(PipelineError):
    """The job workspace could not be allocated."""


class SourceUnavailable(PipelineError):
    """The source object is missing or its download was interrupted."""


class MalformedInput(PipelineError):
    """The source could not be probed or carries no video stream."""


class NoAudioTrack(PipelineError):
    """The source has no audio stream; every variant must carry audio."""


class TranscodeFailed(PipelineError):
    """The encoder failed, timed out or produced incomplete output for a variant."""

    def __init__(self, variant: str, reason: str):
        super().__init__(f"Transcode failed for variant {variant}: {reason}")
        self.variant = variant
        self.reason = reason


class PublishFailed(PipelineError):
    """An object could not be uploaded to storage."""

    def __init__(self, key: str, reason: Optional[str] = None):
        super().__init__(f"Failed to publish {key}: {reason or 'unknown error'}")
        self.key = key
        self.reason = reason


class StateUpdateFailed(PipelineError):
    """An asset status write did not apply."""


class JobCancelled(PipelineError):
    """The job was cancelled while running."""
