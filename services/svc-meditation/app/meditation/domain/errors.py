from __future__ import annotations

from typing import Optional


class PipelineError(RuntimeError):
    pass


class TransientProviderError(PipelineError):
    """Timeouts, 5xx, rate limits. Retried by the queue's backoff."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LockNotAcquiredError(PipelineError):
    def __init__(self, key: str):
        super().__init__(f"lock_not_acquired:{key}")
        self.key = key


class NonRetriableError(PipelineError):
    """Terminal for the request: the worker records it and does not retry."""


class ProviderResponseError(NonRetriableError):
    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ScriptTruncatedError(NonRetriableError):
    def __init__(self, message: str, *, partial_text: str = ""):
        super().__init__(message)
        self.partial_text = partial_text


class EmptyAudioError(NonRetriableError):
    pass


class DurationUndeterminableError(NonRetriableError):
    pass


class MediaProcessingError(NonRetriableError):
    def __init__(self, message: str, *, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class UpstreamJobFailedError(NonRetriableError):
    pass


class InvalidTaskPayloadError(NonRetriableError):
    pass
