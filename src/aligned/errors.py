"""Error taxonomy for the assistant pipeline.

Each error carries the pipeline ``stage`` it was raised from so the router can
log it with enough context to reproduce.
"""

from __future__ import annotations

from typing import Optional


class AssistantError(Exception):
    status_code = 500
    public_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, *, stage: str = "pipeline") -> None:
        super().__init__(message or self.public_message)
        self.stage = stage

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.public_message


class ValidationError(AssistantError):
    status_code = 400
    public_message = "Message is required"


class AuthError(AssistantError):
    status_code = 401
    public_message = "Unauthorized"


class NotFoundError(AssistantError):
    status_code = 404
    public_message = "Not found"


class QuotaExceededError(AssistantError):
    status_code = 429

    def __init__(self, limit: int, retry_after_seconds: int, *, stage: str = "quota") -> None:
        hours, rem = divmod(max(retry_after_seconds, 0), 3600)
        minutes = rem // 60
        super().__init__(
            f"Daily limit reached ({limit} queries per day). "
            f"Try again tomorrow! Your quota resets in {hours}h {minutes}m.",
            stage=stage,
        )
        self.limit = limit
        self.retry_after_seconds = max(retry_after_seconds, 1)


class UpstreamModelError(AssistantError):
    status_code = 500
    public_message = "Sorry, I couldn't respond right now."


class PersistenceError(AssistantError):
    status_code = 500
    public_message = "The reply could not be saved."


class PipelineTimeoutError(AssistantError):
    status_code = 504
    public_message = "The assistant took too long to respond."
