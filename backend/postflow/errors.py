"""
Error taxonomy for the content pipeline.

NotFound / InvalidTransition / InvalidOperation / ValidationError are raised
synchronously to the caller and never retried. ExternalFailure comes from
content generation or platform publishing and goes through the retry path.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    code = "pipeline_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.code, "detail": self.message}
        if self.details:
            payload["context"] = self.details
        return payload


class NotFound(PipelineError):
    """Entity id could not be resolved."""

    code = "not_found"


class InvalidTransition(PipelineError):
    """Requested stage edge is not in the stage graph."""

    code = "invalid_transition"

    def __init__(self, from_stage, to_stage):
        from_value = getattr(from_stage, "value", from_stage)
        to_value = getattr(to_stage, "value", to_stage)
        super().__init__(
            f"Cannot transition from {from_value} to {to_value}",
            from_stage=from_value,
            to_stage=to_value,
        )
        self.from_stage = from_stage
        self.to_stage = to_stage


class InvalidOperation(PipelineError):
    """Precondition on the current stage or state was violated."""

    code = "invalid_operation"


class ValidationError(PipelineError):
    """Malformed input."""

    code = "validation_error"


class ExternalFailure(PipelineError):
    """An AI or platform call failed."""

    code = "external_failure"

    def __init__(self, message: str, *, retryable: bool = True, **details):
        super().__init__(message, **details)
        self.retryable = retryable
