"""Exception taxonomy for the call processing pipeline."""
from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for pipeline failures surfaced to callers."""


class ParseError(PipelineError):
    """Raised when a transcript source cannot be parsed; not retried."""


class DuplicateCallError(PipelineError):
    """Raised when an incoming call matches a call stored from another source."""

    def __init__(self, existing_call_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Call already exists as {existing_call_id}")
        self.existing_call_id = existing_call_id


class TranscriptionError(PipelineError):
    """Raised when audio download or speech-to-text fails."""


class ScoringError(PipelineError):
    """Raised when the rubric scoring service fails."""


class InvalidTransitionError(PipelineError):
    """Raised when a call status change is not allowed."""

    def __init__(self, current: object, target: object, reason: str | None = None) -> None:
        detail = f"Cannot move call from {getattr(current, 'value', current)} to {getattr(target, 'value', target)}"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)
        self.current = current
        self.target = target


class CallNotFoundError(PipelineError):
    """Raised when a call id does not exist."""

    def __init__(self, call_id: str) -> None:
        super().__init__(f"Call {call_id} not found")
        self.call_id = call_id
