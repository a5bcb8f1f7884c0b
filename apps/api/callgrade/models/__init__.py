"""Expose ORM models."""
from .call import Call, CallSource, CallStatus
from .scoring_job import ScoringJob

__all__ = [
    "Call",
    "CallSource",
    "CallStatus",
    "ScoringJob",
]
