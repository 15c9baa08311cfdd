"""Pydantic models shared across verification, API and workflows."""

from .verification import (
    LivenessStatus,
    LivenessVerdict,
    VerificationCandidate,
    VerificationReport,
    VerificationSummary,
    load_candidates,
)

__all__ = [
    "LivenessStatus",
    "LivenessVerdict",
    "VerificationCandidate",
    "VerificationReport",
    "VerificationSummary",
    "load_candidates",
]
