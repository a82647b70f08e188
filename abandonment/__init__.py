"""
Abandonment — detection of stalled wizard sessions and signed resume links.
"""
from abandonment.detector import AbandonmentDetector, AbandonmentReport, WIZARD_STEPS, calculate_progress
from abandonment.tokens import (
    ExpiredResumeTokenError,
    InvalidResumeTokenError,
    ResumeTokenPayload,
    ResumeTokenSigner,
)

__all__ = [
    "AbandonmentDetector",
    "AbandonmentReport",
    "WIZARD_STEPS",
    "calculate_progress",
    "ExpiredResumeTokenError",
    "InvalidResumeTokenError",
    "ResumeTokenPayload",
    "ResumeTokenSigner",
]
