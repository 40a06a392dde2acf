"""
Privacy layer — everything that decides what may leave the process.
"""
from stepsync.privacy.sanitizer import (
    Blocked,
    PHIDetectedError,
    SanitizationResult,
    Sanitizer,
)

__all__ = [
    "Blocked",
    "PHIDetectedError",
    "SanitizationResult",
    "Sanitizer",
]
