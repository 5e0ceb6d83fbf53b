"""Payments package: methods, states, splits and the attempt log."""
from .constants import (
    MIXED_METHOD,
    AttemptMethod,
    AttemptStatus,
    PaymentMethod,
    PaymentStatus,
    TRANSITIONS,
    normalize_method,
)
from .models import PaymentAttempt, PaymentAttemptLog, PaymentSplit

__all__ = [
    "MIXED_METHOD",
    "AttemptMethod",
    "AttemptStatus",
    "PaymentMethod",
    "PaymentStatus",
    "TRANSITIONS",
    "normalize_method",
    "PaymentAttempt",
    "PaymentAttemptLog",
    "PaymentSplit",
]
