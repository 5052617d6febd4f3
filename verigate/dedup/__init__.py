"""Request deduplication gate."""

from .gate import (
    CachedResult,
    DeduplicationGate,
    GateResult,
    InFlightEntry,
    make_fingerprint,
)

__all__ = [
    "CachedResult",
    "DeduplicationGate",
    "GateResult",
    "InFlightEntry",
    "make_fingerprint",
]
