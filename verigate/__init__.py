"""verigate: deduplicated, rate-limited, cross-model verified generation."""

from .audit import AuditLog, AuditRecord
from .config import VerificationConfig
from .dedup import DeduplicationGate, GateResult, make_fingerprint
from .errors import (
    ErrorKind,
    InternalRateLimitError,
    ModelCallError,
    ParseError,
    PipelineError,
    PipelineTimeoutError,
    TransportError,
    VendorRateLimitError,
    VerigateError,
)
from .ratelimit import RateLimiter
from .service import VerifiedGenerationService, VerifiedResult, create_service
from .verification import (
    CustomCriterion,
    Recommendation,
    RetryCoordinator,
    VerificationCriteria,
    VerificationOrchestrator,
    VerificationResult,
)

__version__ = "0.1.0"

__all__ = [
    "AuditLog",
    "AuditRecord",
    "CustomCriterion",
    "DeduplicationGate",
    "ErrorKind",
    "GateResult",
    "InternalRateLimitError",
    "ModelCallError",
    "ParseError",
    "PipelineError",
    "PipelineTimeoutError",
    "RateLimiter",
    "Recommendation",
    "RetryCoordinator",
    "TransportError",
    "VendorRateLimitError",
    "VerificationConfig",
    "VerificationCriteria",
    "VerificationOrchestrator",
    "VerificationResult",
    "VerifiedGenerationService",
    "VerifiedResult",
    "VerigateError",
    "create_service",
    "make_fingerprint",
]
