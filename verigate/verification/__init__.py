"""Cross-model verification of primary model responses.

A secondary model judges each candidate against explicit criteria and a
deterministic PII pass caps the safety score. The result recommends one of:

- approve: verified, score >= 70 and confidence >= 0.7 (configurable)
- retry: below threshold, regenerate with the judge's feedback
- manual_review: critical or safety findings, verifier failure, or no
  retries left
"""

from .models import (
    ApprovedResult,
    BaseVerificationResult,
    CustomCriterion,
    DetailedScores,
    FinalOutcome,
    IssueCategory,
    JudgmentPayload,
    ManualReviewResult,
    Recommendation,
    RetryAttempt,
    RetryResult,
    Severity,
    VerificationCriteria,
    VerificationIssue,
    VerificationRequest,
    VerificationResult,
    VerifierFailure,
    build_result,
    classify_outcome,
)

from .pii import PIIDetector, PIIMatch, PIIPattern

from .orchestrator import (
    VerificationOrchestrator,
    parse_judgment,
    weighted_score,
)

from .retry import (
    RetryCoordinator,
    RetryOutcome,
    RetryState,
    build_retry_prompt,
)

__all__ = [
    # Models
    "ApprovedResult",
    "BaseVerificationResult",
    "CustomCriterion",
    "DetailedScores",
    "FinalOutcome",
    "IssueCategory",
    "JudgmentPayload",
    "ManualReviewResult",
    "Recommendation",
    "RetryAttempt",
    "RetryResult",
    "Severity",
    "VerificationCriteria",
    "VerificationIssue",
    "VerificationRequest",
    "VerificationResult",
    "VerifierFailure",
    "build_result",
    "classify_outcome",
    # PII
    "PIIDetector",
    "PIIMatch",
    "PIIPattern",
    # Orchestrator
    "VerificationOrchestrator",
    "parse_judgment",
    "weighted_score",
    # Retry
    "RetryCoordinator",
    "RetryOutcome",
    "RetryState",
    "build_retry_prompt",
]
