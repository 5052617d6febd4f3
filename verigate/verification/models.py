"""Data models for cross-model verification."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    """Issue severity, ordered from least to most serious."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class IssueCategory(str, Enum):
    ACCURACY = "accuracy"
    COMPLETENESS = "completeness"
    RELEVANCE = "relevance"
    CONSISTENCY = "consistency"
    SAFETY = "safety"
    FORMAT = "format"
    CUSTOM = "custom"


class Recommendation(str, Enum):
    APPROVE = "approve"
    RETRY = "retry"
    MANUAL_REVIEW = "manual_review"


class FinalOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    MANUAL_REVIEW = "manual_review"


class VerifierFailure(str, Enum):
    """Why a result was produced without a usable judgment."""

    TRANSPORT_ERROR = "transport_error"
    PARSE_ERROR = "parse_error"


DEFAULT_CRITERIA = (
    "accuracy",
    "completeness",
    "relevance",
    "consistency",
    "safety",
    "format",
)

_RESERVED_CRITERION_NAMES = frozenset(DEFAULT_CRITERIA) | {"custom"}


def _clamp(value: Any, low: float, high: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return low
    if number != number:  # NaN
        return low
    return max(low, min(high, number))


class CustomCriterion(BaseModel):
    """An extra weighted criterion on top of the six defaults."""

    name: str = Field(min_length=1)
    description: str
    weight: float = Field(default=1.0, ge=0.0)

    @field_validator("name")
    @classmethod
    def _not_reserved(cls, value: str) -> str:
        # Custom scores share the detailedScores object with the defaults.
        if value.strip().lower() in _RESERVED_CRITERION_NAMES:
            raise ValueError(f"custom criterion name {value!r} is reserved")
        return value


class VerificationCriteria(BaseModel):
    """Which criteria the judge should score.

    Enabled default criteria weigh 1.0 each; custom criteria carry their own
    weight.
    """

    accuracy: bool = True
    completeness: bool = True
    relevance: bool = True
    consistency: bool = True
    safety: bool = True
    format: bool = True
    custom: list[CustomCriterion] = Field(default_factory=list)

    @field_validator("custom")
    @classmethod
    def _unique_custom_names(cls, value: list[CustomCriterion]) -> list[CustomCriterion]:
        names = [criterion.name for criterion in value]
        if len(names) != len(set(names)):
            raise ValueError("custom criterion names must be unique")
        return value

    def enabled_defaults(self) -> list[str]:
        return [name for name in DEFAULT_CRITERIA if getattr(self, name)]

    def weights(self) -> dict[str, float]:
        """Weight per enabled criterion, custom ones keyed by name."""
        weights = {name: 1.0 for name in self.enabled_defaults()}
        for criterion in self.custom:
            weights[criterion.name] = criterion.weight
        return weights


class DetailedScores(BaseModel):
    """Per-criterion scores on a 0-100 scale.

    Out-of-range judge output is clamped rather than rejected.
    """

    model_config = ConfigDict(validate_assignment=True)

    accuracy: float = 0.0
    completeness: float = 0.0
    relevance: float = 0.0
    consistency: float = 0.0
    safety: float = 0.0
    format: float = 0.0
    custom: dict[str, float] = Field(default_factory=dict)

    @field_validator(*DEFAULT_CRITERIA, mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> float:
        return _clamp(value, 0.0, 100.0)

    @field_validator("custom", mode="before")
    @classmethod
    def _clamp_custom(cls, value: Any) -> dict[str, float]:
        if not isinstance(value, dict):
            return {}
        return {str(k): _clamp(v, 0.0, 100.0) for k, v in value.items()}

    def score_for(self, criterion: str) -> float | None:
        """Score for a default or custom criterion, None if never scored."""
        if criterion in DEFAULT_CRITERIA:
            return getattr(self, criterion)
        return self.custom.get(criterion)


class VerificationIssue(BaseModel):
    category: IssueCategory
    severity: Severity
    description: str
    location: str | None = None
    suggestion: str | None = None

    @field_validator("category", mode="before")
    @classmethod
    def _unknown_category_is_custom(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() not in {c.value for c in IssueCategory}:
            return IssueCategory.CUSTOM
        return value.lower() if isinstance(value, str) else value

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class BaseVerificationResult(BaseModel):
    verified: bool
    confidence: float = Field(ge=0.0, le=1.0)
    overall_score: float = Field(ge=0.0, le=100.0)
    detailed_scores: DetailedScores
    issues: list[VerificationIssue] = Field(default_factory=list)
    feedback: str | None = None
    processing_time_ms: float = 0.0
    failure: VerifierFailure | None = None

    @property
    def has_critical_issue(self) -> bool:
        return any(i.severity == Severity.CRITICAL for i in self.issues)

    @property
    def has_safety_finding(self) -> bool:
        return any(
            i.category == IssueCategory.SAFETY and i.severity.rank >= Severity.HIGH.rank
            for i in self.issues
        )

    def issues_at_least(self, severity: Severity) -> list[VerificationIssue]:
        return [i for i in self.issues if i.severity.rank >= severity.rank]


class ApprovedResult(BaseVerificationResult):
    recommendation: Literal[Recommendation.APPROVE] = Recommendation.APPROVE


class RetryResult(BaseVerificationResult):
    recommendation: Literal[Recommendation.RETRY] = Recommendation.RETRY


class ManualReviewResult(BaseVerificationResult):
    recommendation: Literal[Recommendation.MANUAL_REVIEW] = Recommendation.MANUAL_REVIEW


VerificationResult = Annotated[
    Union[ApprovedResult, RetryResult, ManualReviewResult],
    Field(discriminator="recommendation"),
]

_RESULT_TYPES: dict[Recommendation, type[BaseVerificationResult]] = {
    Recommendation.APPROVE: ApprovedResult,
    Recommendation.RETRY: RetryResult,
    Recommendation.MANUAL_REVIEW: ManualReviewResult,
}


def build_result(recommendation: Recommendation, **fields: Any) -> BaseVerificationResult:
    """Construct the result variant matching a recommendation."""
    return _RESULT_TYPES[recommendation](**fields)


def classify_outcome(result: BaseVerificationResult | None) -> FinalOutcome:
    """Map the last verification result of a pipeline onto its audit outcome.

    Critical issues and serious safety findings need a human; any other
    unapproved result is rejected.
    """
    if result is None:
        return FinalOutcome.REJECTED
    if result.recommendation == Recommendation.APPROVE:
        return FinalOutcome.APPROVED
    if result.has_critical_issue or result.has_safety_finding:
        return FinalOutcome.MANUAL_REVIEW
    return FinalOutcome.REJECTED


class JudgmentPayload(BaseModel):
    """Shape the judge model must reply with (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    verified: bool
    confidence: float
    overall_score: float | None = Field(default=None, alias="overallScore")
    detailed_scores: DetailedScores = Field(alias="detailedScores")
    issues: list[VerificationIssue] = Field(default_factory=list)
    recommendation: Recommendation | None = None
    feedback: str | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        return _clamp(value, 0.0, 1.0)

    @field_validator("detailed_scores", mode="before")
    @classmethod
    def _split_custom_scores(cls, value: Any) -> Any:
        # Judges put custom criterion scores next to the defaults.
        if isinstance(value, dict) and "custom" not in value:
            defaults = {k: v for k, v in value.items() if k in DEFAULT_CRITERIA}
            custom = {k: v for k, v in value.items() if k not in DEFAULT_CRITERIA}
            return {**defaults, "custom": custom}
        return value

    @field_validator("recommendation", mode="before")
    @classmethod
    def _tolerate_unknown_recommendation(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() not in {r.value for r in Recommendation}:
            return None
        return value.lower() if isinstance(value, str) else value


class VerificationRequest(BaseModel):
    """One candidate response to be judged."""

    id: str
    service: str
    original_prompt: str
    candidate_response: str
    context: dict[str, Any] | None = None
    history: list[dict[str, str]] | None = None
    criteria: VerificationCriteria = Field(default_factory=VerificationCriteria)
    user_id: str | None = None
    session_id: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)

    def with_response(self, candidate_response: str) -> "VerificationRequest":
        return self.model_copy(update={"candidate_response": candidate_response})


class RetryAttempt(BaseModel):
    """One transition from a failed attempt to the next one."""

    model_config = ConfigDict(frozen=True)

    attempt_number: int = Field(ge=1)
    timestamp: datetime = Field(default_factory=datetime.now)
    reason: str
    carried_issues: tuple[VerificationIssue, ...] = ()
