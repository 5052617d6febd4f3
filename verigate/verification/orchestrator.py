"""Cross-model verification of primary model output.

A secondary model scores the candidate response against explicit criteria,
then a deterministic safety pass checks it for structured personal
identifiers. The combined evidence is reduced to one recommendation:
approve, retry or manual_review.
"""

import asyncio
import json
import re
import time

from pydantic import ValidationError

from ..clients.base import SecondaryModelClient
from ..config import VerificationConfig
from ..costs import CostTracker
from ..errors import ParseError, TransportError
from ..logging_config import get_logger
from .models import (
    BaseVerificationResult,
    DetailedScores,
    IssueCategory,
    JudgmentPayload,
    Recommendation,
    Severity,
    VerificationCriteria,
    VerificationIssue,
    VerificationRequest,
    VerifierFailure,
    build_result,
)
from .pii import PIIDetector

logger = get_logger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)

CRITERIA_QUESTIONS = {
    "accuracy": "ACCURACY: Is the information factually correct and based on the provided context?",
    "completeness": "COMPLETENESS: Does the response fully address all aspects of the prompt?",
    "relevance": "RELEVANCE: Is the response directly relevant to the question asked?",
    "consistency": "CONSISTENCY: Is the response internally consistent and logical?",
    "safety": "SAFETY: Does the response avoid harmful, biased, or inappropriate content?",
    "format": "FORMAT: Is the response properly structured and formatted as requested?",
}

RESPONSE_SHAPE = """{
  "verified": boolean,
  "confidence": number (0-1),
  "overallScore": number (0-100),
  "detailedScores": {
%s
  },
  "issues": [
    {
      "category": "accuracy|completeness|relevance|consistency|safety|format|custom",
      "severity": "low|medium|high|critical",
      "description": "Detailed description of the issue",
      "location": "Where in the response (optional)",
      "suggestion": "How to fix this issue"
    }
  ],
  "recommendation": "approve|retry|manual_review",
  "feedback": "Detailed feedback for improvement (if recommendation is retry)"
}"""


def strip_code_fence(raw: str) -> str:
    text = raw.strip()
    match = _CODE_FENCE.match(text)
    return match.group(1) if match else text


def parse_judgment(raw: str) -> JudgmentPayload:
    """Parse a judge reply strictly.

    The reply must be one JSON object (optionally wrapped in a markdown code
    fence) that validates against JudgmentPayload.

    Raises:
        ParseError: For empty replies, invalid JSON, non-object JSON, or a
            payload missing required fields.
    """
    if not raw or not raw.strip():
        raise ParseError("Empty response from verification model", raw=raw)

    try:
        data = json.loads(strip_code_fence(raw))
    except json.JSONDecodeError as e:
        raise ParseError(f"Judge reply is not valid JSON: {e}", raw=raw) from e

    if not isinstance(data, dict):
        raise ParseError(f"Judge reply is a JSON {type(data).__name__}, expected an object", raw=raw)

    try:
        return JudgmentPayload.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Judge reply does not match the judgment schema: {e}", raw=raw) from e


def weighted_score(scores: DetailedScores, criteria: VerificationCriteria) -> float:
    """Weighted mean of every enabled criterion; unscored criteria count as 0."""
    weights = criteria.weights()
    total_weight = sum(weights.values())
    if total_weight <= 0:
        return 0.0
    total = sum(weight * (scores.score_for(name) or 0.0) for name, weight in weights.items())
    return max(0.0, min(100.0, total / total_weight))


class VerificationOrchestrator:
    """Judge a candidate response with the secondary model.

    Verifier infrastructure failures (timeouts, transport errors, malformed
    replies) never approve a response: they degrade into a manual_review
    result with `failure` set. Vendor quota errors propagate to the caller.
    """

    def __init__(
        self,
        judge: SecondaryModelClient,
        config: VerificationConfig | None = None,
        detector: PIIDetector | None = None,
        cost_tracker: CostTracker | None = None,
    ):
        self.judge = judge
        self.config = config or VerificationConfig()
        self.detector = detector or PIIDetector()
        self.cost_tracker = cost_tracker

    @property
    def judge_model(self) -> str:
        return getattr(self.judge, "model", None) or self.config.judge_model

    async def verify(
        self,
        request: VerificationRequest,
        *,
        retry_budget_remaining: bool = True,
    ) -> BaseVerificationResult:
        """Score one candidate response.

        Args:
            request: The prompt/response pair plus criteria and context
            retry_budget_remaining: Whether a failed result may still
                recommend retry

        Returns:
            The result variant matching its recommendation
        """
        start_time = time.time()
        prompt = self.build_prompt(request)
        logger.info("Verifying response: request=%s service=%s", request.id, request.service)

        try:
            raw = await self._call_judge(prompt)
            judgment = parse_judgment(raw)
        except (TransportError, ParseError) as e:
            failure = (
                VerifierFailure.PARSE_ERROR
                if isinstance(e, ParseError)
                else VerifierFailure.TRANSPORT_ERROR
            )
            logger.warning(
                "Verification degraded to manual review: request=%s failure=%s",
                request.id,
                failure.value,
                exc_info=True,
            )
            return self._degraded_result(failure, str(e), start_time)

        scores = judgment.detailed_scores.model_copy(deep=True)
        issues = list(judgment.issues)
        self.apply_safety_pass(request.candidate_response, scores, issues)

        overall_score = weighted_score(scores, request.criteria)
        recommendation = self.recommend(
            verified=judgment.verified,
            overall_score=overall_score,
            confidence=judgment.confidence,
            issues=issues,
            retry_budget_remaining=retry_budget_remaining,
        )

        result = build_result(
            recommendation,
            verified=judgment.verified,
            confidence=judgment.confidence,
            overall_score=overall_score,
            detailed_scores=scores,
            issues=issues,
            feedback=judgment.feedback,
            processing_time_ms=(time.time() - start_time) * 1000,
        )
        logger.info(
            "Verification complete: request=%s score=%.1f confidence=%.2f recommendation=%s issues=%d",
            request.id,
            result.overall_score,
            result.confidence,
            recommendation.value,
            len(issues),
        )
        return result

    def build_prompt(self, request: VerificationRequest) -> str:
        criteria = request.criteria
        sections = [
            "TASK: Evaluate the quality and appropriateness of an AI response.",
            f"ORIGINAL PROMPT:\n{request.original_prompt}",
            f"AI RESPONSE:\n{request.candidate_response}",
        ]
        if request.context:
            sections.append(f"CONTEXT:\n{json.dumps(request.context, indent=2, default=str)}")
        if request.history:
            history = "\n".join(
                f"{msg.get('role', 'user')}: {msg.get('content', '')}" for msg in request.history
            )
            sections.append(f"CONVERSATION HISTORY:\n{history}")

        criteria_lines = [f"- {CRITERIA_QUESTIONS[name]}" for name in criteria.enabled_defaults()]
        criteria_lines += [
            f"- {c.name.upper()}: {c.description} (Weight: {c.weight:g})" for c in criteria.custom
        ]
        sections.append("EVALUATION CRITERIA:\n" + "\n".join(criteria_lines))

        sections.append(
            "SPECIFIC EVALUATION REQUIREMENTS:\n"
            f'1. SERVICE CONTEXT: This is for the "{request.service}" service in a CV analysis platform\n'
            "2. USER SAFETY: Ensure no PII exposure or security vulnerabilities\n"
            "3. BUSINESS LOGIC: Verify response aligns with CV processing workflows\n"
            "4. DATA INTEGRITY: Check that extracted data is realistic and properly formatted"
        )

        score_fields = [f'    "{name}": number (0-100)' for name in criteria.enabled_defaults()]
        score_fields += [f'    "{c.name}": number (0-100)' for c in criteria.custom]
        sections.append(
            "Please evaluate the response and return a JSON object with this exact structure:\n"
            + RESPONSE_SHAPE % ",\n".join(score_fields)
        )
        return "\n\n".join(sections)

    def apply_safety_pass(
        self,
        response: str,
        scores: DetailedScores,
        issues: list[VerificationIssue],
    ) -> None:
        """Deterministic checks that do not depend on the judge."""
        for kind in self.detector.detect_kinds(response):
            issues.append(
                VerificationIssue(
                    category=IssueCategory.SAFETY,
                    severity=Severity.HIGH,
                    description=f"Potential PII detected in response ({kind.replace('_', ' ')})",
                    suggestion="Remove or redact sensitive information",
                )
            )
            scores.safety = min(scores.safety, self.config.safety_score_cap)

        if len(response.strip()) < self.config.min_response_length:
            issues.append(
                VerificationIssue(
                    category=IssueCategory.COMPLETENESS,
                    severity=Severity.MEDIUM,
                    description="Response appears too short to be complete",
                    suggestion="Provide more detailed analysis",
                )
            )

    def recommend(
        self,
        *,
        verified: bool,
        overall_score: float,
        confidence: float,
        issues: list[VerificationIssue],
        retry_budget_remaining: bool,
    ) -> Recommendation:
        if (
            verified
            and overall_score >= self.config.score_threshold
            and confidence >= self.config.confidence_threshold
        ):
            return Recommendation.APPROVE

        needs_human = any(
            i.severity == Severity.CRITICAL
            or (i.category == IssueCategory.SAFETY and i.severity.rank >= Severity.HIGH.rank)
            for i in issues
        )
        if needs_human:
            return Recommendation.MANUAL_REVIEW
        if retry_budget_remaining:
            return Recommendation.RETRY
        return Recommendation.MANUAL_REVIEW

    async def _call_judge(self, prompt: str) -> str:
        timeout = self.config.judge_timeout_ms / 1000
        try:
            raw = await asyncio.wait_for(self.judge.judge(prompt), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Verification model did not answer within {self.config.judge_timeout_ms}ms",
                model=self.judge_model,
            ) from e

        if self.cost_tracker:
            self.cost_tracker.track_call("secondary", self.judge_model, prompt, raw or "")
        return raw

    def _degraded_result(
        self,
        failure: VerifierFailure,
        detail: str,
        start_time: float,
    ) -> BaseVerificationResult:
        return build_result(
            Recommendation.MANUAL_REVIEW,
            verified=False,
            confidence=0.0,
            overall_score=0.0,
            detailed_scores=DetailedScores(),
            issues=[
                VerificationIssue(
                    category=IssueCategory.SAFETY,
                    severity=Severity.CRITICAL,
                    description=f"Verification service failed: {detail}",
                    suggestion="Manual review required",
                )
            ],
            processing_time_ms=(time.time() - start_time) * 1000,
            failure=failure,
        )
