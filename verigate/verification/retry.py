"""Bounded verify/regenerate loop around the primary model.

    pending -> verifying -> approved | retrying | rejected | manual_review
    retrying -> verifying

Each failed verification feeds its critical and high issues, plus the
judge's feedback, into a regeneration prompt for the next attempt.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..clients.base import GenerationParams, PrimaryModelClient
from ..config import VerificationConfig
from ..costs import CostTracker
from ..errors import ErrorKind, ModelCallError
from ..logging_config import get_logger
from .models import (
    BaseVerificationResult,
    FinalOutcome,
    Recommendation,
    RetryAttempt,
    Severity,
    VerificationCriteria,
    VerificationIssue,
    VerificationRequest,
    classify_outcome,
)
from .orchestrator import VerificationOrchestrator

logger = get_logger(__name__)


class RetryState(str, Enum):
    PENDING = "pending"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    APPROVED = "approved"
    REJECTED = "rejected"
    MANUAL_REVIEW = "manual_review"


_TERMINAL_STATES = {
    FinalOutcome.APPROVED: RetryState.APPROVED,
    FinalOutcome.REJECTED: RetryState.REJECTED,
    FinalOutcome.MANUAL_REVIEW: RetryState.MANUAL_REVIEW,
}


@dataclass
class RetryOutcome:
    """What the loop ended with; never raised, always returned."""
    verified: bool
    result: BaseVerificationResult
    final_response: str
    attempts: list[RetryAttempt] = field(default_factory=list)
    verification_count: int = 0
    state: RetryState = RetryState.PENDING


def build_retry_prompt(
    original_prompt: str,
    issues: list[VerificationIssue],
    feedback: str | None = None,
) -> str:
    """Regeneration prompt carrying the blocking issues of the last attempt."""
    critical = [i for i in issues if i.severity == Severity.CRITICAL]
    high = [i for i in issues if i.severity == Severity.HIGH]

    def _line(issue: VerificationIssue) -> str:
        if issue.suggestion:
            return f"- {issue.description} ({issue.suggestion})"
        return f"- {issue.description}"

    sections = [f"ORIGINAL REQUEST:\n{original_prompt}", "PREVIOUS RESPONSE ISSUES IDENTIFIED:"]
    if critical:
        sections.append("CRITICAL ISSUES (MUST FIX):\n" + "\n".join(_line(i) for i in critical))
    if high:
        sections.append("HIGH PRIORITY ISSUES:\n" + "\n".join(_line(i) for i in high))
    if feedback:
        sections.append(f"SPECIFIC FEEDBACK:\n{feedback}")
    sections.append(
        "Please provide a corrected response that addresses all the issues above "
        "while maintaining accuracy and completeness."
    )
    return "\n\n".join(sections)


class RetryCoordinator:
    """Verify a candidate and regenerate it until approved or out of attempts.

    Example:
        coordinator = RetryCoordinator(orchestrator, primary, config)
        outcome = await coordinator.verify_with_retry(
            "cv-enhancement", prompt, first_draft
        )
        if not outcome.verified:
            queue_for_review(outcome.result.issues)
    """

    def __init__(
        self,
        orchestrator: VerificationOrchestrator,
        primary: PrimaryModelClient | None = None,
        config: VerificationConfig | None = None,
        cost_tracker: CostTracker | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.primary = primary
        self.config = config or VerificationConfig()
        self.cost_tracker = cost_tracker
        self._sleep = sleep

    @property
    def can_regenerate(self) -> bool:
        """Without a primary client every loop is a single verification."""
        return self.primary is not None

    async def verify_with_retry(
        self,
        service: str,
        original_prompt: str,
        initial_response: str,
        criteria: VerificationCriteria | None = None,
        *,
        context: dict[str, Any] | None = None,
        history: list[dict[str, str]] | None = None,
        request_id: str | None = None,
        attempt_log: list[RetryAttempt] | None = None,
    ) -> RetryOutcome:
        """Run the loop for one prompt.

        Args:
            service: Downstream service name, used in the judge prompt
            original_prompt: Prompt the initial response answered
            initial_response: First candidate from the primary model
            criteria: Criteria to judge against (all defaults if omitted)
            context: Extra context shown to the judge
            history: Prior conversation turns shown to the judge
            request_id: Id shared by every verification of this loop
            attempt_log: List to append RetryAttempts to as they happen,
                so a caller still sees them if the loop raises

        Returns:
            RetryOutcome with the last result and every recorded attempt

        Raises:
            ModelCallError: A FATAL primary error, or a RETRYABLE one with no
                attempts left
        """
        max_retries = self.config.max_retries
        attempts = attempt_log if attempt_log is not None else []
        request = VerificationRequest(
            id=request_id or f"req_{uuid.uuid4().hex[:12]}",
            service=service,
            original_prompt=original_prompt,
            candidate_response=initial_response,
            context=context,
            history=history,
            criteria=criteria or VerificationCriteria(),
            user_id=(context or {}).get("user_id"),
            session_id=(context or {}).get("session_id"),
        )

        candidate = initial_response
        regeneration_prompt: str | None = None
        carried: tuple[VerificationIssue, ...] = ()
        verification_count = 0
        attempt = 1

        while True:
            if regeneration_prompt is not None:
                try:
                    candidate = await self._regenerate(regeneration_prompt)
                except ModelCallError as e:
                    if e.kind is ErrorKind.FATAL or attempt >= max_retries:
                        logger.error(
                            "Regeneration failed on attempt %d/%d: %s",
                            attempt,
                            max_retries,
                            e,
                        )
                        raise
                    logger.warning(
                        "Regeneration transport error on attempt %d/%d, retrying",
                        attempt,
                        max_retries,
                        exc_info=True,
                    )
                    attempts.append(
                        RetryAttempt(
                            attempt_number=attempt,
                            reason="transport_error",
                            carried_issues=carried,
                        )
                    )
                    await self._backoff(attempt)
                    attempt += 1
                    continue
                regeneration_prompt = None

            budget_left = self.can_regenerate and attempt < max_retries
            result = await self.orchestrator.verify(
                request.with_response(candidate),
                retry_budget_remaining=budget_left,
            )
            verification_count += 1

            if result.recommendation == Recommendation.APPROVE:
                logger.info("Verification approved on attempt %d/%d", attempt, max_retries)
                return RetryOutcome(
                    verified=True,
                    result=result,
                    final_response=candidate,
                    attempts=attempts,
                    verification_count=verification_count,
                    state=RetryState.APPROVED,
                )

            if not budget_left:
                outcome = classify_outcome(result)
                logger.warning(
                    "Verification unapproved after %d verification(s): score=%.1f outcome=%s",
                    verification_count,
                    result.overall_score,
                    outcome.value,
                )
                return RetryOutcome(
                    verified=False,
                    result=result,
                    final_response=candidate,
                    attempts=attempts,
                    verification_count=verification_count,
                    state=_TERMINAL_STATES[outcome],
                )

            carried = tuple(result.issues_at_least(Severity.HIGH))
            if result.failure is not None:
                # The verifier broke, not the candidate: judge it again as is.
                reason = result.failure.value
            else:
                reason = "verification_failed"
                regeneration_prompt = build_retry_prompt(
                    original_prompt, result.issues, result.feedback
                )

            attempts.append(
                RetryAttempt(attempt_number=attempt, reason=reason, carried_issues=carried)
            )
            logger.info(
                "Verification failed, retry attempt %d/%d: reason=%s score=%.1f",
                attempt,
                max_retries,
                reason,
                result.overall_score,
            )
            await self._backoff(attempt)
            attempt += 1

    async def _regenerate(self, prompt: str) -> str:
        params = GenerationParams(
            model=self.config.primary_model,
            timeout_ms=self.config.primary_timeout_ms,
        )
        response = await self.primary.generate(prompt, params)
        if self.cost_tracker:
            self.cost_tracker.track_call("primary", self.config.primary_model, prompt, response)
        return response

    async def _backoff(self, attempt: int) -> None:
        delay = self.config.retry_delay_seconds * attempt
        if delay > 0:
            await self._sleep(delay)
