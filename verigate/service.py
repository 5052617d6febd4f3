"""Library call surface: deduplicated, rate-limited, verified generation.

    caller -> DeduplicationGate.execute_once(key)
           -> RateLimiter.check(service)
           -> factory() (primary model)
           -> RetryCoordinator.verify_with_retry()
           -> AuditLog.record()
           -> result cached under key, returned to every waiter
"""

import asyncio
import hashlib
import json
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, NoReturn

from rich.console import Console

from .audit import AuditEntry, AuditLog, AuditRecord
from .clients.base import GenerationParams, PrimaryModelClient, SecondaryModelClient
from .config import VerificationConfig
from .costs import CostTracker, PipelineCosts
from .dedup import DeduplicationGate, make_fingerprint
from .errors import ModelCallError, PipelineError, VerigateError
from .logging_config import get_logger
from .ratelimit import RateLimiter
from .verification import (
    BaseVerificationResult,
    DetailedScores,
    FinalOutcome,
    IssueCategory,
    Recommendation,
    RetryAttempt,
    RetryCoordinator,
    Severity,
    VerificationCriteria,
    VerificationIssue,
    VerificationOrchestrator,
    VerificationRequest,
    build_result,
    classify_outcome,
)
from .verification.orchestrator import strip_code_fence

logger = get_logger(__name__)

HEALTH_CHECK_PROMPT = 'Health check. Reply with the JSON object {"status": "ok"}.'
HEALTH_CHECK_TIMEOUT_S = 5.0


@dataclass
class VerifiedResult:
    """What a caller gets back for one logical request."""
    verified: bool
    data: str
    audit_id: str | None
    was_from_cache: bool = False
    was_duplicate: bool = False
    result: BaseVerificationResult | None = None
    attempts: list[RetryAttempt] = field(default_factory=list)

    @property
    def outcome(self) -> FinalOutcome:
        return classify_outcome(self.result)


class VerifiedGenerationService:
    """Owns the gate, limiter, verifier, retry loop and audit log.

    Nothing here is a module-level singleton: build one service per process
    (see create_service) and pass it where it is needed.

    Example:
        async with create_service() as service:
            result = await service.get_verified_result(
                make_fingerprint("recommendations", job_id),
                prompt,
                lambda: primary.generate(prompt),
                service="cv-recommendations",
            )
            if not result.verified:
                ...
    """

    def __init__(
        self,
        judge: SecondaryModelClient,
        primary: PrimaryModelClient | None = None,
        config: VerificationConfig | None = None,
        *,
        gate: DeduplicationGate | None = None,
        limiter: RateLimiter | None = None,
        audit_log: AuditLog | None = None,
        orchestrator: VerificationOrchestrator | None = None,
        coordinator: RetryCoordinator | None = None,
        cost_tracker: CostTracker | None = None,
        console: Console | None = None,
    ):
        self.config = config or VerificationConfig()
        self.judge = judge
        self.primary = primary
        self.console = console or Console()
        self.cost_tracker = cost_tracker or CostTracker()

        self.gate = gate or DeduplicationGate(
            ttl_seconds=self.config.cache_ttl_seconds,
            cache_errors=self.config.cache_errors,
            sweep_interval_seconds=self.config.sweep_interval_seconds,
        )
        self.limiter = limiter or RateLimiter(
            limit=self.config.rate_limit_per_minute,
            window_seconds=self.config.rate_limit_window_seconds,
            sweep_interval_seconds=self.config.sweep_interval_seconds,
        )
        self.audit_log = audit_log or AuditLog(
            capacity=self.config.audit_capacity,
            sanitize=self.config.sanitize_logs_for_pii,
            detailed_logging=self.config.enable_detailed_logging,
        )
        self.orchestrator = orchestrator or VerificationOrchestrator(
            judge,
            self.config,
            cost_tracker=self.cost_tracker,
        )
        self.coordinator = coordinator or RetryCoordinator(
            self.orchestrator,
            primary,
            self.config,
            cost_tracker=self.cost_tracker,
        )

    async def start(self) -> None:
        """Start the background sweeps of the gate and the limiter."""
        await self.gate.start()
        await self.limiter.start()

    async def stop(self) -> None:
        await self.gate.stop()
        await self.limiter.stop()

    async def __aenter__(self) -> "VerifiedGenerationService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def verification_enabled(self) -> bool:
        return self.config.enable_verification

    def set_verification(self, enabled: bool) -> None:
        """Turn verification of generated responses on or off at runtime."""
        self.update_config(enable_verification=enabled)
        self._log(f"Verification {'enabled' if enabled else 'disabled'}")

    def update_config(self, **overrides: Any) -> VerificationConfig:
        """Replace config fields at runtime and push them to every component.

        Pipelines already running may pick up the new values part way
        through. Audit capacity is fixed once the log exists.
        """
        config = self.config.with_overrides(**overrides)
        self.config = config
        self.orchestrator.config = config
        self.coordinator.config = config
        self.limiter.limit = config.rate_limit_per_minute
        self.limiter.window_seconds = config.rate_limit_window_seconds
        self.gate.ttl_seconds = config.cache_ttl_seconds
        self.gate.cache_errors = config.cache_errors
        self.audit_log.sanitize = config.sanitize_logs_for_pii
        self.audit_log.detailed_logging = config.enable_detailed_logging
        logger.info("Configuration updated: %s", overrides)
        return config

    def _log(self, message: str, style: str | None = None) -> None:
        """Log a message to the console."""
        if style:
            self.console.print(f"[VERIGATE] {message}", style=style)
        else:
            self.console.print(f"[VERIGATE] {message}")

    async def get_verified_result(
        self,
        key: str,
        original_prompt: str,
        factory: Callable[[], Awaitable[str]],
        criteria: VerificationCriteria | None = None,
        *,
        service: str = "default",
        force_regenerate: bool = False,
        timeout_ms: float | None = None,
        context: dict[str, Any] | None = None,
    ) -> VerifiedResult:
        """Generate, verify and audit one logical request exactly once.

        Concurrent calls with the same key share one execution; a settled
        result is reused for cache_ttl_seconds.

        Args:
            key: Request fingerprint (see make_fingerprint)
            original_prompt: Prompt the factory answers, shown to the judge
            factory: Coroutine function calling the primary model
            criteria: Criteria to judge against (all defaults if omitted)
            service: Downstream service name for rate limiting and auditing
            force_regenerate: Bypass the in-flight entry and the cache
            timeout_ms: Stop waiting after this long; the work continues
            context: Extra context for the judge; user_id and session_id
                keys are copied onto the audit record

        Returns:
            VerifiedResult; verified=False when retries were exhausted

        Raises:
            InternalRateLimitError: The local limiter rejected the call
            VendorRateLimitError: A model vendor rejected the call
            TransportError: The primary model kept failing
            PipelineTimeoutError: timeout_ms elapsed
            PipelineError: Anything unexpected, after it was audited
        """

        async def _pipeline() -> VerifiedResult:
            return await self._run_pipeline(
                service=service,
                original_prompt=original_prompt,
                factory=factory,
                criteria=criteria,
                context=context,
            )

        gated = await self.gate.execute_once(
            key,
            _pipeline,
            force_regenerate=force_regenerate,
            timeout_ms=timeout_ms,
            context=service,
        )
        return replace(
            gated.value,
            was_from_cache=gated.was_from_cache,
            was_duplicate=gated.was_duplicate,
        )

    async def generate_verified(
        self,
        prompt: str,
        criteria: VerificationCriteria | None = None,
        *,
        service: str = "default",
        params: GenerationParams | None = None,
        key: str | None = None,
        force_regenerate: bool = False,
        timeout_ms: float | None = None,
        context: dict[str, Any] | None = None,
    ) -> VerifiedResult:
        """Ask the primary model and verify the answer.

        The request key defaults to a hash of the service and prompt, so
        identical concurrent prompts are generated once.
        """
        if self.primary is None:
            raise RuntimeError("generate_verified needs a primary model client")

        primary = self.primary
        params = params or GenerationParams(
            model=self.config.primary_model,
            timeout_ms=self.config.primary_timeout_ms,
        )
        key = key or make_fingerprint(
            "generate", service, hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]
        )
        return await self.get_verified_result(
            key,
            prompt,
            lambda: primary.generate(prompt, params),
            criteria,
            service=service,
            force_regenerate=force_regenerate,
            timeout_ms=timeout_ms,
            context=context,
        )

    async def verify_batch(
        self,
        items: list[dict[str, Any]],
        max_concurrency: int = 3,
        return_exceptions: bool = False,
    ) -> list[VerifiedResult | BaseException]:
        """generate_verified over many prompts, at most max_concurrency at once.

        Each item holds generate_verified keyword arguments and must include
        "prompt". Results come back in input order.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        semaphore = asyncio.Semaphore(max_concurrency)

        async def _one(item: dict[str, Any]) -> VerifiedResult:
            async with semaphore:
                return await self.generate_verified(**item)

        self._log(f"Verifying batch of {len(items)} prompts (concurrency {max_concurrency})", style="dim")
        return await asyncio.gather(
            *(_one(item) for item in items),
            return_exceptions=return_exceptions,
        )

    async def verify_response(
        self,
        original_prompt: str,
        response: str,
        criteria: VerificationCriteria | None = None,
        *,
        service: str = "default",
        context: dict[str, Any] | None = None,
        history: list[dict[str, str]] | None = None,
    ) -> VerifiedResult:
        """Verify one existing response once, without retries, and audit it."""
        start_time = time.time()
        ctx = context or {}
        entry = AuditEntry(
            request_id=_new_request_id(),
            service=service,
            original_prompt=original_prompt,
            candidate_response=response,
            user_id=ctx.get("user_id"),
            session_id=ctx.get("session_id"),
        )

        with self.cost_tracker.pipeline() as costs:
            try:
                self.limiter.check(service)
                request = VerificationRequest(
                    id=entry.request_id,
                    service=service,
                    original_prompt=original_prompt,
                    candidate_response=response,
                    context=context,
                    history=history,
                    criteria=criteria or VerificationCriteria(),
                    user_id=entry.user_id,
                    session_id=entry.session_id,
                )
                result = await self.orchestrator.verify(request, retry_budget_remaining=False)
            except Exception as e:
                self._raise_audited(entry, e, start_time, costs)

        entry.result = result
        entry.final_outcome = classify_outcome(result)
        entry.total_processing_time_ms = (time.time() - start_time) * 1000
        entry.api_costs = costs.freeze()
        audit_id = self.audit_log.record(entry)

        return VerifiedResult(
            verified=result.recommendation == Recommendation.APPROVE,
            data=response,
            audit_id=audit_id,
            result=result,
        )

    async def _run_pipeline(
        self,
        *,
        service: str,
        original_prompt: str,
        factory: Callable[[], Awaitable[str]],
        criteria: VerificationCriteria | None,
        context: dict[str, Any] | None,
    ) -> VerifiedResult:
        start_time = time.time()
        ctx = context or {}
        entry = AuditEntry(
            request_id=_new_request_id(),
            service=service,
            original_prompt=original_prompt,
            candidate_response="",
            user_id=ctx.get("user_id"),
            session_id=ctx.get("session_id"),
        )

        with self.cost_tracker.pipeline() as costs:
            try:
                self.limiter.check(service)
                response = await factory()
                self.cost_tracker.track_call(
                    "primary", self.config.primary_model, original_prompt, response
                )
                if not self.config.enable_verification:
                    logger.info("Verification disabled, returning %s response unverified", service)
                    return VerifiedResult(verified=False, data=response, audit_id=None)
                entry.candidate_response = response
                outcome = await self.coordinator.verify_with_retry(
                    service,
                    original_prompt,
                    response,
                    criteria,
                    context=context,
                    request_id=entry.request_id,
                    attempt_log=entry.retry_attempts,
                )
            except Exception as e:
                self._raise_audited(entry, e, start_time, costs)

        entry.candidate_response = outcome.final_response
        entry.result = outcome.result
        entry.final_outcome = classify_outcome(outcome.result)
        entry.total_processing_time_ms = (time.time() - start_time) * 1000
        entry.api_costs = costs.freeze()
        audit_id = self.audit_log.record(entry)

        if outcome.verified:
            self._log(
                f"Verified {service} response (score {outcome.result.overall_score:.1f}, "
                f"{outcome.verification_count} verification(s))",
                style="green",
            )
        else:
            self._log(
                f"Unverified {service} response after {outcome.verification_count} "
                f"verification(s): {entry.final_outcome.value}",
                style="yellow",
            )

        return VerifiedResult(
            verified=outcome.verified,
            data=outcome.final_response,
            audit_id=audit_id,
            result=outcome.result,
            attempts=list(outcome.attempts),
        )

    def _raise_audited(
        self,
        entry: AuditEntry,
        error: Exception,
        start_time: float,
        costs: PipelineCosts,
    ) -> NoReturn:
        """Record a failed pipeline, then re-raise.

        Taxonomy errors propagate unchanged; anything else is wrapped in a
        PipelineError carrying the audit id.
        """
        entry.result = build_result(
            Recommendation.MANUAL_REVIEW,
            verified=False,
            confidence=0.0,
            overall_score=0.0,
            detailed_scores=DetailedScores(),
            issues=[
                VerificationIssue(
                    category=IssueCategory.SAFETY,
                    severity=Severity.CRITICAL,
                    description=f"Pipeline failed: {type(error).__name__}: {error}",
                    suggestion="Manual review required",
                )
            ],
        )
        entry.final_outcome = FinalOutcome.REJECTED
        entry.error = f"{type(error).__name__}: {error}"
        entry.total_processing_time_ms = (time.time() - start_time) * 1000
        entry.api_costs = costs.freeze()
        audit_id = self.audit_log.record(entry)

        if isinstance(error, VerigateError):
            logger.warning(
                "Pipeline for %s failed [%s]: %s", entry.service, audit_id, error
            )
            raise error

        logger.error(
            "Unexpected pipeline failure for %s [%s]", entry.service, audit_id, exc_info=error
        )
        self._log(f"Pipeline error for {entry.service}: {error}", style="red")
        raise PipelineError(
            f"Verification pipeline failed for service {entry.service}: {error}",
            audit_id=audit_id,
            service=entry.service,
        ) from error

    def get_stats(self) -> dict:
        """Audit statistics plus gate, limiter and cost state."""
        return {
            **self.audit_log.get_stats(),
            "gate": self.gate.get_stats(),
            "rate_limits": self.limiter.get_stats(),
            "costs": self.cost_tracker.get_summary().to_dict(),
        }

    def get_audit_logs(self, limit: int = 50) -> list[AuditRecord]:
        return self.audit_log.get_audit_logs(limit)

    async def health_check(self) -> dict:
        """Probe both models.

        unhealthy when the primary model cannot be reached, degraded when only
        the verifier is failing (everything would go to manual review),
        healthy otherwise.
        """
        start_time = time.time()
        details: dict[str, Any] = {}

        primary_ok = True
        if self.primary is not None:
            try:
                await asyncio.wait_for(
                    self.primary.generate("Health check", GenerationParams(max_tokens=10)),
                    timeout=HEALTH_CHECK_TIMEOUT_S,
                )
                details["primary"] = {"status": "connected", "model": self.config.primary_model}
            except (ModelCallError, asyncio.TimeoutError) as e:
                primary_ok = False
                details["primary"] = {"status": "error", "error": str(e)}
        else:
            details["primary"] = {"status": "not_configured"}

        verifier_ok = True
        try:
            raw = await asyncio.wait_for(
                self.judge.judge(HEALTH_CHECK_PROMPT), timeout=HEALTH_CHECK_TIMEOUT_S
            )
            if not isinstance(json.loads(strip_code_fence(raw or "")), dict):
                raise ValueError("verifier reply is not a JSON object")
            details["verifier"] = {"status": "connected", "model": self.orchestrator.judge_model}
        except (ModelCallError, asyncio.TimeoutError, ValueError) as e:
            verifier_ok = False
            details["verifier"] = {"status": "error", "error": str(e)}

        if not primary_ok:
            status = "unhealthy"
        elif not verifier_ok:
            status = "degraded"
        else:
            status = "healthy"

        details["response_time_ms"] = (time.time() - start_time) * 1000
        details["config"] = {
            "verification_enabled": self.config.enable_verification,
            "max_retries": self.config.max_retries,
            "confidence_threshold": self.config.confidence_threshold,
            "score_threshold": self.config.score_threshold,
            "rate_limit_per_minute": self.config.rate_limit_per_minute,
        }
        if status != "healthy":
            logger.warning("Health check %s: %s", status, details)

        return {
            "status": status,
            "details": details,
            "timestamp": datetime.now().isoformat(),
        }


def _new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def create_service(
    config: VerificationConfig | None = None,
    primary: PrimaryModelClient | None = None,
    judge: SecondaryModelClient | None = None,
    console: Console | None = None,
) -> VerifiedGenerationService:
    """Build a service wired to Claude (primary) and OpenAI (judge).

    Clients that are passed in are used as is; the rest are created from the
    config and the ANTHROPIC_API_KEY / OPENAI_API_KEY environment variables.
    """
    config = config or VerificationConfig.from_env()

    if primary is None:
        from .clients.claude import ClaudePrimaryClient

        primary = ClaudePrimaryClient(
            model=config.primary_model,
            timeout_ms=config.primary_timeout_ms,
        )
    if judge is None:
        from .clients.openai_judge import OpenAIJudgeClient

        judge = OpenAIJudgeClient(
            model=config.judge_model,
            timeout_s=config.judge_timeout_ms / 1000,
            temperature=config.judge_temperature,
            max_tokens=config.judge_max_tokens,
        )

    return VerifiedGenerationService(judge, primary, config, console=console)
