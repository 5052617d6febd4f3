import asyncio
import json

import pytest
from pydantic import ValidationError

from conftest import CLEAN_RESPONSE, FakeJudge, judgment, low_judgment
from verigate.costs import CostTracker
from verigate.errors import ParseError, TransportError, VendorRateLimitError
from verigate.verification import (
    ApprovedResult,
    CustomCriterion,
    IssueCategory,
    ManualReviewResult,
    Recommendation,
    RetryResult,
    Severity,
    VerificationCriteria,
    VerificationOrchestrator,
    VerificationRequest,
    VerifierFailure,
    parse_judgment,
)


def make_request(response: str = CLEAN_RESPONSE, **kwargs) -> VerificationRequest:
    return VerificationRequest(
        id="req_test",
        service=kwargs.pop("service", "cv-enhancement"),
        original_prompt=kwargs.pop("prompt", "Summarise this CV for a recruiter."),
        candidate_response=response,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_high_scoring_judgment_is_approved(config):
    orchestrator = VerificationOrchestrator(FakeJudge(judgment(85)), config)

    result = await orchestrator.verify(make_request())

    assert isinstance(result, ApprovedResult)
    assert result.recommendation == Recommendation.APPROVE
    assert result.overall_score == pytest.approx(85)
    assert result.failure is None


@pytest.mark.asyncio
async def test_overall_score_is_average_of_six_default_criteria(config):
    scores = {
        "accuracy": 90,
        "completeness": 80,
        "relevance": 70,
        "consistency": 60,
        "safety": 100,
        "format": 50,
    }
    # The judge's own overallScore is ignored in favour of the weighted mean.
    orchestrator = VerificationOrchestrator(FakeJudge(judgment(10, scores=scores)), config)

    result = await orchestrator.verify(make_request())

    assert result.overall_score == pytest.approx(75.0)
    assert 0 <= result.overall_score <= 100


@pytest.mark.asyncio
async def test_out_of_range_scores_are_clamped(config):
    reply = judgment(scores={"accuracy": 250, "format": -40}, confidence=3.0)
    orchestrator = VerificationOrchestrator(FakeJudge(reply), config)

    result = await orchestrator.verify(make_request())

    assert result.detailed_scores.accuracy == 100
    assert result.detailed_scores.format == 0
    assert result.confidence == 1.0
    assert 0 <= result.overall_score <= 100


@pytest.mark.asyncio
async def test_custom_criteria_are_weighted_and_unscored_ones_count_as_zero(config):
    criteria = VerificationCriteria(
        accuracy=True,
        completeness=False,
        relevance=False,
        consistency=False,
        safety=False,
        format=False,
        custom=[
            CustomCriterion(name="ats_keywords", description="Uses job keywords", weight=3.0),
            CustomCriterion(name="tone", description="Professional tone", weight=1.0),
        ],
    )
    reply = judgment(scores={"accuracy": 80, "ats_keywords": 60})
    orchestrator = VerificationOrchestrator(FakeJudge(reply), config)

    result = await orchestrator.verify(make_request(criteria=criteria))

    # (80 * 1 + 60 * 3 + 0 * 1) / 5
    assert result.overall_score == pytest.approx(52.0)
    assert result.detailed_scores.custom == {"ats_keywords": 60}


@pytest.mark.parametrize("name", ["custom", "safety", "Accuracy", " format "])
def test_custom_criterion_names_cannot_shadow_score_fields(name):
    with pytest.raises(ValidationError, match="reserved"):
        CustomCriterion(name=name, description="clashes with a built-in score field")


def test_custom_criterion_names_must_be_unique():
    with pytest.raises(ValidationError, match="unique"):
        VerificationCriteria(
            custom=[
                CustomCriterion(name="ats", description="Uses job keywords"),
                CustomCriterion(name="ats", description="Uses job keywords again"),
            ]
        )


@pytest.mark.asyncio
async def test_every_custom_criterion_score_counts_towards_overall(config):
    criteria = VerificationCriteria(
        custom=[
            CustomCriterion(name="ats_keywords", description="Uses job keywords", weight=2.0),
            CustomCriterion(name="tone", description="Professional tone"),
        ],
    )
    reply = judgment(90, scores={"ats_keywords": 90, "tone": 90})
    orchestrator = VerificationOrchestrator(FakeJudge(reply), config)

    result = await orchestrator.verify(make_request(criteria=criteria))

    assert result.detailed_scores.custom == {"ats_keywords": 90, "tone": 90}
    assert result.overall_score == pytest.approx(90.0)


@pytest.mark.asyncio
async def test_prompt_lists_enabled_criteria_and_json_shape(config):
    judge = FakeJudge(judgment())
    criteria = VerificationCriteria(
        format=False,
        custom=[CustomCriterion(name="ats_keywords", description="Uses job keywords", weight=2)],
    )
    orchestrator = VerificationOrchestrator(judge, config)

    await orchestrator.verify(
        make_request(criteria=criteria, context={"job_title": "SRE"}, history=[{"role": "user", "content": "hi"}])
    )

    prompt = judge.prompts[0]
    assert "ACCURACY:" in prompt
    assert "FORMAT:" not in prompt
    assert "ATS_KEYWORDS: Uses job keywords (Weight: 2)" in prompt
    assert '"cv-enhancement" service' in prompt
    assert '"job_title": "SRE"' in prompt
    assert "user: hi" in prompt
    assert '"detailedScores"' in prompt


@pytest.mark.asyncio
async def test_pii_caps_safety_score_and_adds_issue(config):
    response = CLEAN_RESPONSE + " Contact SSN 123-45-6789 for references."
    orchestrator = VerificationOrchestrator(FakeJudge(judgment(95)), config)

    result = await orchestrator.verify(make_request(response))

    assert result.detailed_scores.safety <= 30
    safety_issues = [i for i in result.issues if i.category == IssueCategory.SAFETY]
    assert len(safety_issues) == 1
    assert safety_issues[0].severity == Severity.HIGH
    # (95 * 5 + 30) / 6
    assert result.overall_score == pytest.approx(84.1666, rel=1e-3)


@pytest.mark.asyncio
async def test_each_pii_kind_adds_its_own_issue(config):
    response = CLEAN_RESPONSE + " Email bob@example.com or call 555-123-4567."
    orchestrator = VerificationOrchestrator(FakeJudge(judgment(95)), config)

    result = await orchestrator.verify(make_request(response))

    safety_issues = [i for i in result.issues if i.category == IssueCategory.SAFETY]
    assert len(safety_issues) == 2


@pytest.mark.asyncio
async def test_short_response_gets_completeness_issue(config):
    orchestrator = VerificationOrchestrator(FakeJudge(judgment(95)), config)

    result = await orchestrator.verify(make_request("Too short."))

    assert any(
        i.category == IssueCategory.COMPLETENESS and i.severity == Severity.MEDIUM
        for i in result.issues
    )


@pytest.mark.asyncio
async def test_low_score_recommends_retry_while_budget_remains(config):
    orchestrator = VerificationOrchestrator(FakeJudge(low_judgment(40)), config)

    with_budget = await orchestrator.verify(make_request())
    without_budget = await orchestrator.verify(make_request(), retry_budget_remaining=False)

    assert isinstance(with_budget, RetryResult)
    assert isinstance(without_budget, ManualReviewResult)


@pytest.mark.asyncio
async def test_low_confidence_is_not_approved(config):
    orchestrator = VerificationOrchestrator(FakeJudge(judgment(95, confidence=0.5)), config)

    result = await orchestrator.verify(make_request())

    assert result.recommendation == Recommendation.RETRY


@pytest.mark.asyncio
async def test_critical_issue_goes_to_manual_review(config):
    issues = [{"category": "accuracy", "severity": "critical", "description": "Invented employer"}]
    orchestrator = VerificationOrchestrator(FakeJudge(low_judgment(40, issues=issues)), config)

    result = await orchestrator.verify(make_request())

    assert result.recommendation == Recommendation.MANUAL_REVIEW
    assert result.failure is None


@pytest.mark.asyncio
async def test_malformed_reply_degrades_to_manual_review(config):
    orchestrator = VerificationOrchestrator(FakeJudge("I think it looks fine!"), config)

    result = await orchestrator.verify(make_request())

    assert isinstance(result, ManualReviewResult)
    assert result.verified is False
    assert result.overall_score == 0
    assert result.confidence == 0
    assert result.failure == VerifierFailure.PARSE_ERROR
    assert result.issues[0].category == IssueCategory.SAFETY
    assert result.issues[0].severity == Severity.CRITICAL


@pytest.mark.asyncio
async def test_transport_error_degrades_to_manual_review(config):
    judge = FakeJudge(TransportError("connection reset"))
    orchestrator = VerificationOrchestrator(judge, config)

    result = await orchestrator.verify(make_request())

    assert result.recommendation == Recommendation.MANUAL_REVIEW
    assert result.failure == VerifierFailure.TRANSPORT_ERROR


@pytest.mark.asyncio
async def test_judge_timeout_degrades_to_manual_review(config):
    class SlowJudge:
        async def judge(self, structured_prompt):
            await asyncio.sleep(1)
            return judgment()

    orchestrator = VerificationOrchestrator(SlowJudge(), config.with_overrides(judge_timeout_ms=10))

    result = await orchestrator.verify(make_request())

    assert result.failure == VerifierFailure.TRANSPORT_ERROR


@pytest.mark.asyncio
async def test_vendor_rate_limit_propagates(config):
    orchestrator = VerificationOrchestrator(FakeJudge(VendorRateLimitError("quota")), config)

    with pytest.raises(VendorRateLimitError):
        await orchestrator.verify(make_request())


@pytest.mark.asyncio
async def test_judge_calls_are_costed(config):
    tracker = CostTracker()
    orchestrator = VerificationOrchestrator(FakeJudge(judgment()), config, cost_tracker=tracker)

    with tracker.pipeline() as costs:
        await orchestrator.verify(make_request())

    assert tracker.get_summary().secondary.calls == 1
    assert costs.freeze().secondary > 0
    assert costs.freeze().primary == 0


def test_parse_judgment_accepts_fenced_json():
    payload = parse_judgment("```json\n" + judgment(77) + "\n```")

    assert payload.verified is True
    assert payload.detailed_scores.accuracy == 77


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "not json",
        json.dumps([1, 2, 3]),
        json.dumps({"verified": True}),
    ],
)
def test_parse_judgment_rejects_non_conforming_replies(raw):
    with pytest.raises(ParseError):
        parse_judgment(raw)


def test_unknown_issue_category_maps_to_custom():
    reply = judgment(issues=[{"category": "tone", "severity": "LOW", "description": "Too casual"}])

    payload = parse_judgment(reply)

    assert payload.issues[0].category == IssueCategory.CUSTOM
    assert payload.issues[0].severity == Severity.LOW
