import json
import os
import tempfile
from pathlib import Path

os.environ.setdefault("VERIGATE_LOG_FILE", str(Path(tempfile.gettempdir()) / "verigate-tests.log"))

import pytest
from rich.console import Console

from verigate.clients.base import GenerationParams
from verigate.config import VerificationConfig
from verigate.verification.models import DEFAULT_CRITERIA

CLEAN_RESPONSE = (
    "The candidate has eight years of backend experience with Python and Go, "
    "led a team of five engineers, and migrated the billing platform to AWS."
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def judgment(
    score: float = 85,
    *,
    verified: bool = True,
    confidence: float = 0.9,
    issues: list[dict] | None = None,
    feedback: str | None = None,
    recommendation: str = "approve",
    scores: dict | None = None,
) -> str:
    """JSON reply in the shape the judge model is asked for."""
    detailed = {name: score for name in DEFAULT_CRITERIA}
    detailed.update(scores or {})
    payload = {
        "verified": verified,
        "confidence": confidence,
        "overallScore": score,
        "detailedScores": detailed,
        "issues": issues or [],
        "recommendation": recommendation,
    }
    if feedback is not None:
        payload["feedback"] = feedback
    return json.dumps(payload)


def low_judgment(score: float = 40, **kwargs) -> str:
    kwargs.setdefault("verified", False)
    kwargs.setdefault("confidence", 0.8)
    kwargs.setdefault("recommendation", "retry")
    kwargs.setdefault("feedback", "Quantify the achievements.")
    return judgment(score, **kwargs)


class FakeJudge:
    """Replays scripted replies; an Exception in the script is raised instead.

    The last reply repeats once the script runs out.
    """

    model = "gpt-4o-mini"

    def __init__(self, *replies):
        self.replies = list(replies) or [judgment()]
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def judge(self, structured_prompt: str) -> str:
        self.prompts.append(structured_prompt)
        index = min(len(self.prompts) - 1, len(self.replies) - 1)
        reply = self.replies[index]
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakePrimary:
    """Primary model returning scripted responses (or raising scripted errors)."""

    def __init__(self, *responses):
        self.responses = list(responses) or [CLEAN_RESPONSE]
        self.prompts: list[str] = []
        self.params: list[GenerationParams | None] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str, params: GenerationParams | None = None) -> str:
        self.prompts.append(prompt)
        self.params.append(params)
        index = min(len(self.prompts) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, BaseException):
            raise response
        return response


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def config() -> VerificationConfig:
    return VerificationConfig(retry_delay_ms=0, enable_detailed_logging=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def quiet_console() -> Console:
    return Console(quiet=True)
