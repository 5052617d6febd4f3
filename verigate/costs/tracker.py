"""Cost estimation for primary and judge model calls."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime

# Spend of the pipeline running in the current asyncio task, keyed by role.
_pipeline_ledger: ContextVar[dict[str, float] | None] = ContextVar(
    "verigate_pipeline_ledger", default=None
)


class ModelPricing:
    """Vendor pricing per million tokens, USD.

    Claude prices cover the primary model family, OpenAI prices the judge.
    Unknown model names fall back to the mid-tier price of their vendor.
    """

    # Anthropic
    OPUS_INPUT = 5.00
    OPUS_OUTPUT = 25.00
    SONNET_INPUT = 3.00
    SONNET_OUTPUT = 15.00
    HAIKU_INPUT = 1.00
    HAIKU_OUTPUT = 5.00

    # OpenAI
    GPT4O_INPUT = 2.50
    GPT4O_OUTPUT = 10.00
    GPT4O_MINI_INPUT = 0.15
    GPT4O_MINI_OUTPUT = 0.60
    GPT4_TURBO_INPUT = 10.00
    GPT4_TURBO_OUTPUT = 30.00

    @classmethod
    def get_prices(cls, model: str) -> tuple[float, float]:
        """(input, output) price per million tokens for a model name."""
        model_lower = (model or "").lower()
        if "opus" in model_lower:
            return cls.OPUS_INPUT, cls.OPUS_OUTPUT
        if "haiku" in model_lower:
            return cls.HAIKU_INPUT, cls.HAIKU_OUTPUT
        if "sonnet" in model_lower or "claude" in model_lower:
            return cls.SONNET_INPUT, cls.SONNET_OUTPUT
        if "mini" in model_lower:
            return cls.GPT4O_MINI_INPUT, cls.GPT4O_MINI_OUTPUT
        if "turbo" in model_lower:
            return cls.GPT4_TURBO_INPUT, cls.GPT4_TURBO_OUTPUT
        return cls.GPT4O_INPUT, cls.GPT4O_OUTPUT


@dataclass
class ModelUsage:
    """Token usage for one role (primary or secondary)."""
    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ApiCosts:
    """Estimated spend attached to one audit record."""
    primary: float = 0.0
    secondary: float = 0.0

    @property
    def total(self) -> float:
        return self.primary + self.secondary

    def to_dict(self) -> dict:
        return {
            "primary": round(self.primary, 6),
            "secondary": round(self.secondary, 6),
            "total": round(self.total, 6),
        }


@dataclass
class PipelineCosts:
    """Mutable ledger filled while a pipeline runs."""
    ledger: dict[str, float] = field(default_factory=lambda: {"primary": 0.0, "secondary": 0.0})

    def freeze(self) -> ApiCosts:
        return ApiCosts(primary=self.ledger["primary"], secondary=self.ledger["secondary"])


@dataclass
class CostSummary:
    primary: ModelUsage = field(default_factory=ModelUsage)
    secondary: ModelUsage = field(default_factory=ModelUsage)
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def total_cost(self) -> float:
        return self.primary.cost_usd + self.secondary.cost_usd

    def to_dict(self) -> dict:
        return {
            role: {
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "calls": usage.calls,
                "cost_usd": round(usage.cost_usd, 4),
            }
            for role, usage in (("primary", self.primary), ("secondary", self.secondary))
        } | {
            "started_at": self.started_at.isoformat(),
            "total_cost_usd": round(self.total_cost, 4),
        }


class CostTracker:
    """Tracks estimated API spend per model role.

    Token counts are estimated at ~4 characters per token since neither
    client exposes exact usage for every call path.
    """

    CHARS_PER_TOKEN = 4
    ROLES = ("primary", "secondary")

    def __init__(self):
        self._summary = CostSummary()
        self._lock = threading.Lock()

    @classmethod
    def estimate_tokens(cls, text: str) -> int:
        if not text:
            return 0
        return max(1, len(text) // cls.CHARS_PER_TOKEN)

    @staticmethod
    def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
        input_price, output_price = ModelPricing.get_prices(model)
        return (input_tokens / 1_000_000) * input_price + (output_tokens / 1_000_000) * output_price

    def track_call(
        self,
        role: str,
        model: str,
        input_text: str,
        output_text: str,
    ) -> float:
        """Record one call and return its estimated cost in USD."""
        if role not in self.ROLES:
            raise ValueError(f"Unknown model role: {role}")

        input_tokens = self.estimate_tokens(input_text)
        output_tokens = self.estimate_tokens(output_text)
        cost = self.estimate_cost(model, input_tokens, output_tokens)

        with self._lock:
            usage: ModelUsage = getattr(self._summary, role)
            usage.input_tokens += input_tokens
            usage.output_tokens += output_tokens
            usage.calls += 1
            usage.cost_usd += cost

        ledger = _pipeline_ledger.get()
        if ledger is not None:
            ledger[role] += cost
        return cost

    @contextmanager
    def pipeline(self) -> Iterator["PipelineCosts"]:
        """Attribute every call made inside the block to one pipeline run.

        Scoped with a ContextVar, so concurrent pipelines on the same loop
        keep separate ledgers.
        """
        costs = PipelineCosts()
        token = _pipeline_ledger.set(costs.ledger)
        try:
            yield costs
        finally:
            _pipeline_ledger.reset(token)

    def get_summary(self) -> CostSummary:
        return self._summary

    def reset(self) -> None:
        with self._lock:
            self._summary = CostSummary()
