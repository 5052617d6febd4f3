"""Call contracts for the two model clients."""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class GenerationParams:
    """Per-call knobs for the primary model."""
    model: str | None = None
    max_tokens: int = 4000
    temperature: float = 0.3
    system_prompt: str | None = None
    timeout_ms: int | None = None
    extra: dict = field(default_factory=dict)


@runtime_checkable
class PrimaryModelClient(Protocol):
    """The generative model whose output is being validated.

    Implementations raise TransportError for network failures and timeouts
    and VendorRateLimitError when the vendor rejects the call for quota.
    """

    async def generate(self, prompt: str, params: GenerationParams | None = None) -> str: ...


@runtime_checkable
class SecondaryModelClient(Protocol):
    """The independent model that judges primary output.

    The reply is expected to be a single JSON object; the orchestrator
    treats anything else as a parse failure.
    """

    async def judge(self, structured_prompt: str) -> str: ...
