"""Primary model client backed by the Claude Agent SDK."""

import asyncio
import os

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKError,
    CLIConnectionError,
    ProcessError,
    TextBlock,
    query,
)

from ..errors import TransportError, VendorRateLimitError
from ..logging_config import get_logger
from .base import GenerationParams

logger = get_logger(__name__)

_RATE_LIMIT_MARKERS = ("rate_limit", "rate limit", "429", "overloaded")


def _get_api_key() -> str | None:
    return os.environ.get("ANTHROPIC_API_KEY") or None


def _is_rate_limit(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


class ClaudePrimaryClient:
    """Generates candidate responses with Claude.

    Single-turn, tool-free calls. SDK failures are mapped onto the verigate
    taxonomy so the retry loop can branch on ErrorKind.
    """

    def __init__(
        self,
        model: str = "sonnet",
        system_prompt: str | None = None,
        timeout_ms: int = 30000,
    ):
        self.model = model
        self.system_prompt = system_prompt
        self.timeout_ms = timeout_ms

    async def generate(self, prompt: str, params: GenerationParams | None = None) -> str:
        params = params or GenerationParams()
        model = params.model or self.model
        timeout_ms = params.timeout_ms or self.timeout_ms

        env = {}
        if api_key := _get_api_key():
            env["ANTHROPIC_API_KEY"] = api_key

        options = ClaudeAgentOptions(
            model=model,
            max_turns=1,
            allowed_tools=[],
            system_prompt=params.system_prompt or self.system_prompt,
            env=env,
        )

        try:
            return await asyncio.wait_for(
                self._collect(prompt, options, model),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError as e:
            logger.warning("Claude call timed out after %dms (model=%s)", timeout_ms, model)
            raise TransportError(f"Claude call timed out after {timeout_ms}ms", model=model) from e
        except (CLIConnectionError, ProcessError) as e:
            if _is_rate_limit(str(e)) or _is_rate_limit(getattr(e, "stderr", None)):
                raise VendorRateLimitError(f"Claude rate limited: {e}", model=model) from e
            raise TransportError(f"Claude transport failure: {e}", model=model) from e
        except ClaudeSDKError as e:
            raise TransportError(f"Claude SDK error: {e}", model=model) from e

    async def _collect(self, prompt: str, options: ClaudeAgentOptions, model: str) -> str:
        response_text = ""
        async for message in query(prompt=prompt, options=options):
            if isinstance(message, AssistantMessage):
                error = getattr(message, "error", None)
                if error:
                    if _is_rate_limit(str(error)):
                        raise VendorRateLimitError(f"Claude rate limited: {error}", model=model)
                    raise TransportError(f"Claude returned an error: {error}", model=model)
                for block in message.content:
                    if isinstance(block, TextBlock):
                        response_text += block.text
        return response_text
