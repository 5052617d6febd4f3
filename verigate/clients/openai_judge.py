"""Secondary (judge) model client backed by the OpenAI API."""

import os

from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from ..errors import TransportError, VendorRateLimitError
from ..logging_config import get_logger

logger = get_logger(__name__)

JUDGE_SYSTEM_PROMPT = """You are an expert AI response validator. Your job is to evaluate the quality, accuracy, and appropriateness of AI-generated responses. You must provide detailed, objective analysis based on specific criteria.

CRITICAL REQUIREMENTS:
1. Be thorough and objective in your evaluation
2. Identify specific issues with concrete examples
3. Provide actionable feedback for improvement
4. Score each criterion on a scale of 0-100
5. Consider the context and intended use case
6. Flag any potential safety or ethical concerns
7. Assess whether the response adequately addresses the original prompt

Return your analysis as valid JSON with the exact structure specified in the user prompt."""


class OpenAIJudgeClient:
    """Judges candidate responses with an OpenAI chat model in JSON mode."""

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_s: float = 30.0,
        temperature: float = 0.1,
        max_tokens: int = 2000,
    ):
        key = (api_key or os.getenv("OPENAI_API_KEY") or "").strip()
        if not key:
            raise RuntimeError("OPENAI_API_KEY is missing")

        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        # Retries are owned by the verigate retry loop, not the SDK.
        self._client = AsyncOpenAI(
            api_key=key,
            base_url=(base_url or os.getenv("OPENAI_BASE_URL") or None),
            timeout=timeout_s,
            max_retries=0,
        )

    async def judge(self, structured_prompt: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
                    {"role": "user", "content": structured_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
            )
        except RateLimitError as e:
            retry_after = None
            if e.response is not None:
                header = e.response.headers.get("retry-after")
                if header:
                    try:
                        retry_after = float(header)
                    except ValueError:
                        retry_after = None
            raise VendorRateLimitError(
                f"OpenAI rate limited: {e}", model=self.model, retry_after=retry_after
            ) from e
        except (APITimeoutError, APIConnectionError) as e:
            raise TransportError(f"OpenAI transport failure: {e}", model=self.model) from e
        except APIStatusError as e:
            raise TransportError(
                f"OpenAI returned {e.status_code}: {e.message}",
                model=self.model,
                status_code=e.status_code,
            ) from e
        except APIError as e:
            raise TransportError(f"OpenAI API error: {e}", model=self.model) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            logger.warning("Empty judge response from %s", self.model)
            return ""
        return content
