"""Model client contracts and vendor adapters.

Vendor adapters are imported on first access so that importing the
pipeline does not pull in either SDK until a client is actually built.
"""

from .base import GenerationParams, PrimaryModelClient, SecondaryModelClient

__all__ = [
    "GenerationParams",
    "PrimaryModelClient",
    "SecondaryModelClient",
    "ClaudePrimaryClient",
    "OpenAIJudgeClient",
]


def __getattr__(name: str):
    if name == "ClaudePrimaryClient":
        from .claude import ClaudePrimaryClient

        return ClaudePrimaryClient
    if name == "OpenAIJudgeClient":
        from .openai_judge import OpenAIJudgeClient

        return OpenAIJudgeClient
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
