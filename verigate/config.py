"""Configuration for the verified generation pipeline."""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "VERIGATE_"


def _env(name: str) -> str | None:
    value = os.environ.get(ENV_PREFIX + name.upper())
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _coerce(raw: str, current):
    if isinstance(current, bool):
        return raw.lower() in {"1", "true", "yes", "y", "on"}
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


@dataclass(frozen=True)
class VerificationConfig:
    """Settings shared by the gate, limiter, verifier, retry loop and audit log.

    Defaults match the production CV enhancement deployment.
    """

    # Off: generated responses are returned unverified and unaudited
    enable_verification: bool = True

    # Retry loop
    max_retries: int = 3
    retry_delay_ms: int = 1000  # multiplied by the attempt number

    # Judge (secondary model)
    judge_model: str = "gpt-4o"
    judge_timeout_ms: int = 30000
    judge_temperature: float = 0.1
    judge_max_tokens: int = 2000

    # Primary model
    primary_model: str = "sonnet"
    primary_timeout_ms: int = 30000

    # Decision thresholds
    confidence_threshold: float = 0.7
    score_threshold: float = 70.0
    safety_score_cap: float = 30.0
    min_response_length: int = 50

    # Rate limiting
    rate_limit_per_minute: int = 60
    rate_limit_window_seconds: float = 60.0

    # Deduplication cache
    cache_ttl_seconds: float = 30.0
    cache_errors: bool = False
    sweep_interval_seconds: float = 30.0

    # Audit log
    audit_capacity: int = 1000
    enable_detailed_logging: bool = True
    sanitize_logs_for_pii: bool = True

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms cannot be negative")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")
        if not 0.0 <= self.score_threshold <= 100.0:
            raise ValueError("score_threshold must be within [0, 100]")
        if not 0.0 <= self.safety_score_cap <= 100.0:
            raise ValueError("safety_score_cap must be within [0, 100]")
        if self.rate_limit_per_minute < 1:
            raise ValueError("rate_limit_per_minute must be at least 1")
        if self.rate_limit_window_seconds <= 0:
            raise ValueError("rate_limit_window_seconds must be positive")
        if self.cache_ttl_seconds < 0:
            raise ValueError("cache_ttl_seconds cannot be negative")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        if self.audit_capacity < 1:
            raise ValueError("audit_capacity must be at least 1")

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay_ms / 1000

    def with_overrides(self, **overrides) -> "VerificationConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **overrides)

    @classmethod
    def from_env(cls, dotenv_path: str | Path | None = None) -> "VerificationConfig":
        """Build a config from VERIGATE_* environment variables.

        A .env file is loaded first (without overriding variables that are
        already set). Unknown variables are ignored; unset ones keep the
        dataclass default.

        Example:
            VERIGATE_MAX_RETRIES=2
            VERIGATE_SCORE_THRESHOLD=75
            VERIGATE_SANITIZE_LOGS_FOR_PII=true
        """
        load_dotenv(dotenv_path=dotenv_path)

        defaults = cls()
        overrides = {}
        for f in fields(cls):
            raw = _env(f.name)
            if raw is None:
                continue
            try:
                overrides[f.name] = _coerce(raw, getattr(defaults, f.name))
            except ValueError as e:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}") from e

        return cls(**overrides)
