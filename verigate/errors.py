"""Error taxonomy for the verified generation pipeline.

Propagation rules:
- ParseError and a single TransportError from the judge are degraded into a
  manual_review VerificationResult by the orchestrator.
- InternalRateLimitError and VendorRateLimitError always reach the caller.
- Exhausted retries are returned as data (verified=False), never raised.
- PipelineTimeoutError only reaches the caller that timed out.
- Anything unexpected is audited and re-raised as PipelineError.
"""

import asyncio
from enum import Enum


class ErrorKind(str, Enum):
    """Whether a model call failure is worth another attempt."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


class VerigateError(Exception):
    """Base class for all verigate errors."""


class ModelCallError(VerigateError):
    """A call to the primary or secondary model failed."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, *, model: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.model = model
        self.status_code = status_code


class TransportError(ModelCallError):
    """Network failure or timeout talking to either model."""

    kind = ErrorKind.RETRYABLE


class VendorRateLimitError(ModelCallError):
    """The model vendor rejected the call for quota reasons.

    Retrying immediately only burns more quota, so the retry loop treats
    this as fatal and hands it to the caller for backoff.
    """

    kind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        *,
        model: str | None = None,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ):
        super().__init__(message, model=model, status_code=status_code)
        self.retry_after = retry_after


class InternalRateLimitError(VerigateError):
    """The local sliding-window limiter rejected the call."""

    def __init__(self, service: str, limit: int, window_seconds: float):
        super().__init__(
            f"Rate limit exceeded for service: {service} "
            f"({limit} calls / {window_seconds:g}s)"
        )
        self.service = service
        self.limit = limit
        self.window_seconds = window_seconds


class ParseError(VerigateError):
    """The judge reply was not the structured object we asked for."""

    def __init__(self, message: str, raw: str | None = None):
        super().__init__(message)
        self.raw = raw


class PipelineTimeoutError(VerigateError, asyncio.TimeoutError):
    """A caller-supplied timeout elapsed before the shared result settled.

    The underlying execution is not cancelled.
    """

    def __init__(self, key: str, timeout_ms: float):
        super().__init__(f"Request '{key}' did not settle within {timeout_ms:g}ms")
        self.key = key
        self.timeout_ms = timeout_ms


class PipelineError(VerigateError):
    """Unexpected failure inside the pipeline, already written to the audit log."""

    def __init__(self, message: str, *, audit_id: str | None = None, service: str | None = None):
        super().__init__(message)
        self.audit_id = audit_id
        self.service = service
