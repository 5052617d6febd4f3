"""Admission-time rate limiting for downstream model services."""

from .limiter import RateLimiter

__all__ = ["RateLimiter"]
