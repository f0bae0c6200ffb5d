"""
WorkLens exception hierarchy.

Everything raised inside the capture/upload/analysis pipeline derives from
WorkLensError so component boundaries can absorb pipeline failures with a
single except clause while letting programming errors propagate.
"""

from __future__ import annotations

from typing import Any


class WorkLensError(Exception):
    """Base exception for all WorkLens errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(WorkLensError):
    """Raised when credentials or endpoints needed by a call are missing."""


# Network
class TransportError(WorkLensError):
    """Raised when a request fails below the HTTP layer (DNS, connect, reset)."""


class RequestTimeoutError(TransportError):
    """Raised when a request exceeds its timeout."""

    def __init__(self, message: str, timeout_seconds: float | None = None):
        super().__init__(message, {"timeout_seconds": timeout_seconds})
        self.timeout_seconds = timeout_seconds


# AI provider
class ProviderError(WorkLensError):
    """Raised when the AI provider returns an unusable response."""


class RateLimitError(ProviderError):
    """Raised when the AI provider answers with HTTP 429."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after


class ParseError(ProviderError):
    """Raised when a provider response holds no decodable JSON object."""


# Storage
class StorageError(WorkLensError):
    """Raised when a storage tier cannot persist an artifact."""

    def __init__(self, message: str, tier: str, details: dict[str, Any] | None = None):
        super().__init__(message, {"tier": tier, **(details or {})})
        self.tier = tier
