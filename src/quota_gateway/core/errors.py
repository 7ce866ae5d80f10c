# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Error taxonomy and classification for upstream calls.

Every failure of an upstream operation is reduced to one of four
``ErrorKind`` values. The kind decides whether the dispatcher fails over
to another credential or gives up, and how the credential pool records
the failure.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx


class ErrorKind(str, Enum):
    """Classified failure kinds."""

    QUOTA_EXHAUSTED = "quota_exhausted"  # Explicit quota error or HTTP 403
    RATE_LIMITED = "rate_limited"  # HTTP 429
    TRANSIENT = "transient"  # Timeout, connection failure, HTTP 5xx
    UPSTREAM = "upstream"  # Anything else, e.g. not found


# =============================================================================
# EXCEPTIONS
# =============================================================================


class GatewayError(Exception):
    """Base class for every error raised by the gateway."""


class ConfigurationError(GatewayError):
    """Invalid gateway configuration."""


class NoCredentialAvailable(GatewayError):
    """No credential can serve a request of the requested cost."""


class QuotaExhausted(NoCredentialAvailable):
    """All credentials are over quota (recoverable via fallback or reset)."""


class CredentialUnavailable(NoCredentialAvailable):
    """No active credential at all (configuration problem or outage)."""


class RateLimited(GatewayError):
    """Upstream rate limit hit on the last credential tried."""


class TransientNetworkError(GatewayError):
    """Timeout or connection failure that outlasted the attempt budget."""


class UpstreamError(GatewayError):
    """Non-retryable upstream failure such as resource not found."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CacheBackendError(GatewayError):
    """Persistent cache tier failure. Never surfaced to gateway callers."""


class FallbackNotFound(GatewayError):
    """Neither the upstream nor the local records could answer a request."""


# Exceptions that mean "the metered upstream could not be used right now"
DEGRADED_ERRORS = (
    NoCredentialAvailable,
    RateLimited,
    TransientNetworkError,
)


# =============================================================================
# CLASSIFICATION
# =============================================================================


@dataclass(frozen=True)
class ClassifiedError:
    """Result of classifying an exception raised by an upstream call."""

    kind: ErrorKind
    message: str
    status_code: Optional[int] = None

    @property
    def is_retryable(self) -> bool:
        """True if the dispatcher should fail over to another credential."""
        return self.kind != ErrorKind.UPSTREAM


def _extract_status_code(error: Exception) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, UpstreamError):
        return error.status_code
    for attr in ("status_code", "code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def _extract_message(error: Exception) -> str:
    message = str(error) or type(error).__name__
    if isinstance(error, httpx.HTTPStatusError):
        try:
            body = error.response.text
        except httpx.ResponseNotRead:
            body = ""
        if body:
            message = f"{message}: {body[:300]}"
    return message


def classify_error(error: Exception) -> ClassifiedError:
    """
    Reduce an exception to an ``ClassifiedError``.

    Order of checks:
    1. Gateway exceptions raised directly by a provider keep their meaning.
    2. Timeouts and transport failures are transient.
    3. Status codes: 403 is quota, 429 is rate limiting, 5xx is transient.
    4. A message mentioning "quota" is treated as quota exhaustion.
    5. Everything else is a non-retryable upstream error.
    """
    message = _extract_message(error)
    status_code = _extract_status_code(error)

    if isinstance(error, QuotaExhausted):
        return ClassifiedError(ErrorKind.QUOTA_EXHAUSTED, message, status_code)
    if isinstance(error, RateLimited):
        return ClassifiedError(ErrorKind.RATE_LIMITED, message, status_code)
    if isinstance(error, TransientNetworkError):
        return ClassifiedError(ErrorKind.TRANSIENT, message, status_code)

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ClassifiedError(ErrorKind.TRANSIENT, message or "timeout", status_code)
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ClassifiedError(ErrorKind.TRANSIENT, message, status_code)

    if status_code == 403 or "quota" in message.lower():
        return ClassifiedError(ErrorKind.QUOTA_EXHAUSTED, message, status_code)
    if status_code == 429:
        return ClassifiedError(ErrorKind.RATE_LIMITED, message, status_code)
    if status_code is not None and 500 <= status_code < 600:
        return ClassifiedError(ErrorKind.TRANSIENT, message, status_code)

    return ClassifiedError(ErrorKind.UPSTREAM, message, status_code)


def to_gateway_error(classified: ClassifiedError) -> GatewayError:
    """Build the taxonomy exception matching a classified failure."""
    if classified.kind == ErrorKind.QUOTA_EXHAUSTED:
        return QuotaExhausted(classified.message)
    if classified.kind == ErrorKind.RATE_LIMITED:
        return RateLimited(classified.message)
    if classified.kind == ErrorKind.TRANSIENT:
        return TransientNetworkError(classified.message)
    return UpstreamError(classified.message, status_code=classified.status_code)


def mask_credential(credential: Any, visible: int = 6) -> str:
    """
    Format a credential for logs, keeping only a short prefix.

    Examples:
        >>> mask_credential("AIzaSyD-1234567890")
        'AIzaSy...'
    """
    text = str(credential or "")
    if len(text) <= visible:
        return "***"
    return f"{text[:visible]}..."
