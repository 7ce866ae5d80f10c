# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .errors import (
    CacheBackendError,
    ClassifiedError,
    ConfigurationError,
    CredentialUnavailable,
    ErrorKind,
    FallbackNotFound,
    GatewayError,
    NoCredentialAvailable,
    QuotaExhausted,
    RateLimited,
    TransientNetworkError,
    UpstreamError,
    classify_error,
    mask_credential,
)

__all__ = [
    "CacheBackendError",
    "ClassifiedError",
    "ConfigurationError",
    "CredentialUnavailable",
    "ErrorKind",
    "FallbackNotFound",
    "GatewayError",
    "NoCredentialAvailable",
    "QuotaExhausted",
    "RateLimited",
    "TransientNetworkError",
    "UpstreamError",
    "classify_error",
    "mask_credential",
]
