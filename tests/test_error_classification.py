import asyncio

import httpx
import pytest

from conftest import make_status_error
from quota_gateway.core.errors import (
    ErrorKind,
    QuotaExhausted,
    RateLimited,
    TransientNetworkError,
    UpstreamError,
    classify_error,
    mask_credential,
    to_gateway_error,
)


class ApiError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


REQUEST = httpx.Request("GET", "https://upstream.test/v3/search")


@pytest.mark.parametrize(
    "error, kind",
    [
        (make_status_error(403), ErrorKind.QUOTA_EXHAUSTED),
        (make_status_error(400, "The request cannot be completed because you have exceeded your quota."), ErrorKind.QUOTA_EXHAUSTED),
        (make_status_error(429), ErrorKind.RATE_LIMITED),
        (make_status_error(500), ErrorKind.TRANSIENT),
        (make_status_error(503), ErrorKind.TRANSIENT),
        (make_status_error(404), ErrorKind.UPSTREAM),
        (make_status_error(400), ErrorKind.UPSTREAM),
        (asyncio.TimeoutError(), ErrorKind.TRANSIENT),
        (httpx.ReadTimeout("slow", request=REQUEST), ErrorKind.TRANSIENT),
        (httpx.ConnectError("refused", request=REQUEST), ErrorKind.TRANSIENT),
        (ConnectionResetError("reset"), ErrorKind.TRANSIENT),
        (ApiError("forbidden", 403), ErrorKind.QUOTA_EXHAUSTED),
        (ApiError("slow down", 429), ErrorKind.RATE_LIMITED),
        (QuotaExhausted("daily limit"), ErrorKind.QUOTA_EXHAUSTED),
        (RateLimited("burst"), ErrorKind.RATE_LIMITED),
        (TransientNetworkError("flaky"), ErrorKind.TRANSIENT),
        (ValueError("bad input"), ErrorKind.UPSTREAM),
    ],
)
def test_classification_table(error, kind) -> None:
    assert classify_error(error).kind == kind


def test_only_upstream_errors_stop_rotation() -> None:
    assert classify_error(make_status_error(429)).is_retryable is True
    assert classify_error(make_status_error(404)).is_retryable is False


def test_status_code_and_body_are_kept() -> None:
    classified = classify_error(make_status_error(404, '{"error": "videoNotFound"}'))

    assert classified.status_code == 404
    assert "videoNotFound" in classified.message

    error = to_gateway_error(classified)
    assert isinstance(error, UpstreamError)
    assert error.status_code == 404


def test_to_gateway_error_maps_each_kind() -> None:
    assert isinstance(to_gateway_error(classify_error(make_status_error(403))), QuotaExhausted)
    assert isinstance(to_gateway_error(classify_error(make_status_error(429))), RateLimited)
    assert isinstance(to_gateway_error(classify_error(asyncio.TimeoutError())), TransientNetworkError)


def test_mask_credential() -> None:
    assert mask_credential("AIzaSyD-1234567890") == "AIzaSy..."
    assert mask_credential("short") == "***"
    assert mask_credential(None) == "***"
