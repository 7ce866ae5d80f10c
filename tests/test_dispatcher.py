import asyncio

import httpx
import pytest

from conftest import FakeClock, FakeProvider, make_status_error, never_returns
from quota_gateway.core.errors import (
    CredentialUnavailable,
    QuotaExhausted,
    RateLimited,
    TransientNetworkError,
    UpstreamError,
)
from quota_gateway.credentials import CredentialPool
from quota_gateway.dispatcher import Dispatcher

KEYS = ["key-aaaaaaa", "key-bbbbbbb", "key-ccccccc"]


async def make_dispatcher(clock, provider, credentials=KEYS, quota_limit=10000, **kwargs):
    pool = CredentialPool(quota_limit=quota_limit, clock=clock)
    await pool.initialize(list(credentials))
    return Dispatcher(pool, provider, **kwargs)


@pytest.mark.asyncio
async def test_success_charges_operation_cost(clock: FakeClock) -> None:
    provider = FakeProvider(default={"items": [{"id": "v1"}]})
    dispatcher = await make_dispatcher(clock, provider)

    result = await dispatcher.execute("search", {"q": "cats"})

    assert result == {"items": [{"id": "v1"}]}
    assert provider.calls == [("key-aaaaaaa", "search", {"q": "cats"})]
    assert dispatcher.pool.records[0].quota_used == 100


@pytest.mark.asyncio
async def test_explicit_cost_overrides_table(clock: FakeClock) -> None:
    dispatcher = await make_dispatcher(clock, FakeProvider())
    await dispatcher.execute("search", cost=7)
    assert dispatcher.pool.records[0].quota_used == 7


@pytest.mark.asyncio
async def test_fails_over_to_last_eligible_credential(clock: FakeClock) -> None:
    provider = FakeProvider()
    dispatcher = await make_dispatcher(clock, provider, quota_limit=100)
    first, second, _ = dispatcher.pool.records
    first.quota_used = 100
    second.quota_used = 100

    await dispatcher.execute("video", {"id": "abc"}, max_attempts=3)

    assert provider.credentials_used == ["key-ccccccc"]


@pytest.mark.asyncio
async def test_quota_error_rotates_and_pins_credential(clock: FakeClock) -> None:
    provider = FakeProvider(
        outcomes={"key-aaaaaaa": make_status_error(403, '{"error": {"reason": "quotaExceeded"}}')},
        default={"ok": True},
    )
    dispatcher = await make_dispatcher(clock, provider, quota_limit=500)

    assert await dispatcher.execute("video") == {"ok": True}

    first, second, _ = dispatcher.pool.records
    assert provider.credentials_used == ["key-aaaaaaa", "key-bbbbbbb"]
    assert first.quota_used == 500
    assert second.quota_used == 1


@pytest.mark.asyncio
async def test_rate_limit_rotates_without_charging_quota(clock: FakeClock) -> None:
    provider = FakeProvider(outcomes={"key-aaaaaaa": make_status_error(429)})
    dispatcher = await make_dispatcher(clock, provider)

    await dispatcher.execute("video")

    first = dispatcher.pool.records[0]
    assert provider.credentials_used == ["key-aaaaaaa", "key-bbbbbbb"]
    assert first.quota_used == 0
    assert first.failure_count == 1


@pytest.mark.asyncio
async def test_timeout_counts_as_transient_and_rotates(clock: FakeClock) -> None:
    provider = FakeProvider(outcomes={"key-aaaaaaa": never_returns}, default=["done"])
    dispatcher = await make_dispatcher(clock, provider, timeout=0.05)

    assert await dispatcher.execute("channel") == ["done"]
    assert provider.credentials_used == ["key-aaaaaaa", "key-bbbbbbb"]


@pytest.mark.asyncio
async def test_connection_error_rotates(clock: FakeClock) -> None:
    request = httpx.Request("GET", "https://upstream.test/v3/videos")
    provider = FakeProvider(outcomes={"key-aaaaaaa": httpx.ConnectError("refused", request=request)})
    dispatcher = await make_dispatcher(clock, provider)

    await dispatcher.execute("video")

    assert provider.credentials_used == ["key-aaaaaaa", "key-bbbbbbb"]


@pytest.mark.asyncio
async def test_not_found_propagates_without_rotation(clock: FakeClock) -> None:
    provider = FakeProvider(outcomes={"key-aaaaaaa": make_status_error(404)})
    dispatcher = await make_dispatcher(clock, provider)

    with pytest.raises(UpstreamError) as exc_info:
        await dispatcher.execute("video", {"id": "missing"})

    assert exc_info.value.status_code == 404
    assert provider.credentials_used == ["key-aaaaaaa"]
    assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)


@pytest.mark.asyncio
async def test_attempt_budget_limits_rotation(clock: FakeClock) -> None:
    error = make_status_error(503)
    provider = FakeProvider(outcomes={key: error for key in KEYS})
    dispatcher = await make_dispatcher(clock, provider, max_attempts=2)

    with pytest.raises(TransientNetworkError):
        await dispatcher.execute("video")

    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_running_out_of_credentials_mid_request_raises_quota_exhausted(clock: FakeClock) -> None:
    error = make_status_error(429)
    provider = FakeProvider(outcomes={key: error for key in KEYS[:2]})
    dispatcher = await make_dispatcher(clock, provider, credentials=KEYS[:2], max_attempts=5)

    with pytest.raises(QuotaExhausted) as exc_info:
        await dispatcher.execute("video")

    # Each credential is tried at most once per request
    assert provider.credentials_used == ["key-aaaaaaa", "key-bbbbbbb"]
    assert exc_info.value.__cause__ is error


@pytest.mark.asyncio
async def test_spent_attempt_budget_raises_last_error(clock: FakeClock) -> None:
    error = make_status_error(429)
    provider = FakeProvider(outcomes={key: error for key in KEYS[:2]})
    dispatcher = await make_dispatcher(clock, provider, credentials=KEYS[:2], max_attempts=2)

    with pytest.raises(RateLimited):
        await dispatcher.execute("video")

    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_all_over_quota_raises_quota_exhausted_without_calling(clock: FakeClock) -> None:
    provider = FakeProvider()
    dispatcher = await make_dispatcher(clock, provider, quota_limit=100)
    for record in dispatcher.pool.records:
        record.quota_used = 50

    with pytest.raises(QuotaExhausted):
        await dispatcher.execute("search")

    assert provider.calls == []


@pytest.mark.asyncio
async def test_no_active_credentials_raises_credential_unavailable(clock: FakeClock) -> None:
    provider = FakeProvider()
    dispatcher = await make_dispatcher(clock, provider)
    for record in dispatcher.pool.records:
        record.is_active = False

    with pytest.raises(CredentialUnavailable):
        await dispatcher.execute("video")

    empty = await make_dispatcher(clock, provider, credentials=[])
    with pytest.raises(CredentialUnavailable):
        await empty.execute("video")

    assert provider.calls == []


@pytest.mark.asyncio
async def test_concurrent_requests_never_overspend_quota_or_rate(clock: FakeClock) -> None:
    async def slow(operation, params):
        await asyncio.sleep(0.05)
        return {"ok": True}

    provider = FakeProvider(default=slow)
    pool = CredentialPool(quota_limit=100, rate_limit_per_minute=1, clock=clock)
    await pool.initialize(["key-aaaaaaa"])
    dispatcher = Dispatcher(pool, provider)

    results = await asyncio.gather(
        *(dispatcher.execute("search", cost=60) for _ in range(3)),
        return_exceptions=True,
    )

    record = pool.records[0]
    assert results.count({"ok": True}) == 1
    assert sum(isinstance(result, QuotaExhausted) for result in results) == 2
    assert len(provider.calls) == 1
    assert record.quota_used == 60
    assert record.request_count == 1
    assert (record.reserved_quota, record.in_flight) == (0, 0)


@pytest.mark.asyncio
async def test_failed_attempt_releases_its_reservation(clock: FakeClock) -> None:
    provider = FakeProvider(outcomes={"key-aaaaaaa": make_status_error(503)})
    dispatcher = await make_dispatcher(clock, provider, quota_limit=100)

    await dispatcher.execute("search", cost=60)

    first, second, _ = dispatcher.pool.records
    assert (first.quota_used, first.reserved_quota, first.in_flight) == (0, 0, 0)
    assert (second.quota_used, second.reserved_quota, second.in_flight) == (60, 0, 0)


@pytest.mark.asyncio
async def test_cancelled_request_releases_its_reservation(clock: FakeClock) -> None:
    provider = FakeProvider(default=never_returns)
    dispatcher = await make_dispatcher(clock, provider, credentials=KEYS[:1], quota_limit=100)

    task = asyncio.create_task(dispatcher.execute("search", cost=60))
    await asyncio.sleep(0.01)
    assert dispatcher.pool.records[0].reserved_quota == 60

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    record = dispatcher.pool.records[0]
    assert (record.quota_used, record.reserved_quota, record.in_flight) == (0, 0, 0)
