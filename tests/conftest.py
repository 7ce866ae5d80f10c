import asyncio
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

os.environ.setdefault("FAILURE_LOG_ENABLED", "false")

from quota_gateway.clock import TimeSource
from quota_gateway.db_models import Base
from quota_gateway.providers.provider_interface import UpstreamProvider


START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc).timestamp()


class FakeClock(TimeSource):
    """Settable clock; resets at midnight UTC unless told otherwise."""

    def __init__(self, start: float = START, reset_timezone: str = "UTC", reset_hour: int = 0):
        super().__init__(reset_timezone, reset_hour)
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


class FakeProvider(UpstreamProvider):
    """
    Scripted upstream.

    ``outcomes`` maps a credential to what ``invoke`` does with it: an
    exception instance is raised, an async callable is awaited, anything
    else is returned. Credentials without an entry return ``default``.
    """

    def __init__(self, outcomes=None, default=None):
        self.outcomes = dict(outcomes or {})
        self.default = default if default is not None else {"items": []}
        self.calls = []
        self.closed = False

    @property
    def credentials_used(self):
        return [credential for credential, _, _ in self.calls]

    async def invoke(self, credential, operation, params=None):
        self.calls.append((credential, operation, dict(params or {})))
        outcome = self.outcomes.get(credential, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return await outcome(operation, params)
        return outcome

    async def close(self) -> None:
        self.closed = True


def make_status_error(status_code: int, text: str = "") -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://upstream.test/v3/videos")
    response = httpx.Response(status_code, request=request, text=text)
    return httpx.HTTPStatusError(
        f"Client error '{status_code}' for url '{request.url}'",
        request=request,
        response=response,
    )


async def never_returns(operation, params):
    await asyncio.sleep(10)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def session_maker() -> async_sessionmaker:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    try:
        yield maker
    finally:
        await engine.dispose()
