# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
The gateway: cache, quota-aware dispatch and fallback composed into one
read path.

    cache hit -> return
    miss      -> dispatch -> success: populate cache, return
                          -> credentials exhausted: fallback -> found: return
                                                             -> empty: FallbackNotFound
"""

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .cache.presets import DEFAULT_POLICY, CachePolicy, build_presets
from .cache.storage.base import PersistentStore
from .cache.storage.json_store import JsonFileCacheStore
from .cache.storage.sql_store import SQLCacheStore
from .cache.tiered import TieredCache, make_key
from .clock import TimeSource
from .core.constants import LIB_LOGGER_NAME
from .core.errors import DEGRADED_ERRORS, FallbackNotFound
from .credentials.pool import CredentialPool
from .db import create_db_engine
from .dispatcher import Dispatcher
from .fallback import FallbackQuery, FallbackSource, NullFallbackSource, SQLRecordSource
from .providers.http_provider import HttpUpstreamProvider
from .providers.provider_interface import UpstreamProvider

lib_logger = logging.getLogger(LIB_LOGGER_NAME)
lib_logger.propagate = False

if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())


def request_cache_key(operation: str, params: Optional[Dict[str, Any]] = None) -> str:
    """
    Stable cache key for an upstream request.

    Parameters are sorted by name; list values are comma-joined, so
    ``{"id": ["a", "b"]}`` and ``{"id": "a,b"}`` share a key.
    """
    parts = []
    for name in sorted(params or {}):
        value = params[name]
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in value)
        parts.append(f"{name}={value}")
    return f"{operation}:{'&'.join(parts)}" if parts else operation


class QuotaGateway:
    """
    Cached, quota-aware access to a metered upstream API.

    Example:
        config = load_config()
        async with QuotaGateway.from_config(config) as gateway:
            video = await gateway.fetch("video", {"id": "abc", "part": "snippet"})
            summary = await gateway.get_or_set(
                "summary:abc", make_summary, ttl=7 * 86400, tags=["ai"], namespace="ai"
            )
    """

    def __init__(
        self,
        cache: TieredCache,
        dispatcher: Dispatcher,
        fallback: Optional[FallbackSource] = None,
        presets: Optional[Dict[str, CachePolicy]] = None,
        credentials: Optional[Sequence[str]] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        """
        Initialize the gateway.

        Args:
            cache: Tiered cache for upstream results
            dispatcher: Dispatcher owning the credential pool and provider
            fallback: Degraded read path (defaults to no local data)
            presets: Cache policy per operation
            credentials: Credentials registered on ``initialize()``
            engine: Database engine owned by the gateway, disposed on shutdown
        """
        self.cache = cache
        self.dispatcher = dispatcher
        self.fallback = fallback or NullFallbackSource()
        self.presets = presets if presets is not None else build_presets()
        self._credentials = list(credentials or [])
        self._engine = engine
        self._inflight: Dict[str, asyncio.Task] = {}
        self._initialized = False

    @classmethod
    def from_config(
        cls,
        config,
        provider: Optional[UpstreamProvider] = None,
        clock: Optional[TimeSource] = None,
        fallback: Optional[FallbackSource] = None,
    ) -> "QuotaGateway":
        """
        Build a gateway and all of its parts from a ``GatewayConfig``.

        With the ``sql`` cache backend, the cache table and the local
        records used for fallback share one engine.
        """
        config.validate()
        clock = clock or TimeSource(config.reset_timezone, config.reset_hour)
        provider = provider or HttpUpstreamProvider(
            base_url=config.upstream_base_url,
            credential_param=config.credential_param,
        )
        pool = CredentialPool.from_config(config, clock=clock)
        dispatcher = Dispatcher.from_config(config, pool, provider)

        engine = None
        store: Optional[PersistentStore] = None
        if config.cache_backend == "sql":
            engine = create_db_engine(config.cache_database_url)
            session_maker = async_sessionmaker(engine, expire_on_commit=False)
            store = SQLCacheStore(session_maker=session_maker)
            if fallback is None:
                fallback = SQLRecordSource(session_maker, clock=clock)
        elif config.cache_backend == "json":
            store = JsonFileCacheStore(config.cache_json_path)

        cache = TieredCache(
            store=store,
            clock=clock,
            max_memory_entries=config.cache_max_memory_entries,
            sweep_interval=config.cache_sweep_interval,
        )
        return cls(
            cache=cache,
            dispatcher=dispatcher,
            fallback=fallback,
            presets=build_presets(config.cache_ttls),
            credentials=config.credentials,
            engine=engine,
        )

    @property
    def pool(self) -> CredentialPool:
        return self.dispatcher.pool

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self, start_sweeper: bool = True) -> None:
        """Register credentials, prepare the persistent tier and start the sweeper."""
        if self._initialized:
            return
        await self.pool.initialize(self._credentials)
        await self.cache.initialize(start_sweeper=start_sweeper)
        self._initialized = True
        lib_logger.info("Quota gateway initialized")

    async def shutdown(self) -> None:
        """Stop background work and release the cache store, HTTP client and engine."""
        pending = [task for task in self._inflight.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.cache.shutdown()
        await self.dispatcher.provider.close()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        self._initialized = False
        lib_logger.info("Quota gateway shut down")

    async def __aenter__(self) -> "QuotaGateway":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # =========================================================================
    # READ PATHS
    # =========================================================================

    async def get_or_set(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: float,
        tags: Optional[Iterable[str]] = None,
        namespace: Optional[str] = None,
    ) -> Any:
        """
        Return the cached value for ``key``, computing and caching it on a miss.

        Concurrent misses for the same key share one fetch. The fetch runs
        shielded, so a cancelled caller neither cancels it nor loses the
        cache write. Errors from ``fetcher`` propagate unchanged and
        nothing is cached.
        """
        cached = await self.cache.get(key, namespace)
        if cached is not None:
            return cached

        full_key = make_key(key, namespace)
        task = self._inflight.get(full_key)
        if task is None:
            tag_list = list(tags or ())
            task = asyncio.create_task(self._fill(key, fetcher, ttl, tag_list, namespace))
            self._inflight[full_key] = task
            task.add_done_callback(lambda done: self._forget(full_key, done))
        else:
            lib_logger.debug(f"Joining in-flight fetch for '{full_key}'")
        return await asyncio.shield(task)

    async def _fill(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: float,
        tags: List[str],
        namespace: Optional[str],
    ) -> Any:
        value = await fetcher()
        await self.cache.set(key, value, ttl, tags=tags, namespace=namespace)
        return value

    def _forget(self, full_key: str, task: asyncio.Task) -> None:
        if self._inflight.get(full_key) is task:
            del self._inflight[full_key]
        # Mark the exception retrieved when every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def fetch(
        self,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        cache_key: Optional[str] = None,
        policy: Optional[CachePolicy] = None,
        fallback_query: Optional[FallbackQuery] = None,
        fallback_limit: int = 20,
    ) -> Any:
        """
        Fetch an upstream result through the cache, with local fallback.

        Args:
            operation: Upstream operation, e.g. ``video`` or ``search``
            params: Operation parameters
            cache_key: Explicit cache key (derived from operation and params otherwise)
            policy: Cache policy (the preset for ``operation`` otherwise)
            fallback_query: Local-record query used if the upstream is unavailable
            fallback_limit: Maximum number of fallback records

        Returns:
            The cached or upstream result, or a list of local records when
            the upstream could not be used

        Raises:
            FallbackNotFound: Upstream unavailable and no local record matched
            UpstreamError: Non-retryable upstream failure
        """
        params = dict(params or {})
        policy = policy or self.presets.get(operation, DEFAULT_POLICY)
        key = cache_key or request_cache_key(operation, params)

        async def call_upstream() -> Any:
            result = await self.dispatcher.execute(operation, params)
            await self._remember(operation, params, result)
            return result

        try:
            return await self.get_or_set(
                key, call_upstream, policy.ttl, tags=policy.tags, namespace=policy.namespace
            )
        except DEGRADED_ERRORS as e:
            lib_logger.warning(
                f"Upstream unavailable for {operation} ({type(e).__name__}: {e}); "
                f"using local records"
            )
            query = fallback_query or FallbackQuery.from_request(operation, params)
            records = await self.fallback.find_local_records(query, fallback_limit)
            if not records:
                raise FallbackNotFound(
                    f"Upstream unavailable for {operation} and no local records matched"
                ) from e
            lib_logger.info(f"Serving {len(records)} local records for {operation}")
            return records

    async def _remember(self, operation: str, params: Dict[str, Any], result: Any) -> None:
        try:
            await self.fallback.remember(operation, params, result)
        except Exception as e:
            lib_logger.warning(f"Failed to keep {operation} result for fallback: {e}")

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    async def status(self) -> Dict[str, Any]:
        """Quota usage per credential and cache statistics."""
        return {
            "quota": await self.pool.quota_info(),
            "cache": asdict(await self.cache.stats()),
        }

    async def reset_quotas(self) -> None:
        await self.pool.reset_quotas()

    async def clear_cache(self, namespace: Optional[str] = None) -> None:
        await self.cache.clear(namespace)
        lib_logger.info(f"Cleared cache{f' namespace {namespace}' if namespace else ''}")
