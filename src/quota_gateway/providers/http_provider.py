# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.constants import (
    DEFAULT_CREDENTIAL_PARAM,
    DEFAULT_UPSTREAM_BASE_URL,
    LIB_LOGGER_NAME,
)
from ..core.errors import mask_credential
from .provider_interface import UpstreamProvider

lib_logger = logging.getLogger(LIB_LOGGER_NAME)

# Operation name -> path relative to the base URL
DEFAULT_ENDPOINTS = {
    "search": "/search",
    "video": "/videos",
    "channel": "/channels",
    "playlist": "/playlists",
    "comments": "/commentThreads",
}


class HttpUpstreamProvider(UpstreamProvider):
    """
    Provider for a REST API that authenticates with a key query parameter.

    Each operation maps to a GET endpoint. List-valued parameters are sent
    comma-joined, which is what most metered REST APIs expect for ids.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_UPSTREAM_BASE_URL,
        endpoints: Optional[Dict[str, str]] = None,
        credential_param: str = DEFAULT_CREDENTIAL_PARAM,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.endpoints = dict(DEFAULT_ENDPOINTS)
        if endpoints:
            self.endpoints.update(endpoints)
        self.credential_param = credential_param
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()

    def _build_query(self, credential: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        for name, value in (params or {}).items():
            if value is None:
                continue
            if isinstance(value, (list, tuple, set)):
                value = ",".join(str(v) for v in value)
            elif isinstance(value, bool):
                value = "true" if value else "false"
            query[name] = value
        query[self.credential_param] = credential
        return query

    async def invoke(
        self, credential: str, operation: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        path = self.endpoints.get(operation)
        if path is None:
            raise ValueError(f"No endpoint configured for operation '{operation}'")

        url = f"{self.base_url}{path}"
        lib_logger.debug(
            f"GET {url} for {operation} with credential {mask_credential(credential)}"
        )
        response = await self._client.get(url, params=self._build_query(credential, params))
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
