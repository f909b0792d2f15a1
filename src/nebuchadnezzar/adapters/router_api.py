from __future__ import annotations

import asyncio
import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar
from urllib.parse import quote

import httpx

from nebuchadnezzar.config import Settings, sanitize_base_url
from nebuchadnezzar.engine.normalize import (
    normalize_balance,
    normalize_bid,
    normalize_health,
    normalize_list,
    normalize_model,
    normalize_provider,
)
from nebuchadnezzar.models import Bid, BlockchainBalance, Model, Provider, RouterHealth

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_MS = 8000
UNDERLYING_CONFIG_PORT = 8080

BASE_URL_NOT_CONFIGURED = "base URL not configured"
REQUEST_TIMED_OUT = "Request timed out"


@dataclass
class ApiResult(Generic[T]):
    ok: bool
    data: Optional[T] = None
    error: Optional[str] = None
    status: Optional[int] = None

    @classmethod
    def success(cls, data: Optional[T]) -> "ApiResult[T]":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str, status: Optional[int] = None) -> "ApiResult[T]":
        return cls(ok=False, error=error, status=status)


def build_auth_header(settings: Settings) -> Optional[str]:
    if not settings.username:
        return None
    raw = f"{settings.username}:{settings.password or ''}".encode()
    return "Basic " + base64.b64encode(raw).decode()


class RouterClient:
    """HTTP client for the proxy router API.

    Every call resolves to an ApiResult; nothing here raises on network,
    status or decode problems.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = sanitize_base_url(settings.base_url)
        self.call_count = 0
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "RouterClient":
        self._ensure_client()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def reset_call_count(self):
        self.call_count = 0

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Timeouts are enforced per call in request().
            self._client = httpx.AsyncClient(transport=self._transport, timeout=None)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _target(self, path_or_url: str) -> str:
        if path_or_url.startswith("http"):
            return path_or_url
        if not self.base_url:
            return ""
        return f"{self.base_url}{path_or_url}"

    def _headers(self, extra: Optional[Dict[str, str]]) -> httpx.Headers:
        headers = httpx.Headers({"Content-Type": "application/json"})
        auth = build_auth_header(self.settings)
        if auth:
            headers["Authorization"] = auth
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        path_or_url: str,
        method: str = "GET",
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> ApiResult[Any]:
        target = self._target(path_or_url)
        if not target:
            return ApiResult.failure(BASE_URL_NOT_CONFIGURED)

        if timeout_ms is None:
            timeout_ms = self.settings.timeout_ms or DEFAULT_TIMEOUT_MS
        client = self._ensure_client()
        self.call_count += 1
        try:
            r = await asyncio.wait_for(
                client.request(method, target, json=json, headers=self._headers(headers)),
                timeout=timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{method} {target} timed out after {timeout_ms}ms")
            return ApiResult.failure(REQUEST_TIMED_OUT)
        except Exception as e:
            logger.warning(f"{method} {target} failed: {e!r}")
            return ApiResult.failure(str(e) or e.__class__.__name__)

        if not r.is_success:
            body = r.text.strip()
            logger.warning(f"{method} {target} returned HTTP {r.status_code}")
            return ApiResult.failure(body or f"HTTP {r.status_code}", status=r.status_code)

        try:
            data = r.json()
        except ValueError:
            data = None
        return ApiResult.success(data)

    async def get_health(self) -> ApiResult[RouterHealth]:
        res = await self.request("/healthcheck")
        if not res.ok:
            return res
        return ApiResult.success(normalize_health(res.data))

    async def get_balance(self) -> ApiResult[BlockchainBalance]:
        res = await self.request("/blockchain/balance")
        if not res.ok:
            return res
        return ApiResult.success(normalize_balance(res.data))

    async def get_providers(self) -> ApiResult[List[Provider]]:
        res = await self.request("/blockchain/providers")
        if not res.ok:
            return res
        return ApiResult.success(normalize_list(res.data, "providers", normalize_provider))

    async def get_models(self) -> ApiResult[List[Model]]:
        res = await self.request("/blockchain/models")
        if not res.ok:
            return res
        return ApiResult.success(normalize_list(res.data, "models", normalize_model))

    async def get_provider_bids(self, provider_id: str) -> ApiResult[List[Bid]]:
        res = await self.request(f"/blockchain/providers/{quote(str(provider_id), safe='')}/bids")
        if not res.ok:
            return res
        return ApiResult.success(normalize_list(res.data, "bids", normalize_bid))

    async def get_config(self) -> ApiResult[Any]:
        return await self.request(self.settings.config_url.strip() or "/config")

    def underlying_config_url(self) -> str:
        url = (self.settings.underlying_config_url or "").strip()
        if url:
            return url
        if not self.base_url:
            return ""
        return re.sub(r":\d+$", f":{UNDERLYING_CONFIG_PORT}", self.base_url) + "/config"

    async def get_underlying_config(self) -> ApiResult[Any]:
        url = self.underlying_config_url()
        if not url:
            return ApiResult.failure(BASE_URL_NOT_CONFIGURED)
        return await self.request(url)
