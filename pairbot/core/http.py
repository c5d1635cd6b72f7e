from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from pairbot.core.errors import UpstreamError

TRANSIENT_STATUSES = (429, 500, 502, 503, 504)


@dataclass
class CircuitState:
    failures: int = 0
    open_until: float = 0.0


class ResilientHTTPClient:
    def __init__(
        self,
        timeout: float = 10.0,
        retries: int = 2,
        backoff_base: float = 0.4,
        breaker_threshold: int = 5,
        breaker_cooldown: int = 30,
    ) -> None:
        self.timeout = timeout
        self.retries = retries
        self.backoff_base = backoff_base
        self.breaker_threshold = breaker_threshold
        self.breaker_cooldown = breaker_cooldown
        self._client = httpx.AsyncClient(timeout=timeout)
        self._state: dict[str, CircuitState] = {}

    async def close(self) -> None:
        await self._client.aclose()

    def _is_open(self, host: str) -> bool:
        state = self._state.setdefault(host, CircuitState())
        return state.open_until > time.time()

    def _record_failure(self, host: str) -> None:
        state = self._state.setdefault(host, CircuitState())
        state.failures += 1
        if state.failures >= self.breaker_threshold:
            state.open_until = time.time() + self.breaker_cooldown

    def _record_success(self, host: str) -> None:
        self._state[host] = CircuitState()

    async def _request_json(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
        retries: int | None = None,
    ) -> Any:
        host = httpx.URL(url).host or "unknown"
        if self._is_open(host):
            raise UpstreamError(f"Circuit open for {host}")

        max_retries = self.retries if retries is None else max(0, retries)
        last_error: Exception | None = None
        for attempt in range(max_retries + 1):
            try:
                response = await self._client.request(
                    method,
                    url,
                    params=params,
                    headers=headers,
                    json=json,
                    timeout=timeout if timeout is not None else self.timeout,
                )
            except httpx.HTTPError as exc:
                last_error = exc
                self._record_failure(host)
            else:
                if response.status_code in TRANSIENT_STATUSES:
                    last_error = UpstreamError(
                        f"Transient status {response.status_code}",
                        status_code=response.status_code,
                        detail=response.text[:500],
                    )
                    self._record_failure(host)
                elif response.status_code >= 400:
                    # 4xx: no retry, no breaker penalty
                    raise UpstreamError(
                        f"HTTP {response.status_code} from {host}",
                        status_code=response.status_code,
                        detail=response.text[:500],
                    )
                else:
                    self._record_success(host)
                    return response.json()
            if attempt >= max_retries:
                break
            await asyncio.sleep(self.backoff_base * (2**attempt))

        status = last_error.status_code if isinstance(last_error, UpstreamError) else None
        raise UpstreamError(f"Failed to fetch {url}: {last_error}", status_code=status)

    async def get_json(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        retries: int | None = None,
    ) -> Any:
        return await self._request_json("GET", url, params=params, headers=headers, timeout=timeout, retries=retries)

    async def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        retries: int | None = None,
    ) -> Any:
        return await self._request_json("POST", url, headers=headers, json=payload, timeout=timeout, retries=retries)

    @asynccontextmanager
    async def stream_lines(
        self,
        method: str,
        url: str,
        payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[AsyncIterator[str]]:
        """Open a streaming request and yield an iterator over its response lines."""
        host = httpx.URL(url).host or "unknown"
        if self._is_open(host):
            raise UpstreamError(f"Circuit open for {host}")
        try:
            async with self._client.stream(
                method,
                url,
                json=payload,
                headers=headers,
                timeout=timeout if timeout is not None else self.timeout,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    if response.status_code in TRANSIENT_STATUSES:
                        self._record_failure(host)
                    raise UpstreamError(
                        f"HTTP {response.status_code} from {host}",
                        status_code=response.status_code,
                        detail=body[:500],
                    )
                self._record_success(host)
                yield response.aiter_lines()
        except httpx.HTTPError as exc:
            self._record_failure(host)
            raise UpstreamError(f"Stream from {host} failed: {exc}") from exc
