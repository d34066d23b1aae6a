"""Shared aiohttp client with per-source concurrency limits and 429 cooldowns."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    cooldown_skips: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0


class ResilientHttpClient:
    """One attempt per call; callers treat a failed result as a skip for this tick."""

    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, HttpSourceStats] = {}
        self._cooldown_until: dict[str, float] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=max(1, int(config.HTTP_CONNECTOR_LIMIT)))
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    @staticmethod
    def _source_key(source: str) -> str:
        return str(source or "default").strip().lower() or "default"

    def _get_semaphore(self, key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(key)
        if sem is None:
            limit = max(1, int(self._source_limits.get(key, config.HTTP_DEFAULT_CONCURRENCY)))
            sem = asyncio.Semaphore(limit)
            self._semaphores[key] = sem
        return sem

    def _stats_row(self, key: str) -> HttpSourceStats:
        row = self._stats.get(key)
        if row is None:
            row = HttpSourceStats()
            self._stats[key] = row
        return row

    def _cooldown_remaining(self, key: str) -> float:
        return max(0.0, float(self._cooldown_until.get(key, 0.0)) - time.monotonic())

    def _apply_cooldown(self, key: str, response: aiohttp.ClientResponse) -> None:
        retry_after = 0.0
        raw = (response.headers or {}).get("Retry-After", "")
        if raw:
            try:
                retry_after = max(0.0, float(raw))
            except ValueError:
                retry_after = 0.0
        seconds = max(float(config.HTTP_429_COOLDOWN_SECONDS), retry_after)
        if seconds <= 0:
            return
        until = time.monotonic() + seconds
        self._cooldown_until[key] = max(float(self._cooldown_until.get(key, 0.0)), until)
        logger.warning("HTTP_COOLDOWN source=%s seconds=%.1f", key, seconds)

    def snapshot_stats(self) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        for source, row in self._stats.items():
            total = int(row.ok + row.fail)
            out[source] = {
                "ok": int(row.ok),
                "fail": int(row.fail),
                "total": total,
                "rate_limited": int(row.rate_limited),
                "cooldown_skips": int(row.cooldown_skips),
                "cooldown_remaining_sec": round(self._cooldown_remaining(source), 2),
                "error_percent": round((float(row.fail) / total * 100.0) if total > 0 else 0.0, 2),
                "latency_avg_ms": round(row.latency_total_ms / row.latency_count, 2) if row.latency_count else 0.0,
                "latency_max_ms": round(float(row.latency_max_ms), 2),
            }
        return out

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> HttpResult:
        return await self._request("GET", url, source=source, params=params, headers=headers)

    async def post_json(
        self,
        url: str,
        payload: Any,
        *,
        source: str = "default",
        headers: dict[str, str] | None = None,
    ) -> HttpResult:
        return await self._request("POST", url, source=source, json_body=payload, headers=headers)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        source: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> HttpResult:
        key = self._source_key(source)
        stats = self._stats_row(key)
        remaining = self._cooldown_remaining(key)
        if remaining > 0:
            stats.cooldown_skips += 1
            return HttpResult(ok=False, status=429, data=None, error=f"source_cooldown:{remaining:.1f}s")

        req_headers = dict(self._headers)
        if headers:
            req_headers.update(headers)

        async with self._get_semaphore(key):
            started = time.perf_counter()
            status = 0
            try:
                session = await self._get_session()
                async with session.request(method, url, params=params, json=json_body, headers=req_headers) as response:
                    status = int(response.status or 0)
                    if status == 429:
                        stats.rate_limited += 1
                        self._apply_cooldown(key, response)
                    try:
                        payload = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        payload = None
                    if status == 200:
                        stats.ok += 1
                        return HttpResult(ok=True, status=status, data=payload)
                    stats.fail += 1
                    return HttpResult(ok=False, status=status, data=payload, error=f"http_status_{status}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                stats.fail += 1
                return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc}")
            finally:
                elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
                stats.latency_total_ms += elapsed_ms
                stats.latency_count += 1
                stats.latency_max_ms = max(stats.latency_max_ms, elapsed_ms)
