"""Post-rollout smoke checks over HTTP."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Sequence

import httpx

from rollout_manager.application.timeouts import pause
from rollout_manager.errors import HealthCheckExhausted
from rollout_manager.models import HealthCheckSpec, SmokeCheckResult, SmokeReport

logger = logging.getLogger(__name__)


class SmokeVerifier:
    """Runs health checks in order, retrying each until it matches or exhausts."""

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        request_timeout_seconds: float = 5.0,
    ):
        self._client = client
        self._timeout = request_timeout_seconds

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def verify(
        self,
        endpoint: str,
        specs: Sequence[HealthCheckSpec],
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> SmokeReport:
        base_url = endpoint.rstrip("/")
        if self._client is not None:
            results = await self._run_checks(self._client, base_url, specs, cancel)
        else:
            async with httpx.AsyncClient(follow_redirects=False) as client:
                results = await self._run_checks(client, base_url, specs, cancel)
        return SmokeReport(endpoint=base_url, checks=tuple(results))

    async def _run_checks(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        specs: Sequence[HealthCheckSpec],
        cancel: Optional[asyncio.Event],
    ) -> list[SmokeCheckResult]:
        results: list[SmokeCheckResult] = []
        for spec in specs:
            results.append(await self._check(client, base_url, spec, cancel))
        return results

    async def _check(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        spec: HealthCheckSpec,
        cancel: Optional[asyncio.Event],
    ) -> SmokeCheckResult:
        url = f"{base_url}{spec.path}"
        last_error = "not attempted"
        for attempt in range(1, spec.max_attempts + 1):
            start = time.monotonic()
            try:
                response = await client.get(url, timeout=self._timeout, follow_redirects=False)
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            else:
                latency_ms = round((time.monotonic() - start) * 1000.0, 2)
                if response.status_code == spec.expected_status:
                    logger.info(
                        "Smoke check %s passed on attempt %d (%.1f ms)", url, attempt, latency_ms
                    )
                    return SmokeCheckResult(
                        path=spec.path,
                        status_code=response.status_code,
                        attempts=attempt,
                        latency_ms=latency_ms,
                    )
                last_error = f"HTTP {response.status_code}, expected {spec.expected_status}"

            logger.debug(
                "Smoke check %s attempt %d/%d failed: %s",
                url,
                attempt,
                spec.max_attempts,
                last_error,
            )
            if attempt < spec.max_attempts:
                await pause(spec.interval_seconds, cancel)

        logger.warning("Smoke check %s exhausted after %d attempts: %s", url, spec.max_attempts, last_error)
        raise HealthCheckExhausted(
            f"{spec.path} failed after {spec.max_attempts} attempts: {last_error}",
            path=spec.path,
            attempts=spec.max_attempts,
            last_error=last_error,
        )
