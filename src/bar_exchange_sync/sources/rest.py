from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# the API answers handled failures with {"message": ...}; bare bodies come from a proxy
_ENVELOPE_KEYS = ("message", "error")
_GATEWAY_STATUSES = frozenset({502, 503, 504})


class BarExchangeAPIError(httpx.HTTPStatusError):
    """A non-success response, with the API's own error message when it sent one."""

    def __init__(self, response: httpx.Response, server_message: str | None) -> None:
        detail = server_message or response.reason_phrase
        super().__init__(
            f"{response.request.method} {response.request.url.path} -> {response.status_code}: {detail}",
            request=response.request,
            response=response,
        )
        self.server_message = server_message


def error_envelope_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, Mapping):
        return None
    for key in _ENVELOPE_KEYS:
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def retry_after_seconds(headers: httpx.Headers) -> float | None:
    """``Retry-After`` as delta-seconds or an HTTP date, clamped at zero."""
    raw_value = headers.get("Retry-After")
    if raw_value is None:
        return None
    raw_value = raw_value.strip()
    if raw_value.isdigit():
        return float(raw_value)
    try:
        when = parsedate_to_datetime(raw_value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(tz=UTC)).total_seconds())


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """When a reconciliation read is worth repeating, and how long to wait.

    Rate limits and timeouts are always retried. Gateway statuses are retried
    too. A 5xx that carries the API's error envelope is a handled server
    failure and fails fast; an envelope-less 5xx came from the proxy in
    front of the API and is retried.
    """

    attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def should_retry(self, response: httpx.Response) -> bool:
        status = response.status_code
        if status in (408, 429) or status in _GATEWAY_STATUSES:
            return True
        if 500 <= status < 600:
            return error_envelope_message(response) is None
        return False

    def delay(self, attempt: int, response: httpx.Response | None = None) -> float:
        if response is not None:
            hinted = retry_after_seconds(response.headers)
            if hinted is not None:
                return min(hinted, self.max_delay_seconds)
        backoff = self.base_delay_seconds * 2 ** (attempt - 1)
        return min(self.max_delay_seconds, backoff) + random.uniform(0.0, 0.3)  # noqa: S311


class BarExchangeRESTClient:
    """Bulk list reads used to (re)establish a known-correct baseline."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 20,
        retries: int = 3,
        *,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            headers=headers,
            transport=transport,
        )
        self._policy = RetryPolicy(attempts=max(1, retries))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_list(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        attempt = 0
        while True:
            attempt += 1
            final = attempt >= self._policy.attempts
            try:
                response = await self._client.get(path, params=params)
            except httpx.TransportError as exc:
                if final:
                    raise
                await self._wait(path, attempt, exc.__class__.__name__, self._policy.delay(attempt))
                continue

            if response.is_success:
                return self._unwrap_list(response.json(), path)
            if not final and self._policy.should_retry(response):
                await self._wait(path, attempt, f"HTTP {response.status_code}", self._policy.delay(attempt, response))
                continue
            raise BarExchangeAPIError(response, error_envelope_message(response))

    async def _wait(self, path: str, attempt: int, reason: str, delay: float) -> None:
        logger.warning(
            "Reconciliation read failed; retrying",
            extra={
                "path": path,
                "attempt": attempt,
                "max_attempts": self._policy.attempts,
                "reason": reason,
                "sleep_seconds": round(delay, 3),
            },
        )
        await asyncio.sleep(delay)

    @staticmethod
    def _unwrap_list(payload: Any, path: str) -> list[dict[str, Any]]:
        if isinstance(payload, dict):
            payload = payload.get("data")
        if not isinstance(payload, list):
            raise ValueError(f"expected a JSON list from {path}, got {type(payload).__name__}")
        return [item for item in payload if isinstance(item, dict)]

    async def fetch_orders(self) -> list[dict[str, Any]]:
        return await self._get_list("/orders/all")

    async def fetch_branches(self) -> list[dict[str, Any]]:
        return await self._get_list("/branches")

    async def fetch_items(self, branch_id: str) -> list[dict[str, Any]]:
        return await self._get_list(
            "/items",
            {
                "branch": branch_id,
                "includePrices": "true",
                "noLimit": "true",
            },
        )
