"""
http.py – Async HTTP client built on *aiohttp* with retries on 429 / 5xx,
          Retry-After aware back-off and per-instance default headers.

Used by the extraction worker client and the webhook / e-mail transports.
"""

from __future__ import annotations

import asyncio
import email.utils
import logging
import random
import time
from typing import Any, Dict, Mapping, Optional, Tuple

import aiohttp

logger = logging.getLogger(__name__)

RETRY_STATUSES: Tuple[int, ...] = (429, 500, 502, 503, 504)


class HttpClient:
    """
    Thin wrapper over *aiohttp.ClientSession* adding:

    * global & per-request headers (bearer keys live in one place)
    * exponential back-off **with jitter** for 429 / 5xx / network errors
    * transparent parsing of *Retry-After* header
    * async context-manager support

    Statuses outside ``retry_for_status`` fail on the first attempt.
    """

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        default_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._external_session = session
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._own_session: Optional[aiohttp.ClientSession] = None
        self._default_headers: Dict[str, str] = dict(default_headers or {})

    # ---------------------------------------------- #
    # Async context-manager
    async def __aenter__(self) -> "HttpClient":  # noqa: D401
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        await self.close()

    # ---------------------------------------------- #
    # Session management
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._external_session:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._own_session = aiohttp.ClientSession(timeout=timeout)
        return self._own_session

    async def close(self) -> None:
        if self._own_session and not self._own_session.closed:
            await self._own_session.close()
            self._own_session = None

    # ---------------------------------------------- #
    # Internal helpers
    @staticmethod
    def _parse_retry_after(header_val: Optional[str]) -> Optional[float]:
        """Return seconds given a Retry-After header value."""
        if not header_val:
            return None
        header_val = header_val.strip()
        # seconds
        if header_val.isdigit():
            return float(header_val)
        # HTTP-date
        try:
            retry_at = email.utils.parsedate_to_datetime(header_val)
        except (TypeError, ValueError):
            return None
        if retry_at is None:
            return None
        return max(0.0, retry_at.timestamp() - time.time())

    def _backoff(self, attempt: int, retry_after: Optional[float]) -> float:
        if retry_after is not None:
            return min(retry_after, self._max_delay)
        exponential = min(self._base_delay * 2 ** (attempt - 1), self._max_delay)
        return exponential + random.uniform(0, self._base_delay)

    def _merge_headers(self, extra: Optional[Mapping[str, str]]) -> Dict[str, str]:
        merged: Dict[str, str] = {**self._default_headers}
        if extra:
            merged.update(extra)
        return merged

    async def _request(
        self,
        method: str,
        url: str,
        *,
        retry_for_status: Tuple[int, ...] = RETRY_STATUSES,
        **kwargs,
    ) -> aiohttp.ClientResponse:
        """Perform a request with retries; returns *aiohttp.ClientResponse*."""
        session = await self._ensure_session()
        kwargs["headers"] = self._merge_headers(kwargs.pop("headers", None))

        for attempt in range(1, self._max_retries + 1):
            try:
                resp = await session.request(method, url, **kwargs)
            except aiohttp.ClientConnectionError as e:
                if attempt == self._max_retries:
                    logger.error(f"HTTP {method} {url} failed after {attempt} attempts: {e}")
                    raise
                delay = self._backoff(attempt, None)
                logger.warning(
                    f"HTTP {method} {url} connection error "
                    f"(attempt {attempt}/{self._max_retries}, retry in {delay:.1f}s): {e}"
                )
                await asyncio.sleep(delay)
                continue

            if resp.status < 400:
                return resp

            if resp.status not in retry_for_status or attempt == self._max_retries:
                body = await resp.text()
                resp.release()
                logger.error(f"HTTP {method} {url} -> {resp.status}: {body[:200]}")
                raise aiohttp.ClientResponseError(
                    resp.request_info,
                    resp.history,
                    status=resp.status,
                    message=body[:200] or resp.reason or "",
                    headers=resp.headers,
                )

            delay = self._backoff(attempt, self._parse_retry_after(resp.headers.get("Retry-After")))
            resp.release()
            logger.warning(
                f"HTTP {method} {url} -> {resp.status} "
                f"(attempt {attempt}/{self._max_retries}, retry in {delay:.1f}s)"
            )
            await asyncio.sleep(delay)

        # Should never hit here
        raise RuntimeError("Unreachable retry loop")

    # ---------------------------------------------- #
    # Public helpers
    async def post_json(self, url: str, data: Any, **kwargs) -> Any:
        """POST ``data`` as JSON and decode the JSON reply (None for an empty body)."""
        kwargs["json"] = data
        async with await self._request("POST", url, **kwargs) as resp:
            text = await resp.text()
            if not text.strip():
                return None
            return await resp.json(content_type=None)

    # ---------------------------------------------- #
    # Mutators
    def set_default_header(self, key: str, value: str) -> None:
        self._default_headers[key] = value
