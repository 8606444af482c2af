"""Shared HTTP plumbing for external data providers."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)


class ProviderUnavailable(RuntimeError):
    """Raised when an external data source fails or times out."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"{provider} unavailable: {reason}")
        self.provider = provider
        self.reason = reason


class HttpProvider:
    """Base class wrapping :mod:`aiohttp` with bounded timeouts.

    A shared :class:`aiohttp.ClientSession` may be injected; otherwise a
    short-lived session is opened per request. HTTP 404 is reported as
    ``None`` so callers can distinguish "not found" from failure.
    """

    name = "provider"

    def __init__(
        self,
        *,
        timeout: float,
        user_agent: str = "mountain-bot/1.0",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._headers = {"User-Agent": user_agent}
        self._session = session

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        merged = dict(self._headers)
        if headers:
            merged.update(headers)
        clean_params = None
        if params:
            clean_params = {k: str(v) for k, v in params.items() if v is not None}
        try:
            if self._session is not None:
                return await self._send(self._session, method, url, clean_params, data, merged)
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                return await self._send(session, method, url, clean_params, data, merged)
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailable(self.name, "timed out") from exc
        except aiohttp.ClientResponseError as exc:
            raise ProviderUnavailable(self.name, f"HTTP {exc.status}") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise ProviderUnavailable(self.name, str(exc) or type(exc).__name__) from exc

    async def _send(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        params: Optional[Dict[str, str]],
        data: Optional[str],
        headers: Dict[str, str],
    ) -> Any:
        async with session.request(
            method,
            url,
            params=params,
            data=data,
            headers=headers,
            timeout=self._timeout,
        ) as response:
            if response.status == 404:
                logger.debug("%s returned 404 for %s", self.name, url)
                return None
            response.raise_for_status()
            return await response.json(content_type=None)

    async def _get_json(self, url: str, **kwargs: Any) -> Any:
        return await self._request_json("GET", url, **kwargs)

    async def _post_json(self, url: str, **kwargs: Any) -> Any:
        return await self._request_json("POST", url, **kwargs)


__all__ = ["HttpProvider", "ProviderUnavailable"]
