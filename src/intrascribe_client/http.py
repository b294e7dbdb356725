"""Async HTTP client abstraction for the Intrascribe REST API."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, MutableMapping
from typing import Any, Protocol

import httpx

from .config import HttpClientConfig
from .errors import ApiStatusError, AuthenticationError, NetworkError, ResponseParsingError

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], str | None]
"""Opaque bearer-token source; returns ``None`` when no session is available."""

_AUTH_STATUS_CODES = frozenset({401, 403})


class AsyncHttpClientProtocol(Protocol):
    """Protocol describing the async JSON operations required by the API layer."""

    async def get_json(
        self,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> Any:  # pragma: no cover - protocol signature
        """Send a GET request and return the decoded JSON body."""
        ...

    async def post_json(
        self,
        path: str,
        payload: Mapping[str, Any] | None = None,
    ) -> Any:  # pragma: no cover - protocol signature
        """Send a JSON POST request and return the decoded JSON body."""
        ...

    async def close(self) -> None:  # pragma: no cover - protocol signature
        """Release HTTP resources and close underlying connections."""
        ...


class IntrascribeHttpClient(AsyncHttpClientProtocol):
    """httpx-based client that injects the bearer token and translates failures."""

    def __init__(
        self,
        config: HttpClientConfig | None = None,
        *,
        token_provider: TokenProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialise the HTTP client with optional *config* and *token_provider*."""
        self._config = config or HttpClientConfig()
        self._token_provider = token_provider
        limits = httpx.Limits(max_connections=self._config.max_connections or None)
        self._client = httpx.AsyncClient(
            base_url=str(self._config.base_url).rstrip("/"),
            http2=self._config.enable_http2 and transport is None,
            limits=limits,
            timeout=self._config.timeout,
            headers=self._build_default_headers(),
            transport=transport,
        )

    async def get_json(
        self,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Send a GET request and decode the JSON response."""
        logger.debug("GET %s with params=%s", path, None if params is None else list(params))
        return await self._request("GET", path, params=params)

    async def post_json(
        self,
        path: str,
        payload: Mapping[str, Any] | None = None,
    ) -> Any:
        """Send a JSON POST request and decode the JSON response."""
        logger.debug("POST %s with %d field(s)", path, 0 if payload is None else len(payload))
        return await self._request("POST", path, json=dict(payload) if payload else None)

    async def close(self) -> None:
        """Close the underlying httpx.AsyncClient instance."""
        await self._client.aclose()
        logger.debug("httpx.AsyncClient closed for base URL %s", self._client.base_url)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Mapping[str, Any] | None = None,
    ) -> Any:
        started = time.perf_counter()
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as exc:
            logger.error("HTTP %s %s failed: %s", method, path, exc)
            raise NetworkError(f"HTTP {method} {path} failed: {exc}") from exc

        if response.is_error:
            message = _error_message(response)
            status = response.status_code
            logger.error("HTTP %s %s returned status %s: %s", method, path, status, message)
            if status in _AUTH_STATUS_CODES:
                raise AuthenticationError(message, status_code=status)
            raise ApiStatusError(message, status_code=status)

        logger.debug(
            "%s %s completed in %.2f ms",
            method,
            path,
            (time.perf_counter() - started) * 1000.0,
        )
        try:
            return response.json()
        except ValueError as exc:
            raise ResponseParsingError(f"Response from {path} was not valid JSON") from exc

    def _auth_headers(self) -> MutableMapping[str, str]:
        """Return the Authorization header for the current token, if any."""
        token = self._token_provider() if self._token_provider is not None else None
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    def _build_default_headers(self) -> MutableMapping[str, str]:
        """Return the default header set applied to every request."""
        return {
            "User-Agent": self._config.user_agent,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }


def _error_message(response: httpx.Response) -> str:
    """Extract the backend error message, defaulting to ``HTTP <status>``."""
    fallback = f"HTTP {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        return fallback
    if not isinstance(body, dict):
        return fallback
    error = body.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return f"{fallback}: {error['message']}"
    detail = body.get("detail")
    if isinstance(detail, str):
        return f"{fallback}: {detail}"
    return fallback
