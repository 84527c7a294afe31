# core/transport.py
"""HTTP transport shared by all provider adapters.

Two backends exist: the desktop bridge used when running inside the packaged
desktop shell, and the standard backend. The backend is probed once at
startup and handed to the transport explicitly.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import structlog

from config import settings
from core.cancellation import CancelToken, RequestCancelled
from core.errors import ClassifiedError, ErrorCategory, from_transport_exception

logger = structlog.get_logger(__name__)

_SECRET_HEADERS = {"authorization", "x-api-key", "x-goog-api-key", "api-key"}
_SECRET_QUERY_KEYS = {"key", "api_key", "apikey"}
_BEARER_RE = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)


class TransportBackend(str, Enum):
    DESKTOP_BRIDGE = "desktop_bridge"
    STANDARD = "standard"


@dataclass
class TransportResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def ok(self) -> bool:
        return self.status < 400


def detect_transport_backend() -> TransportBackend:
    """Decide which backend to use. Call once at process startup."""
    if settings.TRANSPORT_BACKEND:
        backend = TransportBackend(settings.TRANSPORT_BACKEND)
    elif os.environ.get(settings.DESKTOP_SHELL_ENV_VAR):
        backend = TransportBackend.DESKTOP_BRIDGE
    else:
        backend = TransportBackend.STANDARD
    logger.info("Transport backend resolved", backend=backend.value)
    return backend


def redact_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [
        (k, "***" if k.lower() in _SECRET_QUERY_KEYS else v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query, safe="*")))


def redact_headers(headers: dict[str, str] | None) -> dict[str, str]:
    redacted: dict[str, str] = {}
    for name, value in (headers or {}).items():
        if name.lower() in _SECRET_HEADERS:
            redacted[name] = "***"
        else:
            redacted[name] = _BEARER_RE.sub(r"\1***", value)
    return redacted


class HttpTransport:
    """Executes requests and streams against LLM endpoints via ``httpx``."""

    def __init__(
        self,
        backend: TransportBackend = TransportBackend.STANDARD,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.backend = backend
        if client is not None:
            self._client = client
        elif backend is TransportBackend.DESKTOP_BRIDGE:
            # The desktop shell manages proxies itself and needs an explicit
            # connect timeout; the overall deadline is enforced per call.
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    None, connect=settings.DESKTOP_BRIDGE_CONNECT_TIMEOUT_SECONDS
                ),
                trust_env=False,
            )
        else:
            self._client = httpx.AsyncClient(timeout=None)
        self.request_count = 0

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _guard(
        self,
        operation: Any,
        timeout: float | None,
        cancel_token: CancelToken | None,
    ) -> Any:
        """Apply the overall deadline and cancellation to ``operation``."""
        if cancel_token is not None:
            operation = cancel_token.race(operation)
        try:
            return await asyncio.wait_for(operation, timeout)
        except asyncio.TimeoutError as exc:
            raise ClassifiedError(
                ErrorCategory.TIMEOUT,
                f"Request did not complete within {timeout} seconds.",
                "TIMEOUT",
                cause=exc,
            ) from exc

    def _log_failure(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None,
        status: int | None,
        error: Exception | None = None,
    ) -> None:
        logger.warning(
            f"HTTP {method} {redact_url(url)} failed",
            status=status,
            headers=redact_headers(headers),
            error=str(error) if error else None,
        )

    async def send(
        self,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: Any = None,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ) -> TransportResponse:
        """Send a request and return status, headers and text body.

        HTTP error statuses are returned, not raised. Timeouts raise a
        ``timeout`` ClassifiedError and connection failures a ``network`` one.
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        self.request_count += 1

        async def _do() -> httpx.Response:
            return await self._client.request(method, url, json=body, headers=headers)

        try:
            response = await self._guard(_do(), timeout, cancel_token)
        except RequestCancelled:
            raise
        except ClassifiedError as exc:
            self._log_failure(method, url, headers, None, exc)
            raise
        except httpx.HTTPError as exc:
            self._log_failure(method, url, headers, None, exc)
            raise from_transport_exception(exc) from exc

        if response.status_code >= 400:
            self._log_failure(method, url, headers, response.status_code)
        return TransportResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.text,
        )

    async def send_stream(
        self,
        url: str,
        body: Any,
        on_chunk: Callable[[str], None],
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ) -> TransportResponse:
        """POST ``body`` and feed decoded text chunks to ``on_chunk`` in order.

        Error statuses are returned with the body read in full and no chunks
        delivered. Failures after streaming began are raised as classified
        errors; the caller keeps whatever it already accumulated.
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        self.request_count += 1

        async def _do() -> TransportResponse:
            async with self._client.stream(
                "POST", url, json=body, headers=headers
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    return TransportResponse(
                        status=response.status_code,
                        headers=dict(response.headers),
                        body=response.text,
                    )
                async for chunk in response.aiter_text():
                    if cancel_token is not None and cancel_token.cancelled:
                        raise RequestCancelled()
                    if chunk:
                        on_chunk(chunk)
                return TransportResponse(
                    status=response.status_code, headers=dict(response.headers)
                )

        try:
            result = await self._guard(_do(), timeout, cancel_token)
        except RequestCancelled:
            raise
        except ClassifiedError as exc:
            self._log_failure("POST", url, headers, None, exc)
            raise
        except httpx.HTTPError as exc:
            self._log_failure("POST", url, headers, None, exc)
            raise from_transport_exception(exc) from exc

        if not result.ok:
            self._log_failure("POST", url, headers, result.status)
        return result


def create_transport(backend: TransportBackend | None = None) -> HttpTransport:
    return HttpTransport(backend or detect_transport_backend())
