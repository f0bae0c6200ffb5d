"""
Outbound HTTP for every WorkLens collaborator (object store, backend registry,
OpenAI-compatible analyzers).

Two transports are available: ``httpx`` (async, primary) and ``requests``
(sync, run in a worker thread). The first transport-level failure on the
primary switches the client to the secondary for the rest of its lifetime.
Transport failures and timeouts are retried with exponential backoff; HTTP
error statuses and requests that cannot be built (invalid URL, body that is
not JSON-serialisable) are returned as a failed envelope and never retried.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
import requests

from .exceptions import RequestTimeoutError, TransportError
from .logging_utils import get_logger
from .models import ApiResponse

logger = get_logger("http")

USER_AGENT = "WorkLens/1.0"
DEFAULT_TIMEOUT = 30.0
MAX_RETRIES = 2
RETRY_BASE_SECONDS = 1.0

_DEFAULT_SECONDARY: Any = object()


@dataclass(frozen=True)
class TransportResponse:
    status: int
    text: str


class Transport(Protocol):
    name: str

    async def send(
        self,
        method: str,
        url: str,
        *,
        body: Any,
        headers: dict[str, str],
        timeout: float,
    ) -> TransportResponse: ...

    async def close(self) -> None: ...


class HttpxTransport:
    name = "httpx"

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def send(self, method, url, *, body, headers, timeout) -> TransportResponse:
        kwargs = _body_kwargs(body, "content")
        try:
            response = await self._get_client().request(method, url, headers=headers, timeout=timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"{method} {url} timed out", timeout) from exc
        except httpx.TransportError as exc:
            raise TransportError(f"{method} {url} failed: {exc}", {"transport": self.name}) from exc
        return TransportResponse(status=response.status_code, text=response.text)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class RequestsTransport:
    name = "requests"

    def __init__(self, session: requests.Session | None = None):
        self._session = session or requests.Session()

    async def send(self, method, url, *, body, headers, timeout) -> TransportResponse:
        return await asyncio.to_thread(self._send_sync, method, url, body, headers, timeout)

    def _send_sync(self, method, url, body, headers, timeout) -> TransportResponse:
        kwargs = _body_kwargs(body, "data")
        try:
            response = self._session.request(method, url, headers=headers, timeout=timeout, **kwargs)
        except requests.Timeout as exc:
            raise RequestTimeoutError(f"{method} {url} timed out", timeout) from exc
        except requests.RequestException as exc:
            raise TransportError(f"{method} {url} failed: {exc}", {"transport": self.name}) from exc
        return TransportResponse(status=response.status_code, text=response.text)

    async def close(self) -> None:
        self._session.close()


class ResilientHttpClient:
    def __init__(
        self,
        *,
        primary: Transport | None = None,
        secondary: Transport | None = _DEFAULT_SECONDARY,
        timeout_seconds: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        retry_base_seconds: float = RETRY_BASE_SECONDS,
        token_provider: Optional[Callable[[], str | None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._primary = primary or HttpxTransport()
        self._secondary = RequestsTransport() if secondary is _DEFAULT_SECONDARY else secondary
        self._timeout = timeout_seconds
        self._max_retries = max(0, max_retries)
        self._retry_base = retry_base_seconds
        self._token_provider = token_provider
        self._sleep = sleep
        self._use_fallback = False

    @property
    def active_transport(self) -> str:
        return self._secondary.name if self._use_fallback else self._primary.name

    @property
    def using_fallback(self) -> bool:
        return self._use_fallback

    async def execute(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> ApiResponse:
        request_headers = self._build_headers(body, headers)
        effective_timeout = timeout if timeout is not None else self._timeout

        last_exc: TransportError | None = None
        for attempt in range(self._max_retries + 1):
            try:
                response = await self._send_once(method, url, body, request_headers, effective_timeout)
            except TransportError as exc:
                last_exc = exc
                if attempt >= self._max_retries:
                    break
                delay = self._retry_base * (2**attempt)
                logger.warning(
                    "%s %s failed (attempt %s/%s): %s. Retrying in %.1fs",
                    method,
                    url,
                    attempt + 1,
                    self._max_retries + 1,
                    exc.message,
                    delay,
                )
                await self._sleep(delay)
                continue
            except Exception as exc:
                # Bad URL or an unencodable body; retrying cannot help.
                logger.error("%s %s could not be sent: %s", method, url, exc)
                return ApiResponse.fail("REQUEST_ERROR", f"{method} {url} could not be sent: {exc}")
            return _to_envelope(response)

        if last_exc is None:
            raise RuntimeError(f"{method} {url} failed unexpectedly")
        code = "TIMEOUT" if isinstance(last_exc, RequestTimeoutError) else "TRANSPORT_ERROR"
        logger.error("%s %s gave up after %s attempts: %s", method, url, self._max_retries + 1, last_exc.message)
        return ApiResponse.fail(code, last_exc.message, details=last_exc.details)

    async def close(self) -> None:
        await self._primary.close()
        if self._secondary is not None:
            await self._secondary.close()

    async def _send_once(self, method, url, body, headers, timeout) -> TransportResponse:
        if self._use_fallback or self._secondary is None:
            transport = self._secondary if self._use_fallback else self._primary
            return await self._send_with_timeout(transport, method, url, body, headers, timeout)

        try:
            return await self._send_with_timeout(self._primary, method, url, body, headers, timeout)
        except TransportError as exc:
            logger.warning(
                "Transport %s failed (%s); switching to %s for the rest of this process",
                self._primary.name,
                exc.message,
                self._secondary.name,
            )
            self._use_fallback = True
            return await self._send_with_timeout(self._secondary, method, url, body, headers, timeout)

    async def _send_with_timeout(self, transport, method, url, body, headers, timeout) -> TransportResponse:
        try:
            return await asyncio.wait_for(
                transport.send(method, url, body=body, headers=headers, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(f"{method} {url} timed out after {timeout}s", timeout) from exc

    def _build_headers(self, body: Any, headers: dict[str, str] | None) -> dict[str, str]:
        request_headers = {"User-Agent": USER_AGENT}
        if body is not None and not isinstance(body, (bytes, bytearray)):
            request_headers["Content-Type"] = "application/json"
        if self._token_provider is not None:
            token = self._token_provider()
            if token:
                request_headers["Authorization"] = f"Bearer {token}"
        request_headers.update(headers or {})
        return request_headers


def _body_kwargs(body: Any, raw_key: str) -> dict[str, Any]:
    if body is None:
        return {}
    if isinstance(body, (bytes, bytearray)):
        return {raw_key: bytes(body)}
    return {"json": body}


def _to_envelope(response: TransportResponse) -> ApiResponse:
    try:
        parsed = json.loads(response.text) if response.text else {}
    except json.JSONDecodeError:
        parsed = {"message": response.text}

    if 200 <= response.status < 300:
        return ApiResponse.ok(parsed, status=response.status)

    message = f"HTTP {response.status}"
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and error.get("message"):
            message = str(error["message"])
        elif isinstance(error, str) and error:
            message = error
        elif parsed.get("message"):
            message = str(parsed["message"])
    return ApiResponse.fail(f"HTTP_{response.status}", message, details=parsed, status=response.status)
