"""HTTP transport for ApiCall nodes.

The executor only depends on the ``HttpTransport`` protocol; ``HttpxTransport``
is the default implementation on top of ``httpx.AsyncClient``. Transport
failures are raised as NodeExecutionError subclasses so the executor records
them like any other node failure.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlsplit

import httpx

from flowcore.core.errors import HttpRequestError, NodeTimeoutError

logger = logging.getLogger(__name__)

BLOCKED_HOSTNAMES = frozenset(
    {
        "localhost",
        "metadata.google.internal",
        "metadata.google",
    }
)


@dataclass
class HttpRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    timeout_ms: int = 30000

    @property
    def full_url(self) -> str:
        """URL with the query parameters applied, as it goes on the wire."""
        if not self.params:
            return self.url
        try:
            return str(httpx.URL(self.url, params=self.params))
        except httpx.InvalidURL:
            return self.url


@dataclass
class HttpResponse:
    status: int
    status_text: str
    headers: dict[str, str]
    body: Any
    duration_ms: int
    url: str


class HttpTransport(Protocol):
    async def send(self, request: HttpRequest) -> HttpResponse: ...


def validate_request_url(url: str, block_private_networks: bool = True) -> None:
    """Reject URLs that are malformed or point at internal infrastructure.

    Raises HttpRequestError. Only literal IP hosts are range-checked; DNS is
    not resolved here.
    """
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise HttpRequestError(f"Protocol '{parts.scheme or '<none>'}' is not allowed. Use http or https.")
    hostname = (parts.hostname or "").lower()
    if not hostname:
        raise HttpRequestError(f"Invalid URL: {url}")
    if not block_private_networks:
        return

    if hostname in BLOCKED_HOSTNAMES:
        raise HttpRequestError(f"Requests to '{hostname}' are not allowed")
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return
    if (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
    ):
        raise HttpRequestError(f"Requests to private or internal address {hostname} are not allowed")


def _parse_body(response: httpx.Response) -> Any:
    text = response.text
    if "application/json" in response.headers.get("content-type", "") and text:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


class HttpxTransport:
    """HttpTransport backed by an ``httpx.AsyncClient``.

    Pass ``client`` to share a connection pool or to inject an
    ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        block_private_networks: bool = True,
    ):
        self._client = client
        self._owns_client = client is None
        self.block_private_networks = block_private_networks

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    async def send(self, request: HttpRequest) -> HttpResponse:
        validate_request_url(request.url, self.block_private_networks)

        kwargs: dict[str, Any] = {
            "headers": request.headers,
            "params": request.params or None,
            "timeout": httpx.Timeout(request.timeout_ms / 1000),
        }
        if isinstance(request.body, (dict, list)):
            kwargs["json"] = request.body
        elif isinstance(request.body, str):
            kwargs["content"] = request.body
        elif request.body is not None:
            kwargs["json"] = request.body

        start = time.perf_counter()
        try:
            response = await self.client.request(request.method, request.url, **kwargs)
        except httpx.TimeoutException:
            raise NodeTimeoutError(f"Request timeout after {request.timeout_ms}ms")
        except httpx.HTTPError as e:
            raise HttpRequestError(f"Network error: {e}") from e
        duration_ms = int((time.perf_counter() - start) * 1000)

        logger.debug(f"{request.method} {request.url} -> {response.status_code} ({duration_ms}ms)")
        return HttpResponse(
            status=response.status_code,
            status_text=response.reason_phrase,
            headers=dict(response.headers),
            body=_parse_body(response),
            duration_ms=duration_ms,
            url=str(response.request.url),
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
