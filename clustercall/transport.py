"""HTTP transport used by the dispatch client.

The dispatch client only needs one primitive::

    await transport.send(url, method=..., headers=..., body=..., timeout=..., follow_redirects=...)

which returns a :class:`TransportResponse` or raises :class:`TransportTimeout`
/ :class:`TransportConnectionError`.  :class:`HttpxTransport` implements it
on top of ``httpx.AsyncClient``; tests and hosts may pass any object with the
same ``send`` coroutine.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger("ClusterCall.Transport")


class TransportTimeout(Exception):
    """The request exceeded its deadline."""


class TransportConnectionError(Exception):
    """The request could not be delivered (DNS, refused, reset, ...)."""


@dataclass
class TransportResponse:
    status: int
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status <= 299

    def json(self) -> Any:
        """Parse the body as JSON.  Raises ``ValueError`` on malformed data."""
        return json.loads(self.body.decode("utf-8"))


class Transport(Protocol):
    async def send(
        self,
        url: str,
        *,
        method: str,
        headers: Dict[str, str],
        body: bytes,
        timeout: float,
        follow_redirects: int,
    ) -> TransportResponse:
        ...


class HttpxTransport:
    """Async transport backed by a shared ``httpx.AsyncClient``.

    Args:
        max_redirects:  Redirects followed per request (default 1).
        client:         Optional pre-built client (e.g. with a mock transport).
    """

    def __init__(self, max_redirects: int = 1, client: Optional[httpx.AsyncClient] = None):
        self.max_redirects = max_redirects
        if client is not None:
            client.max_redirects = max_redirects
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(max_redirects=self.max_redirects)
        return self._client

    async def send(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
        timeout: float = 40.0,
        follow_redirects: int = 1,
    ) -> TransportResponse:
        client = self._get_client()
        try:
            resp = await client.request(
                method,
                url,
                headers=headers,
                content=body,
                timeout=timeout,
                follow_redirects=follow_redirects > 0,
            )
        except httpx.TimeoutException as exc:
            raise TransportTimeout(str(exc) or "timed out") from exc
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as exc:
            raise TransportConnectionError(str(exc) or type(exc).__name__) from exc
        return TransportResponse(status=resp.status_code, body=resp.content)

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
