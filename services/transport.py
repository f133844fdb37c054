"""Minimal fetch-style request function used by the dispatcher."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from core.settings import API


class Response(Protocol):
    ok: bool
    status: Optional[int]

    def json(self) -> Any: ...


class Transport(Protocol):
    async def request(self, method: str, path: str, *, json: Any = None) -> Response: ...


@dataclass
class TransportResponse:
    ok: bool
    status: Optional[int] = None
    body: Any = field(default=None)

    def json(self) -> Any:
        return self.body


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return {"error": response.text[:500]}


class HttpxTransport:
    """``httpx.AsyncClient`` behind the :class:`Transport` interface.

    Network failures propagate as ``httpx`` exceptions; the dispatcher turns
    them into failed results.
    """

    def __init__(
        self,
        base_url: str = API.base_url,
        timeout: float = API.timeout_sec,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def request(self, method: str, path: str, *, json: Any = None) -> TransportResponse:
        kwargs = {}
        if json is not None:
            kwargs["json"] = json
        response = await self._client.request(method, path, **kwargs)
        return TransportResponse(
            ok=response.is_success,
            status=response.status_code,
            body=_decode_body(response),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["HttpxTransport", "Response", "Transport", "TransportResponse"]
