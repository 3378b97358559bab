"""Thin async HTTP executor used by the payment flows."""

from __future__ import annotations

import json as _json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx


@dataclass
class HttpResponse:
    """Uniform view of a response: JSON when it parses, raw text otherwise."""

    status: int
    body: Any
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def json(self) -> Optional[Dict[str, Any]]:
        return self.body if isinstance(self.body, dict) else None

    @property
    def text(self) -> str:
        if isinstance(self.body, str):
            return self.body
        return _json.dumps(self.body)

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "HttpResponse":
        text = response.text
        body: Any
        try:
            body = _json.loads(text)
        except ValueError:
            body = text
        return cls(
            status=response.status_code,
            body=body,
            headers=dict(response.headers.items()),
        )


class RequestExecutor:
    """Performs one HTTP round trip. Never raises on unparsable bodies."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self._owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(base_url=base_url or "", timeout=timeout)
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def execute(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> HttpResponse:
        request_headers = dict(headers or {})
        content: Optional[bytes] = None
        if json is not None:
            request_headers.setdefault("Content-Type", "application/json")
            content = _json.dumps(json).encode("utf-8")
        response = await self._client.request(
            method.upper(),
            url,
            content=content,
            headers=request_headers,
        )
        return HttpResponse.from_httpx(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RequestExecutor":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
