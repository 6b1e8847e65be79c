"""
Async HTTP client for the remote documentation API.

Shared by the "http" transcription, structuring, persistence and subject
lookup backends.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from src.voicedoc.config import settings


class RemoteApiError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class RemoteApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or settings.remote_api_base_url).rstrip("/")
        self._token = token if token is not None else settings.remote_api_token
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"User-Agent": "voicedoc-engine/0.1.0", "Accept": "application/json"},
            timeout=timeout if timeout is not None else settings.remote_api_timeout_seconds,
            transport=transport,
        )

    def _auth_headers(self) -> dict[str, str]:
        if self._token:
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    @staticmethod
    def _check(resp: httpx.Response) -> Any:
        if resp.status_code >= 400:
            raise RemoteApiError(resp.status_code, f"HTTP {resp.status_code}: {resp.text[:200]}")
        # 204 and other bodiless acknowledgements carry no payload.
        if not resp.content.strip():
            return None
        return resp.json()

    async def get_json(self, path: str) -> Any:
        resp = await self._client.get(path, headers=self._auth_headers())
        return self._check(resp)

    async def post_json(self, path: str, body: dict[str, Any]) -> Any:
        resp = await self._client.post(path, json=body, headers=self._auth_headers())
        return self._check(resp)

    async def post_multipart(
        self,
        path: str,
        *,
        files: dict[str, tuple[str, bytes, str]],
        data: Optional[dict[str, str]] = None,
    ) -> Any:
        resp = await self._client.post(path, files=files, data=data, headers=self._auth_headers())
        return self._check(resp)

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    async def close(self) -> None:
        await self._client.aclose()
