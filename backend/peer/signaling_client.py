"""Async HTTP client for the signaling service."""

import logging
from typing import Any, Optional

import httpx

from config import SIGNALING_URL

logger = logging.getLogger(__name__)


class SignalingClient:
    """Thin wrapper over the four rendezvous endpoints."""

    def __init__(
        self,
        base_url: str = SIGNALING_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __aenter__(self) -> "SignalingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def store_offer(self, code: str, signal: Any) -> None:
        await self._post("/offer", code, signal)

    async def read_offer(self, code: str) -> Optional[Any]:
        return await self._get("/poll", code)

    async def store_answer(self, code: str, signal: Any) -> None:
        await self._post("/answer", code, signal)

    async def read_answer(self, code: str) -> Optional[Any]:
        return await self._get("/answer", code)

    async def _post(self, path: str, code: str, signal: Any) -> None:
        response = await self._client.post(path, json={"code": code, "signal": signal})
        response.raise_for_status()
        logger.debug(f"POST {path} for {code}: {response.status_code}")

    async def _get(self, path: str, code: str) -> Optional[Any]:
        response = await self._client.get(path, params={"code": code})
        response.raise_for_status()
        return response.json().get("signal")
