from __future__ import annotations

import logging
from typing import Optional, Tuple

import httpx

from voicequote.services.exceptions import DownstreamServiceError

logger = logging.getLogger(__name__)


class MediaDownloadClient:
    """Async HTTP client that fetches voice notes from the messaging provider."""

    def __init__(
        self,
        *,
        timeout: float = 60.0,
        username: str | None = None,
        password: str | None = None,
    ) -> None:
        self._timeout = timeout
        self._auth = (username, password) if username and password else None
        self._client: Optional[httpx.AsyncClient] = None

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            auth=self._auth,
            follow_redirects=True,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._build_client()
        return self._client

    async def fetch(self, url: str) -> Tuple[bytes, str | None]:
        """Return the media body and its reported content type."""

        client = await self._ensure_client()
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.exception("Media host returned error %s", exc.response.status_code)
            raise DownstreamServiceError(
                "Media host returned an error response",
                status_code=exc.response.status_code,
                cause=exc,
            ) from exc
        except httpx.RequestError as exc:
            logger.exception("Unable to download media: %s", exc)
            raise DownstreamServiceError(
                "Unable to download media", status_code=None, cause=exc
            ) from exc

        content_type = response.headers.get("content-type")
        logger.info("Downloaded %d bytes of media (%s)", len(response.content), content_type)
        return response.content, content_type
