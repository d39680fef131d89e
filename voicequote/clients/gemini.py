from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import google.generativeai as genai
from google.api_core.exceptions import GoogleAPIError

from voicequote.services.exceptions import DownstreamServiceError

logger = logging.getLogger(__name__)


class GeminiClient:
    """Thin async wrapper around ``google.generativeai`` used by parsers and extractors."""

    def __init__(
        self,
        *,
        api_key: Optional[str],
        model: str = "gemini-2.5-flash",
        temperature: float = 0.2,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._timeout = timeout
        self._configured = False

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    @property
    def model_name(self) -> str:
        return self._model

    def _ensure_configured(self) -> None:
        if self._configured or not self._api_key:
            return
        genai.configure(api_key=self._api_key)
        self._configured = True

    def _build_model(self, system_instruction: Optional[str], json_output: bool) -> Any:
        generation_config: Dict[str, Any] = {"temperature": self._temperature}
        if json_output:
            generation_config["response_mime_type"] = "application/json"
        return genai.GenerativeModel(
            self._model,
            system_instruction=system_instruction,
            generation_config=generation_config,
        )

    async def generate(
        self,
        contents: Any,
        *,
        system_instruction: Optional[str] = None,
        json_output: bool = False,
        timeout: Optional[float] = None,
    ) -> str:
        """Run one generation and return the response text.

        Raises ``DownstreamServiceError`` for missing configuration, vendor
        errors, timeouts and empty responses.
        """

        if not self._api_key:
            raise DownstreamServiceError("Gemini API key is not configured")
        self._ensure_configured()
        model = self._build_model(system_instruction, json_output)
        limit = timeout or self._timeout
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(model.generate_content, contents), timeout=limit
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Gemini request timed out after %.1fs", limit)
            raise DownstreamServiceError("Gemini request timed out", cause=exc) from exc
        except GoogleAPIError as exc:
            logger.exception("Gemini request failed: %s", exc)
            raise DownstreamServiceError(
                "Gemini request failed", status_code=getattr(exc, "code", None), cause=exc
            ) from exc

        try:
            text = getattr(response, "text", None)
        except ValueError as exc:
            # Blocked or empty candidates raise on ``.text`` access.
            raise DownstreamServiceError("Gemini response contained no text", cause=exc) from exc
        if not text or not text.strip():
            raise DownstreamServiceError("Gemini response contained no text")
        logger.debug("Gemini response: %s", text[:500])
        return text.strip()
