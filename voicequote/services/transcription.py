from __future__ import annotations

import logging
from typing import Optional, Protocol

from voicequote.clients.gemini import GeminiClient
from voicequote.clients.media import MediaDownloadClient
from voicequote.services.exceptions import DownstreamServiceError, TranscriptionError

logger = logging.getLogger(__name__)

TRANSCRIPTION_PROMPT = (
    "Transcribe this voice note from a plumbing contractor verbatim. "
    "It usually describes work items, prices or changes to a quote. "
    "Write numbers as digits. Return only the transcript text."
)

_DEFAULT_AUDIO_TYPE = "audio/ogg"


class Transcriber(Protocol):
    async def transcribe(self, audio_url: str, content_type: Optional[str] = None) -> str:
        ...


class GeminiTranscriber:
    """Downloads a voice note and asks Gemini for a verbatim transcript."""

    def __init__(
        self,
        client: GeminiClient,
        media_client: MediaDownloadClient,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self._client = client
        self._media = media_client
        self._timeout = timeout

    async def transcribe(self, audio_url: str, content_type: Optional[str] = None) -> str:
        try:
            audio, reported_type = await self._media.fetch(audio_url)
        except DownstreamServiceError as exc:
            raise TranscriptionError("Unable to download voice note", exc.status_code, cause=exc) from exc
        if not audio:
            raise TranscriptionError("Voice note was empty")

        mime_type = (content_type or reported_type or _DEFAULT_AUDIO_TYPE).split(";")[0].strip()
        try:
            text = await self._client.generate(
                [TRANSCRIPTION_PROMPT, {"mime_type": mime_type, "data": audio}],
                timeout=self._timeout,
            )
        except DownstreamServiceError as exc:
            raise TranscriptionError("Unable to transcribe voice note", exc.status_code, cause=exc) from exc

        logger.info("Transcribed %d bytes of %s into %d characters", len(audio), mime_type, len(text))
        return text
