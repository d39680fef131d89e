import asyncio
import os
import sys

import httpx
import pytest
from google.api_core.exceptions import GoogleAPIError

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from voicequote.clients import gemini
from voicequote.clients.gemini import GeminiClient
from voicequote.clients.media import MediaDownloadClient
from voicequote.config import Settings
from voicequote.services.exceptions import DownstreamServiceError, TranscriptionError
from voicequote.services.transcription import GeminiTranscriber


class FakeResponse:
    def __init__(self, text):
        self.text = text


class FakeModel:
    instances = []

    def __init__(self, model_name, system_instruction=None, generation_config=None):
        self.model_name = model_name
        self.system_instruction = system_instruction
        self.generation_config = generation_config
        self.prompts = []
        FakeModel.instances.append(self)

    def generate_content(self, contents):
        self.prompts.append(contents)
        return FakeResponse(' [{"type": "remove_item", "target": "toilet"}] ')


class FailingModel(FakeModel):
    def generate_content(self, contents):
        raise GoogleAPIError("quota exceeded")


@pytest.fixture
def fake_genai(monkeypatch):
    FakeModel.instances = []
    monkeypatch.setattr(gemini.genai, "configure", lambda **kwargs: None)
    monkeypatch.setattr(gemini.genai, "GenerativeModel", FakeModel)
    return monkeypatch


def test_gemini_client_returns_stripped_text(fake_genai) -> None:
    client = GeminiClient(api_key="test-key", model="gemini-test", temperature=0.1)

    text = asyncio.run(client.generate("prompt", system_instruction="be terse", json_output=True))

    assert text == '[{"type": "remove_item", "target": "toilet"}]'
    model = FakeModel.instances[0]
    assert model.model_name == "gemini-test"
    assert model.system_instruction == "be terse"
    assert model.generation_config == {"temperature": 0.1, "response_mime_type": "application/json"}
    assert model.prompts == ["prompt"]


def test_gemini_client_wraps_vendor_errors(fake_genai) -> None:
    fake_genai.setattr(gemini.genai, "GenerativeModel", FailingModel)
    client = GeminiClient(api_key="test-key")

    with pytest.raises(DownstreamServiceError):
        asyncio.run(client.generate("prompt"))


def test_gemini_client_without_key_is_disabled() -> None:
    client = GeminiClient(api_key=None)

    assert client.enabled is False
    with pytest.raises(DownstreamServiceError):
        asyncio.run(client.generate("prompt"))


def _media_client(handler) -> MediaDownloadClient:
    media = MediaDownloadClient(username="AC123", password="secret")
    media._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return media


def test_media_client_fetches_audio() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"OggS-audio", headers={"content-type": "audio/ogg"})

    media = _media_client(handler)

    content, content_type = asyncio.run(media.fetch("https://media.test/voice.ogg"))

    assert content == b"OggS-audio"
    assert content_type == "audio/ogg"


def test_transcriber_sends_inline_audio(fake_genai) -> None:
    class Transcript(FakeModel):
        def generate_content(self, contents):
            self.prompts.append(contents)
            return FakeResponse("add a wax ring for 30")

    fake_genai.setattr(gemini.genai, "GenerativeModel", Transcript)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"OggS-audio", headers={"content-type": "audio/ogg; codecs=opus"})

    transcriber = GeminiTranscriber(GeminiClient(api_key="test-key"), _media_client(handler))

    text = asyncio.run(transcriber.transcribe("https://media.test/voice.ogg"))

    assert text == "add a wax ring for 30"
    prompt, blob = FakeModel.instances[0].prompts[0]
    assert "verbatim" in prompt
    assert blob == {"mime_type": "audio/ogg", "data": b"OggS-audio"}


def test_transcriber_reports_download_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    transcriber = GeminiTranscriber(GeminiClient(api_key="test-key"), _media_client(handler))

    with pytest.raises(TranscriptionError) as excinfo:
        asyncio.run(transcriber.transcribe("https://media.test/missing.ogg"))

    assert excinfo.value.status_code == 404


def test_settings_normalize_backends(monkeypatch) -> None:
    monkeypatch.setenv("VOICEQUOTE_PARSER_BACKEND", " Keyword ")
    monkeypatch.setenv("VOICEQUOTE_PUBLIC_BASE_URL", "https://quotes.example.com/")

    settings = Settings()

    assert settings.parser_backend == "keyword"
    assert settings.artifact_base_url() == "https://quotes.example.com"
