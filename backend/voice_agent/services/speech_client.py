"""
Speech Client - HTTP transport layer for the ElevenLabs speech API.

Two operations:
- transcribe(audio) -> text   (POST /speech-to-text, multipart)
- synthesize(text) -> audio   (POST /text-to-speech/{voice_id}, audio/mpeg)

Like the ToolProvider client this is transport only: no retries,
no interpretation of the text it moves around.
"""

import logging
from typing import Any

import httpx

from voice_agent.config import (
    ELEVENLABS_API_KEY,
    ELEVENLABS_API_URL,
    ELEVENLABS_STT_MODEL,
    ELEVENLABS_TTS_MODEL,
    ELEVENLABS_VOICE_ID,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30.0


# =============================================================================
# EXCEPTIONS
# =============================================================================

class SpeechServiceError(Exception):
    """Base exception for speech service errors."""
    pass


class SpeechNotConfiguredError(SpeechServiceError):
    """No API key is configured."""
    pass


class SpeechConnectionError(SpeechServiceError):
    """Failed to connect to the speech service."""
    pass


class SpeechTimeoutError(SpeechServiceError):
    """Speech request timed out."""
    pass


class SpeechHTTPError(SpeechServiceError):
    """Speech service returned an HTTP error."""

    def __init__(self, message: str, status_code: int, response_body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


# =============================================================================
# CLIENT CLASS
# =============================================================================

class SpeechClient:
    """
    Async client for ElevenLabs speech-to-text and text-to-speech.

    Usage:
        speech = SpeechClient(api_key="...")
        text = await speech.transcribe(audio_bytes)
        audio = await speech.synthesize("Hello!")
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        voice_id: str | None = None,
        tts_model: str | None = None,
        stt_model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or ELEVENLABS_API_URL).rstrip("/")
        self.api_key = ELEVENLABS_API_KEY if api_key is None else api_key
        self.voice_id = voice_id or ELEVENLABS_VOICE_ID
        self.tts_model = tts_model or ELEVENLABS_TTS_MODEL
        self.stt_model = stt_model or ELEVENLABS_STT_MODEL
        self.timeout = timeout or REQUEST_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport)

    def _headers(self, accept: str = "application/json") -> dict[str, str]:
        if not self.is_configured:
            raise SpeechNotConfiguredError("ElevenLabs API key not configured")
        return {"xi-api-key": self.api_key, "Accept": accept}

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.ConnectError as e:
            raise SpeechConnectionError(f"Cannot connect to speech service at {url}: {e}") from e
        except httpx.TimeoutException as e:
            raise SpeechTimeoutError(f"Speech request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise SpeechConnectionError(f"HTTP error: {e}") from e

        if response.status_code >= 400:
            try:
                error_body = response.json()
            except ValueError:
                error_body = response.text
            raise SpeechHTTPError(
                f"Speech service returned HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=error_body,
            )
        return response

    async def transcribe(self, audio: bytes, filename: str = "audio.webm") -> str:
        """Convert audio bytes to text."""
        headers = self._headers()
        response = await self._send(
            "POST",
            f"{self.base_url}/speech-to-text",
            headers=headers,
            files={"file": (filename, audio, "application/octet-stream")},
            data={"model_id": self.stt_model},
        )
        try:
            payload = response.json()
        except ValueError as e:
            raise SpeechServiceError(f"Invalid JSON from speech-to-text: {e}") from e
        return (payload.get("text") or "").strip()

    async def synthesize(self, text: str) -> bytes:
        """Convert text to audio/mpeg bytes."""
        headers = self._headers(accept="audio/mpeg")
        response = await self._send(
            "POST",
            f"{self.base_url}/text-to-speech/{self.voice_id}",
            headers=headers,
            json={"text": text, "model_id": self.tts_model},
        )
        return response.content

    async def ping(self, timeout: float | None = None) -> bool:
        """Liveness check against the models listing."""
        headers = {"xi-api-key": self.api_key} if self.api_key else {}
        async with self._client(timeout) as client:
            response = await client.get(f"{self.base_url}/models", headers=headers)
        return response.is_success
