"""
Media Service - audio transcription and image analysis via the media API
"""
from __future__ import annotations

from dataclasses import dataclass, field

import httpx

from app.core.circuit_breaker import CircuitBreaker, get_media_circuit_breaker
from app.core.config import settings
from app.core.exceptions import MediaServiceError, ServiceTimeoutError


@dataclass
class AudioTranscription:
    text: str
    confidence: float = 0.0
    duration: float = 0.0
    language: str | None = None


@dataclass
class ImageDescription:
    description: str
    detected_text: str | None = None
    labels: list[str] = field(default_factory=list)


class MediaService:

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ):
        self._base_url = (base_url or settings.MEDIA_API_URL).rstrip("/")
        self._timeout = timeout_seconds or settings.MEDIA_API_TIMEOUT_SECONDS
        self._circuit_breaker = circuit_breaker or get_media_circuit_breaker()

    async def transcribe(self, audio_url: str) -> AudioTranscription:
        data = await self._circuit_breaker.execute(
            self._post, "/api/media/transcribe", audio_url
        )
        text = (data.get("text") or "").strip()
        if not text:
            raise MediaServiceError("Empty transcription")
        return AudioTranscription(
            text=text,
            confidence=data.get("confidence", 0.0),
            duration=data.get("duration", 0.0),
            language=data.get("language"),
        )

    async def analyze_image(self, image_url: str) -> ImageDescription:
        data = await self._circuit_breaker.execute(
            self._post, "/api/media/analyze-image", image_url
        )
        description = (data.get("description") or "").strip()
        if not description:
            raise MediaServiceError("Empty image description")
        return ImageDescription(
            description=description,
            detected_text=data.get("detected_text") or data.get("detectedText"),
            labels=data.get("labels") or [],
        )

    async def _post(self, path: str, media_url: str) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(f"{self._base_url}{path}", json={"url": media_url})
        except httpx.TimeoutException:
            raise ServiceTimeoutError("media", self._timeout)
        except httpx.RequestError as e:
            raise MediaServiceError(f"Network error: {e}")

        if response.status_code != 200:
            raise MediaServiceError(
                f"{path} returned status {response.status_code}",
                details={"status_code": response.status_code, "response_text": response.text[:500]},
            )
        return response.json()
