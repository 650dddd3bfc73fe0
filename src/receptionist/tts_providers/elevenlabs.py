from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncGenerator, Optional

import httpx
import structlog

from src.receptionist.config import get_config
from src.receptionist.tts_providers.base import TTSProvider
from src.receptionist.tts_types import TTSChunk, TTSMetrics

logger = structlog.get_logger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"
OUTPUT_FORMAT = "ulaw_8000"

# 100ms of 8kHz mu-law
MIN_CHUNK_BYTES = 800


class ElevenLabsTTS(TTSProvider):
    """
    ElevenLabs HTTP streaming TTS.

    Requests `ulaw_8000` so the response body is Twilio-ready as is. Small network
    reads are coalesced into ~100ms chunks.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self.metrics = TTSMetrics()
        self._client = client
        self._owns_client = client is None
        self._is_cancelled = False

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=ELEVENLABS_BASE_URL,
                timeout=httpx.Timeout(30.0, connect=5.0),
            )
        return self._client

    def cancel(self) -> None:
        self._is_cancelled = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        if not text or not text.strip():
            return

        self._is_cancelled = False
        voice_id = voice_id or self.config.elevenlabs_voice_id

        start_time = time.time()
        first_byte_time: Optional[float] = None
        total_audio_bytes = 0
        pending = b""

        try:
            async with self._get_client().stream(
                "POST",
                f"/text-to-speech/{voice_id}/stream",
                params={"output_format": OUTPUT_FORMAT, "optimize_streaming_latency": 3},
                headers={"xi-api-key": self.config.elevenlabs_api_key, "Accept": "audio/basic"},
                json={"model_id": self.config.elevenlabs_model, "text": text},
            ) as resp:
                resp.raise_for_status()
                async for data in resp.aiter_bytes():
                    if self._is_cancelled:
                        break
                    if not data:
                        continue
                    if first_byte_time is None:
                        first_byte_time = time.time()
                    pending += data
                    if len(pending) >= MIN_CHUNK_BYTES:
                        total_audio_bytes += len(pending)
                        yield TTSChunk(audio_bytes=pending, is_final=False)
                        pending = b""
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.metrics.failures += 1
            logger.error("ElevenLabs synthesis failed", error=str(e), voice_id=voice_id)
            raise

        if self._is_cancelled:
            return

        total_audio_bytes += len(pending)
        yield TTSChunk(audio_bytes=pending, is_final=True)

        end_time = time.time()
        if first_byte_time is None:
            first_byte_time = end_time

        self.metrics.record_synthesis(
            characters=len(text),
            audio_bytes=total_audio_bytes,
            first_byte_ms=(first_byte_time - start_time) * 1000,
            total_ms=(end_time - start_time) * 1000,
        )
