from __future__ import annotations

import asyncio
import base64
import json
import time
import uuid
from typing import Any, AsyncGenerator, Optional

import structlog
import websockets

from src.receptionist.config import get_config
from src.receptionist.tts_providers.base import TTSProvider
from src.receptionist.tts_types import TTSChunk, TTSMetrics

logger = structlog.get_logger(__name__)

# Cartesia emits mu-law at 8kHz directly; no resampling or transcoding.
CARTESIA_SAMPLE_RATE = 8000
CARTESIA_WS_URL = "wss://api.cartesia.ai/tts/websocket"
CARTESIA_API_VERSION = "2024-06-10"
CARTESIA_MODEL = "sonic-english"


class CartesiaError(RuntimeError):
    pass


class CartesiaTTS(TTSProvider):
    """
    Cartesia streaming TTS client using WebSocket API.

    Produces Twilio-ready mu-law 8kHz audio.
    """

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self.metrics = TTSMetrics()
        self._is_cancelled = False

    def cancel(self) -> None:
        self._is_cancelled = True
        logger.debug("Cartesia TTS cancelled")

    def build_request(self, text: str, voice_id: str) -> dict[str, Any]:
        return {
            "context_id": uuid.uuid4().hex,
            "model_id": CARTESIA_MODEL,
            "transcript": text,
            "voice": {"mode": "id", "id": voice_id},
            "output_format": {
                "container": "raw",
                "encoding": "pcm_mulaw",
                "sample_rate": CARTESIA_SAMPLE_RATE,
            },
            "continue": False,
        }

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        if not text or not text.strip():
            return

        self._is_cancelled = False
        voice_id = voice_id or self.config.cartesia_voice_id

        start_time = time.time()
        first_byte_time: Optional[float] = None
        total_audio_bytes = 0

        url = (
            f"{CARTESIA_WS_URL}?api_key={self.config.cartesia_api_key}"
            f"&cartesia_version={CARTESIA_API_VERSION}"
        )

        try:
            async with websockets.connect(url) as ws:
                await ws.send(json.dumps(self.build_request(text, voice_id)))

                async for message in ws:
                    if self._is_cancelled:
                        break

                    if isinstance(message, (bytes, bytearray)):
                        audio = bytes(message)
                    else:
                        try:
                            data = json.loads(message)
                        except json.JSONDecodeError:
                            continue

                        msg_type = data.get("type", "")
                        if msg_type == "done":
                            break
                        if msg_type == "error":
                            raise CartesiaError(data.get("message") or data.get("error") or "unknown error")
                        if msg_type != "chunk" or not data.get("data"):
                            continue
                        audio = base64.b64decode(data["data"])

                    if not audio:
                        continue
                    if first_byte_time is None:
                        first_byte_time = time.time()
                    total_audio_bytes += len(audio)
                    yield TTSChunk(audio_bytes=audio, is_final=False)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.metrics.failures += 1
            logger.error("Cartesia synthesis failed", error=str(e))
            raise

        if not self._is_cancelled:
            yield TTSChunk(audio_bytes=b"", is_final=True)

        end_time = time.time()
        if first_byte_time is None:
            first_byte_time = end_time

        self.metrics.record_synthesis(
            characters=len(text),
            audio_bytes=total_audio_bytes,
            first_byte_ms=(first_byte_time - start_time) * 1000,
            total_ms=(end_time - start_time) * 1000,
        )
