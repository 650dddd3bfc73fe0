"""
Deepgram Speech-to-Text streaming client.

Accepts mu-law 8kHz directly from Twilio (no conversion needed) and reports
interim/final transcripts plus utterance-end signals to a single listener.
Reconnection policy lives in the segmenter; this client only reports closes.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.receptionist.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"

# Deepgram closes idle streams after ~10s without audio; muted calls send no audio.
KEEPALIVE_INTERVAL_S = 5.0


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    is_final: bool
    confidence: float = 0.0
    speech_final: bool = False
    utterance_end: bool = False
    timestamp: float = field(default_factory=time.time)
    latency_ms: float = 0.0


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_bytes: int = 0
    total_transcripts: int = 0
    final_transcripts: int = 0
    avg_latency_ms: float = 0.0

    def record_transcript(self, is_final: bool, latency_ms: float) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1
        if self.total_transcripts > 0:
            self.avg_latency_ms = (
                (self.avg_latency_ms * (self.total_transcripts - 1) + latency_ms)
                / self.total_transcripts
            )


TranscriptCallback = Callable[[TranscriptionResult], Awaitable[None]]
CloseCallback = Callable[[], Awaitable[None]]


class TranscriptionBackend(ABC):
    """Interface the segmenter expects from a streaming transcription service."""

    def __init__(self) -> None:
        self._on_transcript: Optional[TranscriptCallback] = None
        self._on_close: Optional[CloseCallback] = None

    def set_callbacks(
        self,
        *,
        on_transcript: Optional[TranscriptCallback] = None,
        on_close: Optional[CloseCallback] = None,
    ) -> None:
        self._on_transcript = on_transcript
        self._on_close = on_close

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def connect(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def send_audio(self, audio_bytes: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    async def disconnect(self) -> None:
        raise NotImplementedError


class DeepgramSTT(TranscriptionBackend):
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(self, config: Optional[Any] = None):
        super().__init__()
        if config is None:
            config = get_config()

        self.config = config
        self._ws = None
        self._is_connected = False
        self._closing = False
        self._metrics = STTMetrics()
        self._last_audio_time: float = 0.0
        self._receive_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    def build_url(self) -> str:
        params = {
            "model": self.config.deepgram_model,
            "encoding": "mulaw",
            "sample_rate": 8000,
            "channels": 1,
            "punctuate": "true",
            "interim_results": "true",
            "vad_events": "true",
            "endpointing": self.config.deepgram_endpointing_ms,
            "utterance_end_ms": self.config.deepgram_utterance_end_ms,
        }
        return f"{DEEPGRAM_URL}?{urlencode(params)}"

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        if self._ws is not None:
            # Stale socket from a failed send; release it before dialing again.
            await self.disconnect()

        self._closing = False
        try:
            headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
            logger.info("Connecting to Deepgram", model=self.config.deepgram_model)
            self._ws = await websockets.connect(
                self.build_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._last_audio_time = time.time()
        logger.info("Deepgram STT connected")

        self._receive_task = asyncio.create_task(self._receive_loop())
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram."""
        self._closing = True
        self._is_connected = False

        for task in (self._keepalive_task, self._receive_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._keepalive_task = None
        self._receive_task = None

        if self._ws:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, audio_bytes: bytes) -> None:
        """
        Send audio data to Deepgram.

        Raises:
            ConnectionError: If the stream is not connected or the send fails
        """
        if not self._is_connected or not self._ws:
            raise ConnectionError("Deepgram stream is not connected")

        try:
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))
            self._is_connected = False
            raise ConnectionError(str(e)) from e

        self._last_audio_time = time.time()
        self._metrics.total_audio_bytes += len(audio_bytes)

    async def _keepalive_loop(self) -> None:
        try:
            while self._is_connected:
                await asyncio.sleep(KEEPALIVE_INTERVAL_S)
                if not self._ws or not self._is_connected:
                    break
                if time.time() - self._last_audio_time >= KEEPALIVE_INTERVAL_S:
                    await self._ws.send(json.dumps({"type": "KeepAlive"}))
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("Deepgram keepalive stopped", error=str(e))

    async def _receive_loop(self) -> None:
        """Pump server messages until the socket closes, then report the close."""
        try:
            async for raw in self._ws:
                if not self._is_connected:
                    break
                try:
                    await self.handle_message(json.loads(raw))
                except json.JSONDecodeError:
                    logger.warning("Deepgram sent a non-JSON message")
                except Exception as e:
                    logger.error("Deepgram message handling failed", error=str(e))
        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Deepgram stream closed", code=getattr(e, "code", None))
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("Deepgram stream failed", error=str(e))
        finally:
            self._is_connected = False

        if not self._closing and self._on_close:
            await self._on_close()

    async def handle_message(self, data: dict) -> None:
        """Dispatch one decoded server message by its `type`."""
        kind = data.get("type")
        kind = kind.lower() if isinstance(kind, str) else ""

        if kind == "results":
            result = self._parse_results(data)
            if result is not None:
                await self._emit(result)
        elif kind in ("utteranceend", "utterance_end"):
            logger.debug("Deepgram utterance end")
            await self._emit(TranscriptionResult(text="", is_final=False, utterance_end=True))
        elif kind == "error":
            logger.error("Deepgram reported an error", error=data.get("message", "Unknown"), details=data)

    def _parse_results(self, data: dict) -> Optional[TranscriptionResult]:
        alternatives = (data.get("channel") or {}).get("alternatives") or []
        if not alternatives:
            return None

        best = alternatives[0]
        latency_ms = (time.time() - self._last_audio_time) * 1000 if self._last_audio_time > 0 else 0.0
        result = TranscriptionResult(
            text=(best.get("transcript") or "").strip(),
            is_final=bool(data.get("is_final", False)),
            confidence=best.get("confidence", 0.0),
            speech_final=bool(data.get("speech_final", False)),
            latency_ms=latency_ms,
        )
        self._metrics.record_transcript(result.is_final, latency_ms)
        logger.debug(
            "STT transcript",
            text=result.text[:50],
            is_final=result.is_final,
            speech_final=result.speech_final,
        )
        return result

    async def _emit(self, result: TranscriptionResult) -> None:
        if self._on_transcript:
            await self._on_transcript(result)
