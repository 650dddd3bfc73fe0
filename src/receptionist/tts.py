from __future__ import annotations

from typing import Any, AsyncGenerator, Optional

import structlog

from src.receptionist.config import get_config
from src.receptionist.tts_providers.base import TTSProvider
from src.receptionist.tts_providers.cartesia import CartesiaTTS
from src.receptionist.tts_providers.elevenlabs import ElevenLabsTTS
from src.receptionist.tts_types import TTSChunk, TTSMetrics

logger = structlog.get_logger(__name__)

PROVIDERS = {
    "elevenlabs": ElevenLabsTTS,
    "cartesia": CartesiaTTS,
}


class TTSManager:
    """
    Per-call TTS manager with a pluggable provider system.

    - `elevenlabs`: HTTP streaming TTS (default)
    - `cartesia`: streaming WebSocket TTS
    """

    def __init__(self, config: Optional[Any] = None, provider: Optional[TTSProvider] = None):
        self.config = config or get_config()
        self._provider: Optional[TTSProvider] = provider

    async def start(self) -> None:
        if self._provider is not None:
            return

        name = (self.config.tts_provider or "elevenlabs").strip().lower()
        provider_cls = PROVIDERS.get(name)
        if provider_cls is None:
            raise ValueError(f"Unsupported TTS_PROVIDER: {self.config.tts_provider}")

        self._provider = provider_cls(self.config)
        logger.info("TTS provider ready", provider=name)

    async def stop(self) -> None:
        self.cancel_current()
        if self._provider:
            await self._provider.close()
            self._provider = None

    def cancel_current(self) -> None:
        if self._provider:
            self._provider.cancel()

    @property
    def metrics(self) -> Optional[TTSMetrics]:
        return getattr(self._provider, "metrics", None)

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        if not self._provider:
            await self.start()

        async for chunk in self._provider.synthesize_streaming(text, voice_id=voice_id):
            yield chunk
