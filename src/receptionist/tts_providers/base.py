from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncGenerator, Optional

from src.receptionist.tts_types import TTSChunk, TTSMetrics


class TTSProvider(ABC):
    """
    Speech synthesis backend.

    `synthesize_streaming` yields mu-law 8kHz chunks in playback order and raises
    on failure; callers decide what a failed reply sounds like.
    """

    metrics: TTSMetrics

    @abstractmethod
    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        raise NotImplementedError

    def cancel(self) -> None:
        return None

    async def close(self) -> None:
        return None
