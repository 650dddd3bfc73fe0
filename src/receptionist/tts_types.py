from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class TTSChunk:
    """
    A chunk of synthesized audio.

    `audio_bytes` is Twilio-ready mu-law (8kHz). The last chunk of a reply has
    `is_final` set and may carry no audio.
    """

    audio_bytes: bytes
    is_final: bool = False
    timestamp: float = field(default_factory=time.time)

    # Optional: structured metadata for debugging/metrics.
    meta: Optional[dict[str, Any]] = None


@dataclass
class TTSMetrics:
    """Metrics for TTS performance."""

    total_requests: int = 0
    total_characters: int = 0
    total_audio_ms: float = 0.0
    avg_first_byte_ms: float = 0.0
    avg_total_ms: float = 0.0
    failures: int = 0

    def record_synthesis(
        self,
        *,
        characters: int,
        audio_bytes: int,
        first_byte_ms: float,
        total_ms: float,
    ) -> None:
        self.total_requests += 1
        self.total_characters += characters
        # 8kHz mu-law: one byte per sample
        self.total_audio_ms += audio_bytes / 8.0

        # Running averages
        n = self.total_requests
        self.avg_first_byte_ms = (self.avg_first_byte_ms * (n - 1) + first_byte_ms) / n
        self.avg_total_ms = (self.avg_total_ms * (n - 1) + total_ms) / n

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": self.total_requests,
            "characters": self.total_characters,
            "audio_ms": round(self.total_audio_ms, 1),
            "avg_first_byte_ms": round(self.avg_first_byte_ms, 1),
            "avg_total_ms": round(self.avg_total_ms, 1),
            "failures": self.failures,
        }
