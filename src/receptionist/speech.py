"""
Speech output: replies -> synthesized audio -> marked segments on the transport.

Each synthesis chunk is sent as its own segment followed by a playback marker
named `t{turn}_m{seq}`. The marker is registered with the turn coordinator before
the segment goes out, so an acknowledgement can never arrive for an unknown
marker.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from src.receptionist.session import Reply
from src.receptionist.tts import TTSManager
from src.receptionist.twilio_protocol import SendAudio, TwilioTransport

logger = structlog.get_logger(__name__)


def marker_name(turn_index: int, seq: int) -> str:
    return f"t{turn_index}_m{seq}"


class SpeechOutputPipeline:
    """Speaks replies in order over one transport."""

    def __init__(
        self,
        transport: TwilioTransport,
        tts: TTSManager,
        register_marker: Callable[[str], None],
        on_spoken: Optional[Callable[[Reply, List[str]], Awaitable[None]]] = None,
    ):
        self.transport = transport
        self.tts = tts
        self._register_marker = register_marker
        self._on_spoken = on_spoken
        self._seq: Dict[int, int] = {}
        self.failed_replies = 0

    def _next_marker(self, turn_index: int) -> str:
        seq = self._seq.get(turn_index, 0) + 1
        self._seq[turn_index] = seq
        return marker_name(turn_index, seq)

    async def speak(self, reply: Reply) -> List[str]:
        """
        Synthesize one reply and send it as marked segments.

        Synthesis failures stop the reply (no further audio) and are logged; the
        markers already sent are still returned.
        """
        markers: List[str] = []
        if not reply.text.strip():
            return markers

        try:
            async for chunk in self.tts.synthesize_streaming(reply.text):
                if not chunk.audio_bytes:
                    continue
                marker = self._next_marker(reply.turn_index)
                self._register_marker(marker)
                await self.transport.send(SendAudio(payload=chunk.audio_bytes, marker=marker))
                markers.append(marker)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed_replies += 1
            logger.error(
                "Speech synthesis failed, skipping reply audio",
                turn=reply.turn_index,
                segments_sent=len(markers),
                error=str(e),
            )

        logger.debug(
            "Reply spoken",
            turn=reply.turn_index,
            is_final=reply.is_final,
            segments=len(markers),
        )
        return markers

    async def run(self, replies: "asyncio.Queue[Optional[Reply]]") -> None:
        """Speak replies from the queue one at a time; `None` stops the worker."""
        while True:
            reply = await replies.get()
            try:
                if reply is None:
                    return
                markers = await self.speak(reply)
                if self._on_spoken:
                    await self._on_spoken(reply, markers)
            finally:
                replies.task_done()
