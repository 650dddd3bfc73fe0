"""
Utterance segmentation on top of a streaming transcription backend.

Inbound caller audio -> transcription backend -> interim/final transcripts ->
endpointing -> Utterance events on a queue.

Endpointing finalizes the working buffer when any of these hold:
- a final transcript leaves the buffer ending in sentence punctuation
- consecutive empty interim results arrive after the minimum speech duration
- the backend signals utterance end after the minimum speech duration
- no transcript for the silence window and no audio for the audio silence
  threshold, after the minimum speech duration

The minimum speech duration keeps stray phonemes from becoming utterances.
"""

import asyncio
import time
from collections import deque
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, List, Optional

import structlog

from src.receptionist.config import get_config
from src.receptionist.session import Utterance
from src.receptionist.stt import TranscriptionBackend, TranscriptionResult

logger = structlog.get_logger(__name__)

END_SENTENCE_PUNCTUATION = (".", "!", "?")


class SegmenterState(str, Enum):
    """Per-utterance segmenter state."""
    IDLE = "idle"
    LISTENING = "listening"
    FINALIZING = "finalizing"


class TranscriptionUnavailable(Exception):
    """Raised (as a session error) once transcription reconnects are exhausted."""
    pass


def is_complete_sentence(text: str) -> bool:
    return text.strip().endswith(END_SENTENCE_PUNCTUATION)


class UtteranceSegmenter:
    """
    Turns a continuous audio stream into discrete caller utterances.

    `mute()` / `unmute()` are idempotent. While muted, audio is discarded (not
    buffered) and transcripts are ignored.
    """

    def __init__(
        self,
        backend: TranscriptionBackend,
        config: Optional[Any] = None,
        on_error: Optional[Callable[[Exception], Awaitable[None]]] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.backend = backend
        self.on_error = on_error
        self._queue: asyncio.Queue[Utterance] = asyncio.Queue()

        self._state = SegmenterState.IDLE
        self._active = False
        self._muted = False
        self._degraded = False
        self._sequence = 0

        # Working buffer
        self._final_parts: List[str] = []
        self._interim = ""
        self._last_final_text: Optional[str] = None
        self._speech_start: Optional[float] = None
        self._silent_frames = 0
        self._last_transcript_time = 0.0
        self._last_audio_time = 0.0

        # Audio received while the backend is disconnected
        self._pending_audio: Deque[bytes] = deque(maxlen=max(1, config.stt_pending_audio_max_frames))
        self._dropped_frames = 0

        self._silence_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SegmenterState:
        return self._state

    @property
    def is_muted(self) -> bool:
        return self._muted

    @property
    def is_degraded(self) -> bool:
        return self._degraded

    @property
    def queue(self) -> "asyncio.Queue[Utterance]":
        return self._queue

    @property
    def pending_audio_frames(self) -> int:
        return len(self._pending_audio)

    @property
    def dropped_frames(self) -> int:
        return self._dropped_frames

    @property
    def buffer_text(self) -> str:
        parts = self._final_parts + ([self._interim] if self._interim else [])
        return " ".join(parts).strip()

    async def utterances(self) -> AsyncIterator[Utterance]:
        """Yield utterances as they are finalized."""
        while True:
            yield await self._queue.get()

    async def start(self) -> None:
        """Connect the backend; failures fall through to the reconnect loop."""
        self._active = True
        self._degraded = False
        self.backend.set_callbacks(
            on_transcript=self._on_transcript,
            on_close=self._on_backend_close,
        )
        if await self.backend.connect():
            logger.info("Transcription ready")
        else:
            logger.warning("Transcription backend unavailable at start")
            self._schedule_reconnect()

    async def stop(self) -> None:
        self._active = False
        tasks = [t for t in (self._silence_task, self._reconnect_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._silence_task = None
        self._reconnect_task = None
        self._pending_audio.clear()
        await self.backend.disconnect()

    def mute(self) -> None:
        if self._muted:
            return
        self._muted = True
        self._cancel_silence_check()
        logger.debug("Segmenter muted")

    def unmute(self) -> None:
        if not self._muted:
            return
        self._muted = False
        self._reset_speech_tracking()
        self._last_final_text = None
        logger.debug("Segmenter unmuted")

    async def push_audio(self, frame: bytes) -> None:
        """Forward one inbound audio frame to the transcription backend."""
        if not self._active or self._muted or self._degraded or not frame:
            return

        self._last_audio_time = time.monotonic()

        if self.backend.is_connected and not self._pending_audio:
            try:
                await self.backend.send_audio(frame)
                return
            except ConnectionError:
                logger.warning("Transcription send failed, buffering audio")

        self._buffer_frame(frame)
        self._schedule_reconnect()

    def _buffer_frame(self, frame: bytes) -> None:
        if len(self._pending_audio) == self._pending_audio.maxlen:
            self._dropped_frames += 1
            if self._dropped_frames == 1:
                logger.warning(
                    "Pending audio buffer full, dropping oldest frames",
                    max_frames=self._pending_audio.maxlen,
                )
        self._pending_audio.append(frame)

    # Transcript handling

    async def _on_transcript(self, result: TranscriptionResult) -> None:
        if not self._active or self._muted:
            return

        now = time.monotonic()

        if result.utterance_end:
            if self.buffer_text and self._min_speech_elapsed(now):
                self._finalize(reason="utterance_end")
            return

        text = (result.text or "").strip()
        if text:
            if self._speech_start is None:
                self._speech_start = now
                self._state = SegmenterState.LISTENING
            self._silent_frames = 0
            self._last_transcript_time = now

        if result.is_final:
            self._handle_final(text)
        else:
            self._handle_interim(text, now)

        if self.buffer_text:
            self._schedule_silence_check()

    def _handle_final(self, text: str) -> None:
        if not text:
            return
        if text == self._last_final_text and not self._interim:
            logger.debug("Ignoring duplicate final transcript", text=text[:50])
            return

        self._last_final_text = text
        self._final_parts.append(text)
        self._interim = ""

        if is_complete_sentence(self.buffer_text):
            self._finalize(reason="punctuation")

    def _handle_interim(self, text: str, now: float) -> None:
        if text:
            self._interim = text
            return

        self._silent_frames += 1
        if (
            self._silent_frames >= self.config.max_silent_frames
            and self.buffer_text
            and self._min_speech_elapsed(now)
        ):
            self._finalize(reason="silent_frames")

    def _min_speech_elapsed(self, now: float) -> bool:
        if self._speech_start is None:
            return False
        return (now - self._speech_start) * 1000 >= self.config.min_speech_ms

    def _finalize(self, *, reason: str) -> None:
        self._state = SegmenterState.FINALIZING
        text = self.buffer_text
        self._cancel_silence_check()

        if text:
            self._sequence += 1
            utterance = Utterance(text=text, sequence=self._sequence)
            self._queue.put_nowait(utterance)
            logger.info(
                "Utterance finalized",
                sequence=utterance.sequence,
                text=text[:80],
                reason=reason,
            )

        self._reset_speech_tracking()

    def _reset_speech_tracking(self) -> None:
        self._final_parts = []
        self._interim = ""
        self._speech_start = None
        self._silent_frames = 0
        self._state = SegmenterState.IDLE

    # Silence timer

    def _schedule_silence_check(self) -> None:
        self._cancel_silence_check()
        self._silence_task = asyncio.create_task(self._silence_check())

    def _cancel_silence_check(self) -> None:
        task = self._silence_task
        self._silence_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _silence_check(self) -> None:
        silence_window = self.config.silence_window_ms / 1000
        audio_silence = self.config.audio_silence_ms / 1000
        min_speech = self.config.min_speech_ms / 1000
        try:
            while self._active and not self._muted and self.buffer_text:
                now = time.monotonic()
                waits = [
                    silence_window - (now - self._last_transcript_time),
                    audio_silence - (now - self._last_audio_time),
                ]
                if self._speech_start is not None:
                    waits.append(min_speech - (now - self._speech_start))
                remaining = max(waits)
                if remaining <= 0:
                    self._finalize(reason="silence")
                    return
                await asyncio.sleep(max(remaining, 0.01))
        except asyncio.CancelledError:
            pass

    # Reconnection

    async def _on_backend_close(self) -> None:
        if self._active:
            logger.warning("Transcription backend closed")
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if not self._active or self._degraded:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Bounded exponential backoff; gives up after the configured attempts."""
        attempt = 0
        try:
            while self._active:
                if attempt >= self.config.stt_max_reconnect_attempts:
                    await self._degrade()
                    return

                attempt += 1
                delay = min(
                    self.config.stt_reconnect_base_delay_s * (2 ** (attempt - 1)),
                    self.config.stt_reconnect_max_delay_s,
                )
                logger.warning(
                    "Reconnecting to transcription backend",
                    attempt=attempt,
                    max_attempts=self.config.stt_max_reconnect_attempts,
                    delay_s=delay,
                )
                await asyncio.sleep(delay)

                if not self._active:
                    return
                if not await self.backend.connect():
                    continue
                if await self._flush_pending_audio():
                    logger.info("Transcription backend reconnected", attempt=attempt)
                    return
        except asyncio.CancelledError:
            pass

    async def _flush_pending_audio(self) -> bool:
        flushed = 0
        while self._pending_audio:
            frame = self._pending_audio.popleft()
            try:
                await self.backend.send_audio(frame)
            except ConnectionError:
                self._pending_audio.appendleft(frame)
                return False
            flushed += 1

        if flushed or self._dropped_frames:
            logger.info(
                "Flushed buffered audio",
                frames=flushed,
                dropped_frames=self._dropped_frames,
            )
        self._dropped_frames = 0
        return True

    async def _degrade(self) -> None:
        self._degraded = True
        self._pending_audio.clear()
        logger.error(
            "Transcription unavailable, continuing without transcription",
            attempts=self.config.stt_max_reconnect_attempts,
        )
        if self.on_error:
            await self.on_error(
                TranscriptionUnavailable(
                    f"Failed to reconnect after {self.config.stt_max_reconnect_attempts} attempts"
                )
            )
