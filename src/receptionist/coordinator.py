"""
Turn coordinator: per-call orchestration of segmenter, dialogue and speech.

Inbound events from the transport drive a two-state machine:

    Idle --(first playback marker registered)--> AgentSpeaking   (mute segmenter)
    AgentSpeaking --(last outstanding marker acked)--> Idle      (unmute once)
    AgentSpeaking --(no ack progress for the timeout)--> Idle    (force clear)

The segmenter is muted exactly while playback markers are outstanding, so the
agent never transcribes its own voice. Barge-in is not supported.

Stages are joined by queues:

    segmenter.queue -> utterance worker -> turn task -> reply queue -> speech worker
"""

import asyncio
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog

from src.receptionist.clinic_tools import ClinicApiClient, ClinicTools, build_clinic_tools
from src.receptionist.config import get_config
from src.receptionist.dialogue import DialogueBusyError, DialogueEngine
from src.receptionist.llm import OpenAIChatModel
from src.receptionist.segmenter import UtteranceSegmenter
from src.receptionist.session import CallSession, Reply, TurnState
from src.receptionist.speech import SpeechOutputPipeline
from src.receptionist.stt import DeepgramSTT
from src.receptionist.tts import TTSManager
from src.receptionist.twilio_protocol import (
    MarkEvent,
    MediaEvent,
    StartEvent,
    StopEvent,
    TransportEvent,
    TwilioTransport,
)

logger = structlog.get_logger(__name__)


class TurnCoordinator:
    """Owns one CallSession and every task working on it."""

    def __init__(
        self,
        transport: TwilioTransport,
        segmenter: UtteranceSegmenter,
        engine: DialogueEngine,
        tts: TTSManager,
        config: Optional[Any] = None,
        clinic: Optional[ClinicTools] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.transport = transport
        self.segmenter = segmenter
        self.engine = engine
        self.tts = tts
        self.clinic = clinic

        self.session = CallSession()
        self.speech = SpeechOutputPipeline(
            transport,
            tts,
            register_marker=self._register_marker,
            on_spoken=self._on_reply_spoken,
        )
        self.segmenter.on_error = self._on_session_error

        self._state = TurnState.IDLE
        self._replies: "asyncio.Queue[Optional[Reply]]" = asyncio.Queue()
        self._unspoken_replies = 0
        self._last_ack_progress = 0.0

        self._utterance_task: Optional[asyncio.Task] = None
        self._speech_task: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._ack_watchdog_task: Optional[asyncio.Task] = None
        self._segmenter_start_task: Optional[asyncio.Task] = None

        self._started = False
        self._stopped = False

        self.unmute_count = 0
        self.dropped_utterances = 0
        self.ack_timeouts = 0
        self.session_errors: List[Exception] = []

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_muted(self) -> bool:
        return self.session.muted

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def turn_in_flight(self) -> bool:
        turn_running = self._turn_task is not None and not self._turn_task.done()
        return turn_running or self._unspoken_replies > 0

    @property
    def metrics(self) -> Dict[str, Any]:
        data = self.session.to_dict()
        data.update({
            "state": self._state.value,
            "dropped_utterances": self.dropped_utterances,
            "ack_timeouts": self.ack_timeouts,
            "stt_dropped_frames": self.segmenter.dropped_frames,
            "transport_dropped_messages": self.transport.dropped_messages,
            "tts_failed_replies": self.speech.failed_replies,
        })
        tts_metrics = self.tts.metrics
        if tts_metrics is not None:
            data["tts"] = tts_metrics.to_dict()
        return data

    async def start(self) -> None:
        """Start the per-call workers."""
        if self._started:
            return
        self._started = True
        self._speech_task = asyncio.create_task(self.speech.run(self._replies))
        self._utterance_task = asyncio.create_task(self._utterance_worker())
        logger.info("Turn coordinator started")

    async def run(self, events: AsyncIterator[TransportEvent]) -> None:
        """Consume transport events until the stream ends, then tear down."""
        try:
            async for event in events:
                await self.handle_event(event)
                if self._stopped:
                    break
        finally:
            await self.stop()

    async def handle_event(self, event: TransportEvent) -> None:
        if self._stopped:
            return

        if isinstance(event, MediaEvent):
            # No barge-in: caller audio is dropped while the agent speaks.
            if self._state == TurnState.IDLE:
                await self.segmenter.push_audio(event.payload)
        elif isinstance(event, MarkEvent):
            self._on_mark(event)
        elif isinstance(event, StartEvent):
            await self._handle_start(event)
        elif isinstance(event, StopEvent):
            logger.info("Stream stopped by Twilio", stream_sid=event.stream_sid)
            await self.stop()

    async def _handle_start(self, event: StartEvent) -> None:
        self.session.session_id = event.stream_sid
        self.session.call_sid = event.call_sid
        self.session.caller = event.caller
        self.session.custom_parameters = dict(event.custom_parameters)

        logger.info("Call started", caller=event.caller or "unknown")

        self.engine.set_call_context(call_sid=event.call_sid, caller=event.caller)
        if self.clinic is not None:
            self.clinic.call_sid = event.call_sid

        # Greeting is turn 0; its markers mute the segmenter.
        await self._enqueue_reply(Reply(text=self.config.greeting, turn_index=0))

        # Connect transcription in the background so a slow handshake doesn't delay the greeting.
        self._segmenter_start_task = asyncio.create_task(self.segmenter.start())

    # Utterances and turns

    async def _utterance_worker(self) -> None:
        try:
            async for utterance in self.segmenter.utterances():
                if self.turn_in_flight:
                    self.dropped_utterances += 1
                    logger.info(
                        "Dropping utterance, turn in flight",
                        sequence=utterance.sequence,
                        text=utterance.text[:50],
                    )
                    continue

                turn_index = self.session.turn_index + 1
                try:
                    replies = self.engine.submit(utterance, turn_index)
                except DialogueBusyError:
                    self.dropped_utterances += 1
                    continue
                self.session.next_turn()

                self._turn_task = asyncio.create_task(self._run_turn(replies, turn_index))
        except asyncio.CancelledError:
            pass

    async def _run_turn(self, replies: AsyncIterator[Reply], turn_index: int) -> None:
        started = time.time()
        async for reply in replies:
            await self._enqueue_reply(reply)
        logger.debug("Dialogue turn complete", turn=turn_index, turn_ms=round((time.time() - started) * 1000, 1))

    async def _enqueue_reply(self, reply: Reply) -> None:
        self._unspoken_replies += 1
        await self._replies.put(reply)

    async def _on_reply_spoken(self, reply: Reply, markers: List[str]) -> None:
        self._unspoken_replies = max(0, self._unspoken_replies - 1)
        if not markers:
            logger.warning("Reply produced no audio", turn=reply.turn_index, is_final=reply.is_final)

    # Playback markers

    def _register_marker(self, name: str) -> None:
        self.session.add_marker(name)
        self._last_ack_progress = time.monotonic()

        if self._state == TurnState.IDLE:
            self._state = TurnState.AGENT_SPEAKING
            self.session.muted = True
            self.segmenter.mute()
            self._start_ack_watchdog()
            logger.debug("Agent speaking", first_marker=name)

    def _on_mark(self, event: MarkEvent) -> None:
        rtt_ms = self.session.resolve_marker(event.name)
        if rtt_ms is None:
            logger.debug("Ignoring ack for unknown marker", mark_name=event.name)
            return

        self._last_ack_progress = time.monotonic()
        logger.debug(
            "Twilio mark ack",
            mark_name=event.name,
            mark_rtt_ms=round(rtt_ms, 2),
            pending=len(self.session.pending_markers),
        )

        if not self.session.pending_markers and self._state == TurnState.AGENT_SPEAKING:
            self._enter_idle(reason="playback_complete")

    def _enter_idle(self, *, reason: str) -> None:
        self._state = TurnState.IDLE
        self.session.muted = False
        self.segmenter.unmute()
        self.unmute_count += 1
        self._cancel_ack_watchdog()
        logger.debug("Agent idle, listening", reason=reason)

    def _start_ack_watchdog(self) -> None:
        self._cancel_ack_watchdog()
        self._ack_watchdog_task = asyncio.create_task(self._ack_watchdog())

    def _cancel_ack_watchdog(self) -> None:
        task = self._ack_watchdog_task
        self._ack_watchdog_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _ack_watchdog(self) -> None:
        timeout = self.config.playback_ack_timeout_s
        try:
            while self._state == TurnState.AGENT_SPEAKING:
                remaining = self._last_ack_progress + timeout - time.monotonic()
                if remaining <= 0:
                    self.ack_timeouts += 1
                    logger.warning(
                        "Playback ack timeout, clearing outstanding markers",
                        pending=list(self.session.pending_markers),
                        timeout_s=timeout,
                    )
                    self.session.pending_markers.clear()
                    self._enter_idle(reason="ack_timeout")
                    return
                await asyncio.sleep(remaining)
        except asyncio.CancelledError:
            pass

    async def _on_session_error(self, error: Exception) -> None:
        self.session_errors.append(error)
        logger.error("Session error", error_type=type(error).__name__, error=str(error))

    async def stop(self) -> None:
        """Tear down every task and component for this call."""
        if self._stopped:
            return
        self._stopped = True
        self.session.is_active = False
        self.session.end_time = time.time()

        self.tts.cancel_current()
        tasks = [
            task
            for task in (
                self._turn_task,
                self._speech_task,
                self._utterance_task,
                self._ack_watchdog_task,
                self._segmenter_start_task,
            )
            if task and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.segmenter.stop()
        await self.tts.stop()
        self.transport.close()
        if self.clinic is not None:
            await self.clinic.api.aclose()

        logger.info("Call ended", metrics=self.metrics)


async def create_coordinator(
    send_message: Callable[[str], Awaitable[None]],
    config: Optional[Any] = None,
) -> TurnCoordinator:
    """
    Create and start a turn coordinator for one call.

    Args:
        send_message: Function to send messages to Twilio WebSocket

    Returns:
        Started TurnCoordinator
    """
    config = config or get_config()

    transport = TwilioTransport(send_message)
    segmenter = UtteranceSegmenter(DeepgramSTT(config), config=config)
    clinic = ClinicTools(ClinicApiClient(config), config=config)
    engine = DialogueEngine(
        OpenAIChatModel(config),
        build_clinic_tools(config, handlers=clinic),
        config=config,
    )

    coordinator = TurnCoordinator(
        transport,
        segmenter,
        engine,
        TTSManager(config),
        config=config,
        clinic=clinic,
    )
    await coordinator.start()
    return coordinator
