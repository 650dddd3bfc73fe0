"""
Twilio Media Streams WebSocket Protocol Handler.

Translates the Twilio wire protocol into typed events for the turn coordinator
and turns outbound commands back into wire messages.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid and the caller number
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment (always right after its media message)

Audio payloads are opaque here; only the base64 framing is handled.
"""

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class StartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    caller: str = ""
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "StartEvent":
        """Parse from Twilio message."""
        start = message.get("start") or {}
        if not isinstance(start, dict):
            raise ValueError("start payload is not an object")
        custom_parameters = start.get("customParameters") or {}
        if not isinstance(custom_parameters, dict):
            raise ValueError("customParameters is not an object")
        stream_sid = start.get("streamSid") or message.get("streamSid") or ""
        if not stream_sid:
            raise ValueError("start event without streamSid")
        caller = start.get("from") or custom_parameters.get("from") or custom_parameters.get("caller") or ""
        return cls(
            stream_sid=stream_sid,
            call_sid=start.get("callSid", ""),
            caller=str(caller),
            custom_parameters=custom_parameters,
        )


@dataclass
class MediaEvent:
    """Parsed Twilio media event (one inbound audio frame)."""
    payload: bytes
    timestamp: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "MediaEvent":
        """Parse from Twilio message."""
        media = message.get("media") or {}
        payload_b64 = media.get("payload") if isinstance(media, dict) else None
        if not isinstance(payload_b64, str):
            raise ValueError("media event without payload")

        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid media payload: {e}")

        return cls(payload=payload, timestamp=str(media.get("timestamp", "")))


@dataclass
class MarkEvent:
    """Parsed Twilio mark event (playback acknowledgment)."""
    name: str
    sequence_number: int = 0

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "MarkEvent":
        """Parse from Twilio message."""
        mark = message.get("mark") or {}
        name = mark.get("name") if isinstance(mark, dict) else None
        if not name:
            raise ValueError("mark event without name")
        try:
            sequence_number = int(message.get("sequenceNumber", 0))
        except (TypeError, ValueError):
            sequence_number = 0
        return cls(name=str(name), sequence_number=sequence_number)


@dataclass
class StopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "StopEvent":
        return cls(stream_sid=message.get("streamSid", ""))


TransportEvent = Union[StartEvent, MediaEvent, MarkEvent, StopEvent]


@dataclass(frozen=True)
class SendAudio:
    """Outbound command: one audio segment followed by its marker."""
    payload: bytes
    marker: str


@dataclass(frozen=True)
class SendMarker:
    """Outbound command: a bare marker."""
    name: str


TransportCommand = Union[SendAudio, SendMarker]


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event). Connected and DTMF events are
        returned as the raw message dict.

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Message is not a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, StartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, MediaEvent.from_message(message)
    elif event_type == TwilioEventType.MARK:
        return event_type, MarkEvent.from_message(message)
    elif event_type == TwilioEventType.STOP:
        return event_type, StopEvent.from_message(message)
    else:
        return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes

    Returns:
        JSON string to send to Twilio
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "streamSid": stream_sid,
        "event": "media",
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """
    Create a Twilio mark message.

    Marks are used to get acknowledgment when audio has been played.

    Args:
        stream_sid: The stream SID
        name: Unique name for this mark

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "streamSid": stream_sid,
        "event": "mark",
        "mark": {
            "name": name
        }
    }

    return encoder.encode(message).decode("utf-8")


class TwilioTransport:
    """
    Frame transport adapter for one Twilio media stream.

    Owns the outbound side of the duplex connection (via `send_message`) and
    turns the inbound message stream into typed events.
    """

    def __init__(self, send_message: Callable[[str], Awaitable[None]]):
        self._send_message = send_message
        self._stream_sid = ""
        self._closed = False
        self._send_lock = asyncio.Lock()
        self.dropped_messages = 0

    @property
    def stream_sid(self) -> str:
        return self._stream_sid

    @property
    def is_closed(self) -> bool:
        return self._closed

    def parse(self, raw_message: Union[str, bytes]) -> Optional[TransportEvent]:
        """
        Parse one inbound message into a transport event.

        Malformed messages are logged and dropped (returns None), as are Twilio
        bookkeeping events the core does not consume.
        """
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self.dropped_messages += 1
            logger.warning("Dropping malformed Twilio message", error=str(e))
            return None

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")
            return None
        if event_type == TwilioEventType.DTMF:
            dtmf = event.get("dtmf") or {}
            logger.info("DTMF received", digit=dtmf.get("digit", "") if isinstance(dtmf, dict) else "")
            return None
        if isinstance(event, StartEvent):
            self._stream_sid = event.stream_sid
        return event

    async def events(self, incoming: AsyncIterator[Union[str, bytes]]) -> AsyncIterator[TransportEvent]:
        """
        Yield typed events for each inbound message until the socket closes or a
        stop event arrives.
        """
        try:
            async for raw_message in incoming:
                event = self.parse(raw_message)
                if event is None:
                    continue
                yield event
                if isinstance(event, StopEvent):
                    break
        finally:
            self.close()

    async def send(self, command: TransportCommand) -> None:
        """Send an outbound command."""
        if isinstance(command, SendAudio):
            await self.send_audio(command.payload, command.marker)
        elif isinstance(command, SendMarker):
            await self.send_marker(command.name)
        else:
            raise TypeError(f"Unsupported transport command: {type(command).__name__}")

    async def send_audio(self, payload: bytes, marker: str) -> None:
        """Send one audio segment immediately followed by its marker."""
        async with self._send_lock:
            if not await self._write(create_media_message(self._stream_sid, payload)):
                return
            await self._write(create_mark_message(self._stream_sid, marker))

    async def send_marker(self, name: str) -> None:
        async with self._send_lock:
            await self._write(create_mark_message(self._stream_sid, name))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            logger.debug("Transport closed", stream_sid=self._stream_sid)

    async def _write(self, message: str) -> bool:
        if self._closed:
            logger.debug("Dropping outbound message after close", stream_sid=self._stream_sid)
            return False
        try:
            await self._send_message(message)
            return True
        except Exception as e:
            logger.error("Failed to send Twilio message", error=str(e))
            self.close()
            return False
