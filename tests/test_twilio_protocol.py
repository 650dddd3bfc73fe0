"""
Tests for Twilio protocol parsing and the frame transport adapter.
"""

import base64
import json

import pytest
from unittest.mock import AsyncMock

from src.receptionist.twilio_protocol import (
    MarkEvent,
    MediaEvent,
    SendAudio,
    SendMarker,
    StartEvent,
    StopEvent,
    TwilioEventType,
    TwilioTransport,
    create_mark_message,
    create_media_message,
    parse_twilio_message,
)


def test_parse_start_event(twilio_start_message):
    event_type, event = parse_twilio_message(twilio_start_message)

    assert event_type == TwilioEventType.START
    assert isinstance(event, StartEvent)
    assert event.stream_sid == "MZ123456"
    assert event.call_sid == "CA789012"
    assert event.caller == "+15551234567"


def test_parse_start_event_without_stream_sid():
    with pytest.raises(ValueError):
        parse_twilio_message(json.dumps({"event": "start", "start": {"callSid": "CA1"}}))


def test_parse_media_event(twilio_media_message, sample_ulaw_audio):
    event_type, event = parse_twilio_message(twilio_media_message)

    assert event_type == TwilioEventType.MEDIA
    assert isinstance(event, MediaEvent)
    assert event.payload == sample_ulaw_audio
    assert event.timestamp == "12345"


def test_parse_media_event_bad_base64():
    with pytest.raises(ValueError):
        parse_twilio_message(json.dumps({"event": "media", "media": {"payload": "not base64!"}}))


def test_parse_mark_event():
    raw = json.dumps({"event": "mark", "sequenceNumber": "7", "mark": {"name": "t1_m2"}})

    event_type, event = parse_twilio_message(raw)

    assert event_type == TwilioEventType.MARK
    assert event == MarkEvent(name="t1_m2", sequence_number=7)


def test_parse_stop_event(twilio_stop_message):
    event_type, event = parse_twilio_message(twilio_stop_message)

    assert event_type == TwilioEventType.STOP
    assert isinstance(event, StopEvent)


def test_parse_invalid_messages():
    with pytest.raises(ValueError, match="Invalid JSON"):
        parse_twilio_message("{not json")
    with pytest.raises(ValueError, match="Unknown event type"):
        parse_twilio_message(json.dumps({"event": "bogus"}))


def test_create_messages():
    media = json.loads(create_media_message("MZ1", b"\xff\x7f"))
    mark = json.loads(create_mark_message("MZ1", "t0_m1"))

    assert media == {"streamSid": "MZ1", "event": "media", "media": {"payload": base64.b64encode(b"\xff\x7f").decode()}}
    assert mark == {"streamSid": "MZ1", "event": "mark", "mark": {"name": "t0_m1"}}


def test_transport_drops_malformed_and_bookkeeping_messages(twilio_start_message):
    transport = TwilioTransport(AsyncMock())

    assert transport.parse("garbage") is None
    assert transport.parse(json.dumps({"event": "connected", "protocol": "Call"})) is None
    assert transport.parse(json.dumps({"event": "dtmf", "dtmf": {"digit": "1"}})) is None
    assert transport.dropped_messages == 1

    assert isinstance(transport.parse(twilio_start_message), StartEvent)
    assert transport.stream_sid == "MZ123456"


@pytest.mark.asyncio
async def test_events_stop_after_stop_event(twilio_start_message, twilio_media_message, twilio_stop_message):
    transport = TwilioTransport(AsyncMock())

    async def incoming():
        for message in ("junk", twilio_start_message, twilio_media_message, twilio_stop_message, twilio_media_message):
            yield message

    events = [event async for event in transport.events(incoming())]

    assert [type(e) for e in events] == [StartEvent, MediaEvent, StopEvent]
    assert transport.is_closed


@pytest.mark.asyncio
async def test_send_audio_pairs_media_with_mark(twilio_start_message):
    send_message = AsyncMock()
    transport = TwilioTransport(send_message)
    transport.parse(twilio_start_message)

    await transport.send(SendAudio(payload=b"\xff" * 160, marker="t1_m1"))
    await transport.send(SendMarker(name="t1_m2"))

    sent = [json.loads(call.args[0]) for call in send_message.await_args_list]
    assert [m["event"] for m in sent] == ["media", "mark", "mark"]
    assert sent[1]["mark"]["name"] == "t1_m1"
    assert all(m["streamSid"] == "MZ123456" for m in sent)


@pytest.mark.asyncio
async def test_sends_after_close_are_dropped():
    send_message = AsyncMock()
    transport = TwilioTransport(send_message)
    transport.close()

    await transport.send_audio(b"\xff", "t1_m1")

    send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_send_failure_closes_transport():
    send_message = AsyncMock(side_effect=RuntimeError("socket gone"))
    transport = TwilioTransport(send_message)

    await transport.send_audio(b"\xff", "t1_m1")

    assert transport.is_closed
    assert send_message.await_count == 1


@pytest.mark.parametrize("custom_parameters", ["x", ["a"], 5])
def test_start_with_non_object_custom_parameters_is_dropped(custom_parameters):
    transport = TwilioTransport(AsyncMock())
    raw = json.dumps({
        "event": "start",
        "start": {"streamSid": "MZ1", "callSid": "CA1", "customParameters": custom_parameters},
    })

    with pytest.raises(ValueError, match="customParameters"):
        parse_twilio_message(raw)
    assert transport.parse(raw) is None
    assert transport.dropped_messages == 1
    assert transport.stream_sid == ""


@pytest.mark.asyncio
async def test_malformed_start_does_not_end_event_stream(twilio_start_message, twilio_stop_message):
    transport = TwilioTransport(AsyncMock())
    bad_start = json.dumps({"event": "start", "start": {"streamSid": "MZ1", "customParameters": "x"}})

    async def incoming():
        for message in (bad_start, twilio_start_message, twilio_stop_message):
            yield message

    events = [event async for event in transport.events(incoming())]

    assert [type(e) for e in events] == [StartEvent, StopEvent]
    assert transport.stream_sid == "MZ123456"
