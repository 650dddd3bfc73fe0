"""
Tests for the Deepgram streaming client (no network).
"""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from src.receptionist import stt as stt_module
from src.receptionist.stt import DeepgramSTT, TranscriptionResult


class TestDeepgramUrl:
    """Tests for the listen URL."""

    def test_requests_mulaw_8khz_with_interim_results(self, make_config):
        stt = DeepgramSTT(make_config(deepgram_endpointing_ms=300))

        url = urlparse(stt.build_url())
        params = {k: v[0] for k, v in parse_qs(url.query).items()}

        assert url.netloc == "api.deepgram.com"
        assert params["encoding"] == "mulaw"
        assert params["sample_rate"] == "8000"
        assert params["interim_results"] == "true"
        assert params["endpointing"] == "300"
        assert params["utterance_end_ms"] == "1250"
        assert params["model"] == "nova-2-phonecall"


class TestDeepgramMessages:
    """Tests for message dispatch to the transcript listener."""

    @pytest.fixture
    def stt_with_listener(self, make_config):
        received = []

        async def on_transcript(result: TranscriptionResult) -> None:
            received.append(result)

        stt = DeepgramSTT(make_config())
        stt.set_callbacks(on_transcript=on_transcript)
        return stt, received

    @pytest.mark.asyncio
    async def test_results_message(self, stt_with_listener):
        stt, received = stt_with_listener

        await stt.handle_message({
            "type": "Results",
            "is_final": True,
            "speech_final": True,
            "channel": {"alternatives": [{"transcript": " I need a dentist. ", "confidence": 0.93}]},
        })

        assert len(received) == 1
        assert received[0].text == "I need a dentist."
        assert received[0].is_final and received[0].speech_final
        assert received[0].confidence == 0.93
        assert stt.metrics.final_transcripts == 1

    @pytest.mark.asyncio
    async def test_empty_interim_is_still_reported(self, stt_with_listener):
        stt, received = stt_with_listener

        await stt.handle_message({"type": "Results", "channel": {"alternatives": [{"transcript": ""}]}})

        assert received[0].text == ""
        assert not received[0].is_final

    @pytest.mark.asyncio
    async def test_utterance_end_message(self, stt_with_listener):
        stt, received = stt_with_listener

        await stt.handle_message({"type": "UtteranceEnd", "last_word_end": 2.1})

        assert received[0].utterance_end
        assert received[0].text == ""

    @pytest.mark.asyncio
    async def test_other_messages_ignored(self, stt_with_listener):
        stt, received = stt_with_listener

        await stt.handle_message({"type": "Metadata"})
        await stt.handle_message({"type": "Results", "channel": {"alternatives": []}})
        await stt.handle_message({"type": "Error", "message": "bad audio"})

        assert received == []


@pytest.mark.asyncio
async def test_send_audio_requires_connection(make_config):
    stt = DeepgramSTT(make_config())

    assert not stt.is_connected
    with pytest.raises(ConnectionError):
        await stt.send_audio(b"\xff" * 160)


class _FakeSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self, fail_send: bool = False):
        self.fail_send = fail_send
        self.sent = []
        self.closed = asyncio.Event()

    async def send(self, data) -> None:
        if self.fail_send:
            raise RuntimeError("socket dropped")
        self.sent.append(data)

    async def close(self) -> None:
        self.closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self.closed.wait()
        raise StopAsyncIteration


@pytest.mark.asyncio
async def test_failed_send_marks_disconnected_and_allows_reconnect(make_config, monkeypatch):
    stale = _FakeSocket(fail_send=True)
    fresh = _FakeSocket()

    async def fake_connect(*args, **kwargs):
        return fresh

    monkeypatch.setattr(stt_module.websockets, "connect", fake_connect)
    stt = DeepgramSTT(make_config())
    stt._ws = stale
    stt._is_connected = True

    with pytest.raises(ConnectionError):
        await stt.send_audio(b"\xff" * 160)
    assert not stt.is_connected

    assert await stt.connect() is True
    assert stt._ws is fresh
    await stt.send_audio(b"\x7f" * 160)
    assert fresh.sent == [b"\x7f" * 160]

    await stt.disconnect()
    assert fresh.closed.is_set()
