"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import dataclasses
import json
import os
from typing import Any, AsyncIterator, Iterable, List, Optional
from unittest.mock import patch

import pytest

from src.receptionist.llm import LanguageModel
from src.receptionist.stt import TranscriptionBackend, TranscriptionResult
from src.receptionist.tts_providers.base import TTSProvider
from src.receptionist.tts_types import TTSChunk, TTSMetrics


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o",
        "TTS_PROVIDER": "elevenlabs",
        "XI_API_KEY": "test_xi_key",
        "VOICE_ID": "test_voice",
        "CARTESIA_API_KEY": "test_cartesia_key",
        "CLINIC_API_URL": "http://clinic.test/api",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.receptionist.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def make_config():
    """Build a config from the test environment with overrides."""
    from src.receptionist.config import get_config

    def _make(**overrides: Any):
        return dataclasses.replace(get_config(), **overrides)

    return _make


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "streamSid": "MZ123456",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {"from": "+15551234567"},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })


class FakeTranscriptionBackend(TranscriptionBackend):
    """In-memory transcription backend driven by the test."""

    def __init__(self, connect_results: Optional[Iterable[bool]] = None):
        super().__init__()
        self.connected = False
        self.sent: List[bytes] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self._connect_results = list(connect_results or [])

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> bool:
        self.connect_calls += 1
        ok = self._connect_results.pop(0) if self._connect_results else True
        self.connected = ok
        return ok

    async def send_audio(self, audio_bytes: bytes) -> None:
        if not self.connected:
            raise ConnectionError("backend down")
        self.sent.append(audio_bytes)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def emit(self, text: str = "", *, is_final: bool = False, utterance_end: bool = False) -> None:
        await self._on_transcript(
            TranscriptionResult(text=text, is_final=is_final, utterance_end=utterance_end)
        )

    async def drop(self) -> None:
        self.connected = False
        if self._on_close:
            await self._on_close()


class ScriptedModel(LanguageModel):
    """Language model that replays one scripted event list per call."""

    def __init__(self, responses: Iterable[list]):
        self.responses = list(responses)
        self.calls: List[list] = []

    async def stream(self, messages, tools) -> AsyncIterator[Any]:
        self.calls.append([dict(m) for m in messages])
        if not self.responses:
            raise RuntimeError("no scripted response left")
        for event in self.responses.pop(0):
            if isinstance(event, Exception):
                raise event
            yield event


class FakeTTSProvider(TTSProvider):
    """Yields one audio chunk per entry; an Exception entry is raised instead."""

    def __init__(self, chunks: Optional[list] = None):
        self.metrics = TTSMetrics()
        self.chunks = chunks if chunks is not None else [b"\xff" * 160, b"\x7f" * 160]
        self.texts: List[str] = []
        self.cancelled = False
        self.closed = False

    async def synthesize_streaming(self, text: str, *, voice_id: Optional[str] = None):
        self.texts.append(text)
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            await asyncio.sleep(0)
            yield TTSChunk(audio_bytes=chunk, is_final=False)
        yield TTSChunk(audio_bytes=b"", is_final=True)

    def cancel(self) -> None:
        self.cancelled = True

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_backend():
    return FakeTranscriptionBackend()


@pytest.fixture
def backend_factory():
    return FakeTranscriptionBackend


@pytest.fixture
def scripted_model():
    return ScriptedModel


@pytest.fixture
def fake_tts_provider():
    return FakeTTSProvider
