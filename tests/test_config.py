"""
Tests for configuration loading and validation.
"""

import os
from unittest.mock import patch

import pytest

from src.receptionist.config import ConfigError, get_config


class TestConfig:
    """Tests for environment-driven config."""

    def test_defaults(self):
        config = get_config()

        assert config.public_host == "test.ngrok.io"
        assert config.tts_provider == "elevenlabs"
        assert config.silence_window_ms == 1200
        assert config.audio_silence_ms == 800
        assert config.min_speech_ms == 450
        assert config.max_silent_frames == 2
        assert config.playback_ack_timeout_s == 15.0
        assert config.clinic_api_url == "http://clinic.test/api"

    def test_urls_and_greeting(self):
        config = get_config()

        assert config.ws_url == "wss://test.ngrok.io/connection"
        assert config.base_url == "https://test.ngrok.io"
        assert config.greeting == "Hi there! I'm Eva from Zuleikha Hospital. How can I help you today?"

    def test_endpointing_from_env(self):
        with patch.dict(os.environ, {"SILENCE_WINDOW_MS": "900", "MIN_SPEECH_MS": "oops"}):
            get_config.cache_clear()
            config = get_config()

        assert config.silence_window_ms == 900
        assert config.min_speech_ms == 450

    def test_validate_ok(self):
        get_config().validate()


class TestConfigValidation:
    """Tests for startup validation errors."""

    def test_missing_keys(self, make_config):
        config = make_config(deepgram_api_key="", elevenlabs_voice_id="")

        with pytest.raises(ConfigError) as exc_info:
            config.validate()
        assert "DEEPGRAM_API_KEY" in str(exc_info.value)
        assert "VOICE_ID" in str(exc_info.value)

    def test_invalid_tts_provider(self, make_config):
        with pytest.raises(ConfigError, match="Invalid TTS_PROVIDER"):
            make_config(tts_provider="espeak").validate()

    def test_cartesia_needs_its_own_key(self, make_config):
        config = make_config(tts_provider="cartesia", elevenlabs_api_key="", cartesia_api_key="")

        with pytest.raises(ConfigError, match="CARTESIA_API_KEY"):
            config.validate()

    def test_negative_reconnect_attempts(self, make_config):
        with pytest.raises(ConfigError):
            make_config(stt_max_reconnect_attempts=-1).validate()
