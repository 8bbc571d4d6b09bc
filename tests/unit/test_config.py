"""Unit tests for ProtocolSettings."""
import pytest
from pydantic import ValidationError as PydanticValidationError

from module_chat_events.config import ProtocolSettings

_FIELDS = (
    "TURN_TIMEOUT_SECONDS",
    "FRAGMENT_TIMEOUT_SECONDS",
    "TRANSPORT_BUFFER_SIZE",
    "ERROR_LOG_MAX_ENTRIES",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _FIELDS:
        monkeypatch.delenv(f"MODULE_CHAT_{name}", raising=False)


class TestProtocolSettings:
    """Tests for ProtocolSettings."""

    def test_defaults(self):
        settings = ProtocolSettings()
        assert settings.turn_timeout_seconds == 120.0
        assert settings.fragment_timeout_seconds == 30.0
        assert settings.transport_buffer_size == 256
        assert settings.error_log_max_entries == 100

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MODULE_CHAT_TURN_TIMEOUT_SECONDS", "5")
        monkeypatch.setenv("MODULE_CHAT_TRANSPORT_BUFFER_SIZE", "16")
        monkeypatch.setenv("TRANSPORT_BUFFER_SIZE", "999")
        settings = ProtocolSettings()
        assert settings.turn_timeout_seconds == 5.0
        assert settings.transport_buffer_size == 16
        assert settings.fragment_timeout_seconds == 30.0

    def test_env_is_case_insensitive(self, monkeypatch):
        monkeypatch.setenv("module_chat_fragment_timeout_seconds", "2.5")
        assert ProtocolSettings().fragment_timeout_seconds == 2.5

    def test_empty_env_value_keeps_default(self, monkeypatch):
        monkeypatch.setenv("MODULE_CHAT_ERROR_LOG_MAX_ENTRIES", "")
        assert ProtocolSettings().error_log_max_entries == 100

    def test_keyword_arguments_win_over_env(self, monkeypatch):
        monkeypatch.setenv("MODULE_CHAT_TURN_TIMEOUT_SECONDS", "5")
        assert ProtocolSettings(turn_timeout_seconds=9.0).turn_timeout_seconds == 9.0

    def test_invalid_values_rejected(self, monkeypatch):
        with pytest.raises(PydanticValidationError):
            ProtocolSettings(transport_buffer_size=0)
        monkeypatch.setenv("MODULE_CHAT_TURN_TIMEOUT_SECONDS", "0")
        with pytest.raises(PydanticValidationError):
            ProtocolSettings()

    def test_frozen(self):
        settings = ProtocolSettings()
        with pytest.raises(PydanticValidationError):
            settings.turn_timeout_seconds = 1.0  # type: ignore[misc]
