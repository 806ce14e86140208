"""Tests for settings validation and the knowledge loader."""

import pytest

from intake.config import Settings
from intake.knowledge import load_knowledge


def _settings(**overrides) -> Settings:
    base = {
        "anthropic_api_key": "sk-ant-test",
        "twilio_account_sid": "AC123",
        "twilio_auth_token": "token",
        "twilio_phone_number": "+15550001111",
        "admin_api_key": "secret",
    }
    return Settings(_env_file=None, **{**base, **overrides})


class TestValidateStartup:
    def test_complete_config_has_no_warnings(self):
        assert _settings().validate_startup() == []

    def test_defaults(self):
        s = _settings()
        assert s.slot_weekdays == [6, 0, 1, 2, 3]
        assert s.slot_window_days == 3
        assert (s.slot_day_start_hour, s.slot_day_end_hour) == (8, 15)
        assert s.cancel_keyword == "exit"

    def test_missing_anthropic_key(self):
        with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
            _settings(anthropic_api_key="").validate_startup()

    def test_ollama_needs_no_key(self):
        assert _settings(llm_provider="ollama", anthropic_api_key="").validate_startup() == []

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="LLM_PROVIDER"):
            _settings(llm_provider="gpt").validate_startup()

    def test_bad_hours(self):
        with pytest.raises(ValueError):
            _settings(slot_day_start_hour=15, slot_day_end_hour=8).validate_startup()

    def test_warnings(self):
        warnings = _settings(
            twilio_auth_token="", admin_api_key="", twilio_validate_signature=False
        ).validate_startup()
        assert len(warnings) == 3
        assert any("ADMIN_API_KEY" in w for w in warnings)
        assert any("Twilio credentials" in w for w in warnings)


class TestKnowledge:
    def test_load(self, tmp_path):
        path = tmp_path / "knowledge.txt"
        path.write_text("Tuition: 10,000 per year.", encoding="utf-8")
        assert load_knowledge(path) == "Tuition: 10,000 per year."

    def test_missing_file_is_empty(self, tmp_path):
        assert load_knowledge(tmp_path / "nope.txt") == ""
