"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("intake.config")


class Settings(BaseSettings):
    # LLM oracle
    llm_provider: str = "claude"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-haiku-latest"
    anthropic_api_url: str = "https://api.anthropic.com/v1"
    ollama_model: str = "qwen2.5:7b"
    ollama_url: str = "http://localhost:11434"
    llm_timeout_seconds: float = 30.0

    # Twilio messaging (SMS / WhatsApp)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_api_url: str = "https://api.twilio.com/2010-04-01"
    twilio_validate_signature: bool = True

    # Persistence
    database_url: str = "sqlite+aiosqlite:///./intake.db"
    sql_echo: bool = False

    # Flow
    cancel_keyword: str = "exit"
    knowledge_path: str = "data/knowledge.txt"
    calendar_timezone: str = "Asia/Riyadh"

    # Slot generation / booking
    slot_window_days: int = 3
    slot_day_start_hour: int = 8
    slot_day_end_hour: int = 15
    slot_step_minutes: int = 30
    # Python weekday numbers: Monday=0 ... Sunday=6 (default Sunday-Thursday)
    slot_weekdays: list[int] = [6, 0, 1, 2, 3]
    booking_tolerance_seconds: float = 1.0
    appointment_host: str = "IntakeBot"
    appointment_purpose: str = "Admission Inquiry"
    appointment_type: str = "Admission"
    supersede_replaced_appointments: bool = True

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-ant-...", "AC...", ""}

        if self.llm_provider not in ("claude", "ollama"):
            raise ValueError(
                f"LLM_PROVIDER must be 'claude' or 'ollama', got {self.llm_provider!r}."
            )

        if self.llm_provider == "claude" and self.anthropic_api_key in _placeholders:
            raise ValueError(
                "ANTHROPIC_API_KEY is missing or still a placeholder. "
                "Set it in .env or switch LLM_PROVIDER to ollama."
            )

        if self.slot_day_end_hour <= self.slot_day_start_hour:
            raise ValueError("SLOT_DAY_END_HOUR must be later than SLOT_DAY_START_HOUR.")

        if not self.admin_api_key:
            if self.debug:
                warnings.append("ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true).")
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production."
                )

        if self.twilio_account_sid in _placeholders or self.twilio_auth_token in _placeholders:
            warnings.append("Twilio credentials missing. Outbound messages will fail.")
        elif not self.twilio_phone_number:
            warnings.append("TWILIO_PHONE_NUMBER not set. Outbound messages will fail.")

        if not self.twilio_validate_signature:
            warnings.append("Twilio webhook signature validation is disabled.")

        return warnings


settings = Settings()
