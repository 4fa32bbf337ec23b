"""
config.py - Environment-driven settings for the quality-control agent.

Values come from process environment, optionally seeded from a local `.env`
file. Nothing here talks to the model provider; modules receive a `Settings`
instance (or read `load_settings()`) and stay testable without env setup.
"""

from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from logging_config import get_logger

logger = get_logger(__name__)

try:
    load_dotenv()
except UnicodeDecodeError:
    # Fallback for legacy Windows-encoded .env files.
    load_dotenv(encoding="cp1252")

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.1
DEFAULT_HISTORY_DAYS = 30
DEFAULT_PORT = 8000

ENV_KEYS: dict[str, str] = {
    "openai_api_key": "OPENAI_API_KEY",
    "vision_model": "QC_VISION_MODEL",
    "decision_model": "QC_DECISION_MODEL",
    "temperature": "QC_MODEL_TEMPERATURE",
    "step_delay_ms": "QC_STEP_DELAY_MS",
    "history_days": "QC_HISTORY_DAYS",
    "incident_file": "QC_INCIDENT_FILE",
    "log_level": "LOG_LEVEL",
    "log_json": "LOG_JSON",
    "port": "PORT",
}


def _warn_default(field: str, raw: Any, default: Any) -> Any:
    logger.warning(
        "config_invalid_value | field=%s | value=%r | fallback=%r",
        field,
        raw,
        default,
    )
    return default


class Settings(BaseModel):
    """Runtime settings. Invalid numbers fall back to defaults instead of failing startup."""

    model_config = ConfigDict(extra="ignore")

    openai_api_key: Optional[str] = None
    vision_model: str = DEFAULT_MODEL
    decision_model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    step_delay_ms: int = Field(default=0, ge=0)
    history_days: int = Field(default=DEFAULT_HISTORY_DAYS, ge=1)
    incident_file: Optional[str] = None
    log_level: str = "INFO"
    log_json: bool = False
    port: int = DEFAULT_PORT

    @field_validator("openai_api_key", "incident_file", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        text = str(value or "").strip()
        return text or None

    @field_validator("vision_model", "decision_model", mode="before")
    @classmethod
    def _model_default(cls, value: Any) -> str:
        text = str(value or "").strip()
        return text or DEFAULT_MODEL

    @field_validator("temperature", mode="before")
    @classmethod
    def _parse_temperature(cls, value: Any) -> float:
        if value is None or str(value).strip() == "":
            return DEFAULT_TEMPERATURE
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return _warn_default("temperature", value, DEFAULT_TEMPERATURE)
        if not 0.0 <= parsed <= 2.0:
            return _warn_default("temperature", value, DEFAULT_TEMPERATURE)
        return parsed

    @field_validator("step_delay_ms", "history_days", "port", mode="before")
    @classmethod
    def _parse_int(cls, value: Any, info: ValidationInfo) -> int:
        defaults = {"step_delay_ms": 0, "history_days": DEFAULT_HISTORY_DAYS, "port": DEFAULT_PORT}
        default = defaults[info.field_name]
        if value is None or str(value).strip() == "":
            return default
        try:
            parsed = int(str(value).strip())
        except (TypeError, ValueError):
            return _warn_default(info.field_name, value, default)
        minimum = 1 if info.field_name != "step_delay_ms" else 0
        if parsed < minimum:
            return _warn_default(info.field_name, value, default)
        return parsed

    @field_validator("log_json", mode="before")
    @classmethod
    def _parse_bool(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        return str(value or "").strip().lower() in {"1", "true", "yes", "on"}

    @property
    def step_delay_seconds(self) -> float:
        return self.step_delay_ms / 1000.0

    @property
    def has_api_key(self) -> bool:
        return bool(self.openai_api_key)


def load_settings(environ: Optional[dict[str, str]] = None) -> Settings:
    """Build `Settings` from the environment (or an explicit mapping for tests)."""
    source = os.environ if environ is None else environ
    raw = {field: source.get(env_key) for field, env_key in ENV_KEYS.items()}
    settings = Settings.model_validate({key: value for key, value in raw.items() if value is not None})
    logger.debug(
        "config_loaded | vision_model=%s | decision_model=%s | api_key=%s | incident_file=%s | step_delay_ms=%s",
        settings.vision_model,
        settings.decision_model,
        "set" if settings.has_api_key else "missing",
        settings.incident_file,
        settings.step_delay_ms,
    )
    return settings
