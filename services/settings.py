"""Centralized settings.

Single source of truth for translator and editor settings.
Reads from environment variables with sensible defaults.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass
class GeminiConfig:
    """Configuration for the Gemini model used by the translator."""
    model_name: str = "gemini-2.5-flash"
    api_key: str | None = None
    available: bool = False


@dataclass
class TranslatorSettings:
    """Generation settings and guardrails for instruction translation."""
    temperature: float = 0.1
    max_output_tokens: int = 4000
    max_instruction_length: int = 2000
    max_snapshot_cells: int = 2000
    timeout_seconds: float = 60.0


@dataclass
class EditorSettings:
    """Limits for the in-session editor."""
    history_limit: int = 10
    preview_rows: int = 50
    max_upload_bytes: int = 20 * 1024 * 1024


@dataclass
class Settings:
    """Settings loaded from the environment.

    Usage:
        settings = get_settings()
        print(settings.gemini.model_name)  # "gemini-2.5-flash"
        print(settings.editor.history_limit)  # 10
    """
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    translator: TranslatorSettings = field(default_factory=TranslatorSettings)
    editor: EditorSettings = field(default_factory=EditorSettings)
    log_level: str = "INFO"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _load_settings_from_env() -> Settings:
    """Load settings from environment variables."""
    settings = Settings()

    gemini_key = os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
    settings.gemini = GeminiConfig(
        model_name=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        api_key=gemini_key,
        available=bool(gemini_key),
    )

    defaults = TranslatorSettings()
    settings.translator = TranslatorSettings(
        temperature=_env_float("AI_TEMPERATURE", defaults.temperature),
        max_output_tokens=_env_int("AI_MAX_OUTPUT_TOKENS", defaults.max_output_tokens),
        max_instruction_length=_env_int("AI_MAX_INSTRUCTION_LENGTH", defaults.max_instruction_length),
        max_snapshot_cells=_env_int("AI_MAX_SNAPSHOT_CELLS", defaults.max_snapshot_cells),
        timeout_seconds=_env_float("TRANSLATOR_TIMEOUT", defaults.timeout_seconds),
    )

    editor_defaults = EditorSettings()
    settings.editor = EditorSettings(
        history_limit=_env_int("EDIT_HISTORY_LIMIT", editor_defaults.history_limit),
        preview_rows=_env_int("PREVIEW_ROWS", editor_defaults.preview_rows),
        max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", editor_defaults.max_upload_bytes),
    )

    settings.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    return settings


# Singleton instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the settings singleton.

    Settings are loaded once from environment on first access.
    """
    global _settings
    if _settings is None:
        _settings = _load_settings_from_env()
    return _settings


def reload_settings() -> Settings:
    """Force reload settings from environment.

    Useful for testing or after env changes.
    """
    global _settings
    _settings = _load_settings_from_env()
    return _settings
