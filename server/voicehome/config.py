"""Configuration helpers for the voice control service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_device(name: str) -> Optional[int | str]:
    """Audio device selector: numeric index or a name substring understood by sounddevice."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    return int(raw) if raw.isdigit() else raw


@dataclass
class Settings:
    """Centralized environment-driven configuration.

    Values are read when the instance is created, so tests can reload the module
    after patching the environment.
    """

    gemini_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    )
    live_model: str = field(
        default_factory=lambda: os.getenv(
            "VOICEHOME_LIVE_MODEL", "gemini-2.5-flash-native-audio-preview-09-2025"
        )
    )
    # Calm prebuilt voice
    voice_name: str = field(default_factory=lambda: os.getenv("VOICEHOME_VOICE", "Kore"))
    capture_sample_rate: int = 16_000
    playback_sample_rate: int = 24_000
    capture_frame_size: int = field(
        default_factory=lambda: _env_int("VOICEHOME_CAPTURE_FRAME_SIZE", 4096)
    )
    input_device: Optional[int | str] = field(
        default_factory=lambda: _env_device("VOICEHOME_INPUT_DEVICE")
    )
    output_device: Optional[int | str] = field(
        default_factory=lambda: _env_device("VOICEHOME_OUTPUT_DEVICE")
    )
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance to avoid repeated environment reads."""

    return Settings()


settings = get_settings()
