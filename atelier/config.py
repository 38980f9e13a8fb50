"""Central configuration for the task runner, prediction API and storage roots.

Reads from environment with safe defaults and exposes helpers that other
modules can import without duplicating env parsing logic.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from dotenv import load_dotenv

# Load .env early so os.getenv sees configured values
load_dotenv()  # no-op if .env not present


@dataclass(frozen=True)
class Settings:
    images_dir: str
    variants_dir: str
    api_token: str | None = None
    api_base_url: str = "https://api.replicate.com/v1"
    corners_model: str = "google/gemini-3-pro"
    form_model: str = "google/gemini-3-pro"
    variant_model: str = "google/nano-banana-pro"
    timeout: int = 30
    max_retries: int = 2
    retry_backoff: float = 0.5
    stale_after_seconds: int = 600
    max_units_per_run: int = 10
    default_offset_percent: float = 1.0
    max_attempts: int = 5
    form_language: str = "German"
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "Settings":
        data_root = os.getenv("DATA_ROOT", os.path.abspath("./data"))
        return Settings(
            images_dir=os.getenv("IMAGES_DIR", os.path.join(data_root, "images")),
            variants_dir=os.getenv("VARIANTS_DIR", os.path.join(data_root, "variants")),
            api_token=os.getenv("REPLICATE_API_TOKEN") or None,
            api_base_url=os.getenv("REPLICATE_BASE_URL", "https://api.replicate.com/v1"),
            corners_model=os.getenv("CORNERS_MODEL", "google/gemini-3-pro"),
            form_model=os.getenv("FORM_MODEL", "google/gemini-3-pro"),
            variant_model=os.getenv("VARIANT_MODEL", "google/nano-banana-pro"),
            timeout=int(os.getenv("PREDICTION_TIMEOUT", "30")),
            max_retries=int(os.getenv("PREDICTION_MAX_RETRIES", "2")),
            retry_backoff=float(os.getenv("PREDICTION_RETRY_BACKOFF", "0.5")),
            stale_after_seconds=int(os.getenv("STALE_AFTER_SECONDS", "600")),
            max_units_per_run=int(os.getenv("MAX_UNITS_PER_RUN", "10")),
            default_offset_percent=float(os.getenv("DEFAULT_OFFSET_PERCENT", "1.0")),
            max_attempts=int(os.getenv("MAX_ATTEMPTS", "5")),
            form_language=os.getenv("FORM_LANGUAGE", "German"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def get_settings() -> Settings:
    """Return a cached settings object."""
    global _SETTINGS
    try:
        return _SETTINGS  # type: ignore[name-defined]
    except NameError:
        _settings = Settings.from_env()
        globals()["_SETTINGS"] = _settings
        return _settings
