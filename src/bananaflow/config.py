"""
Settings - Load and save user configuration.

Settings live in ``~/.config/bananaflow/settings.json``. The API key may
also come from the environment (``GEMINI_API_KEY``, then ``API_KEY``),
which takes precedence over the file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from bananaflow.core.scheduler import DEFAULT_MIN_GAP, RetryPolicy
from bananaflow.providers.base import ProviderConfig


logger = logging.getLogger(__name__)

API_KEY_ENV_VARS = ("GEMINI_API_KEY", "API_KEY")


def default_settings_path() -> Path:
    return Path.home() / ".config" / "bananaflow" / "settings.json"


def default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "bananaflow"


@dataclass
class Settings:
    """
    User settings.

    Attributes:
        api_key: Generation service API key
        base_url: Override of the service endpoint
        image_model: Model used for image output
        text_model: Model used for text/JSON output
        language: Language for generated descriptions
        min_request_gap: Minimum seconds between service calls
        retry: Backoff parameters for transient failures
        snapshot_dir: Where rolling workflow snapshots are kept
    """
    api_key: str = ""
    base_url: str | None = None
    image_model: str | None = None
    text_model: str | None = None
    language: str = "English"
    min_request_gap: float = DEFAULT_MIN_GAP
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    snapshot_dir: Path = field(default_factory=lambda: default_data_dir() / "snapshots")

    def provider_config(self) -> ProviderConfig:
        """Configuration for the generation service."""
        return ProviderConfig(
            api_key=self.api_key,
            base_url=self.base_url,
            image_model=self.image_model,
            text_model=self.text_model,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "api_key": self.api_key,
            "base_url": self.base_url,
            "image_model": self.image_model,
            "text_model": self.text_model,
            "language": self.language,
            "min_request_gap": self.min_request_gap,
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "base_delay": self.retry.base_delay,
                "growth": self.retry.growth,
                "jitter_max": self.retry.jitter_max,
            },
            "snapshot_dir": str(self.snapshot_dir),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        defaults = cls()
        retry = data.get("retry", {})
        return cls(
            api_key=data.get("api_key", ""),
            base_url=data.get("base_url"),
            image_model=data.get("image_model"),
            text_model=data.get("text_model"),
            language=data.get("language", defaults.language),
            min_request_gap=float(data.get("min_request_gap", DEFAULT_MIN_GAP)),
            retry=RetryPolicy(
                max_attempts=int(retry.get("max_attempts", defaults.retry.max_attempts)),
                base_delay=float(retry.get("base_delay", defaults.retry.base_delay)),
                growth=float(retry.get("growth", defaults.retry.growth)),
                jitter_max=float(retry.get("jitter_max", defaults.retry.jitter_max)),
            ),
            snapshot_dir=Path(data["snapshot_dir"]) if data.get("snapshot_dir") else defaults.snapshot_dir,
        )


def load_settings(path: Path | None = None, environ: dict[str, str] | None = None) -> Settings:
    """
    Load settings from file, then apply environment overrides.

    A missing file yields defaults; an unreadable one is logged and
    ignored.
    """
    if path is None:
        path = default_settings_path()
    if environ is None:
        environ = dict(os.environ)

    settings = Settings()
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                settings = Settings.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Failed to load settings from %s: %s", path, e)

    for var in API_KEY_ENV_VARS:
        value = environ.get(var, "").strip()
        if value:
            settings.api_key = value
            break

    return settings


def save_settings(settings: Settings, path: Path | None = None) -> Path:
    """Save settings to file, creating the directory if needed."""
    if path is None:
        path = default_settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings.to_dict(), f, indent=2)
    return path
