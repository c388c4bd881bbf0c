"""
Runtime configuration read from environment variables.

main.py loads a .env file (python-dotenv) before anything reads the settings,
so local development can keep credentials out of the shell.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_VISION_MODELS = (
    "gemini-2.5-flash",
    "gemini-2.0-flash",
    "gemini-1.5-flash",
)

# Most capable first. imagen-* models are called through :predict.
DEFAULT_IMAGE_MODELS = (
    "gemini-2.5-flash-image",
    "gemini-2.0-flash-preview-image-generation",
    "gemini-2.0-flash-exp-image-generation",
)


def _split_models(value: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not value:
        return default
    models = tuple(m.strip() for m in value.split(",") if m.strip())
    return models or default


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    return int(_float(env, name, float(default)))


@dataclass(frozen=True)
class Settings:
    vision_models: Tuple[str, ...] = DEFAULT_VISION_MODELS
    image_models: Tuple[str, ...] = DEFAULT_IMAGE_MODELS
    vision_call_timeout_s: float = 60.0
    image_call_timeout_s: float = 120.0
    request_deadline_s: float = 240.0
    generation_temperature: float = 0.7
    provider_max_image_bytes: int = 4 * 1024 * 1024
    max_file_size: int = 10 * 1024 * 1024
    max_total_size: int = 30 * 1024 * 1024
    allowed_origins: Tuple[str, ...] = field(
        default_factory=lambda: ("http://localhost:3000", "http://127.0.0.1:3000")
    )
    mock_image_path: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        origins_raw = env.get("ALLOWED_ORIGINS", "")
        origins = tuple(o.strip() for o in origins_raw.split(",") if o.strip())
        return cls(
            vision_models=_split_models(env.get("VISION_MODELS"), DEFAULT_VISION_MODELS),
            image_models=_split_models(env.get("IMAGE_MODELS"), DEFAULT_IMAGE_MODELS),
            vision_call_timeout_s=_float(env, "PROVIDER_CALL_TIMEOUT_S", 60.0),
            image_call_timeout_s=_float(env, "IMAGE_CALL_TIMEOUT_S", 120.0),
            request_deadline_s=_float(env, "REQUEST_DEADLINE_S", 240.0),
            generation_temperature=_float(env, "GENERATION_TEMPERATURE", 0.7),
            provider_max_image_bytes=_int(env, "PROVIDER_MAX_IMAGE_BYTES", 4 * 1024 * 1024),
            max_file_size=_int(env, "MAX_FILE_SIZE", 10 * 1024 * 1024),
            max_total_size=_int(env, "MAX_TOTAL_SIZE", 30 * 1024 * 1024),
            allowed_origins=origins or ("http://localhost:3000", "http://127.0.0.1:3000"),
            mock_image_path=env.get("COMPOSER_MOCK_IMAGE") or None,
        )


_SETTINGS: Optional[Settings] = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    """Forget cached settings (tests change the environment between cases)."""
    global _SETTINGS
    _SETTINGS = None
