"""
Environment-derived configuration for the OCR vendor, the LLM providers and
local storage locations.

Values are read from the process environment. The CLI loads a `.env` file
(python-dotenv) before building `Settings`; library code only sees os.environ.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional


DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"
DEFAULT_HANDWRITING_OCR_BASE_URL = "https://www.handwritingocr.com/api/v3"

STORAGE_KEY = "essayflow_ai_records_v1"
DEBOUNCE_SECONDS = 0.6


def _get(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(key)
    if value is None:
        return default
    value = value.strip()
    return value or default


@dataclass(frozen=True)
class ProviderCredentials:
    """API key + base URL pair for one vendor."""

    api_key: Optional[str]
    base_url: str


@dataclass(frozen=True)
class PollingConfig:
    """
    Adaptive polling budget for the OCR status endpoint.

    Delays are in seconds. The delay carried between polls grows up to
    `rate_limited_delay_ceiling` after a 429 and up to `delay_ceiling` otherwise.
    """

    base_delay: float = 2.0
    max_attempts: int = 120
    max_wait: float = 4 * 60.0
    rate_limit_backoff_ceiling: float = 30.0
    rate_limited_delay_ceiling: float = 45.0
    delay_ceiling: float = 20.0


@dataclass(frozen=True)
class Settings:
    openai: ProviderCredentials
    deepseek: ProviderCredentials
    gemini: ProviderCredentials
    openrouter: ProviderCredentials
    handwriting_ocr: ProviderCredentials
    ocr_save_endpoint: Optional[str] = None
    app_url: str = "http://localhost"
    app_name: str = "EssayFlow AI"
    data_dir: Path = field(default_factory=lambda: Path.cwd() / "data")
    transcripts_dir: Path = field(default_factory=lambda: Path.cwd() / "transcripts")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the given mapping (defaults to os.environ)."""
        env = os.environ if env is None else env
        data_dir = Path(_get(env, "ESSAYFLOW_DATA_DIR") or Path.cwd() / "data")
        transcripts_dir = Path(_get(env, "ESSAYFLOW_TRANSCRIPTS_DIR") or Path.cwd() / "transcripts")
        return cls(
            openai=ProviderCredentials(
                _get(env, "OPENAI_API_KEY"),
                _get(env, "OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL),
            ),
            deepseek=ProviderCredentials(
                _get(env, "DEEPSEEK_API_KEY"),
                _get(env, "DEEPSEEK_BASE_URL", DEFAULT_DEEPSEEK_BASE_URL),
            ),
            gemini=ProviderCredentials(
                _get(env, "GEMINI_API_KEY"),
                _get(env, "GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL),
            ),
            openrouter=ProviderCredentials(
                _get(env, "OPENROUTER_API_KEY"),
                _get(env, "OPENROUTER_BASE_URL", DEFAULT_OPENROUTER_BASE_URL),
            ),
            handwriting_ocr=ProviderCredentials(
                _get(env, "HANDWRITING_OCR_API_KEY"),
                _get(env, "HANDWRITING_OCR_BASE_URL", DEFAULT_HANDWRITING_OCR_BASE_URL),
            ),
            ocr_save_endpoint=_get(env, "OCR_SAVE_ENDPOINT"),
            app_url=_get(env, "APP_URL", "http://localhost"),
            app_name=_get(env, "APP_NAME", "EssayFlow AI"),
            data_dir=data_dir,
            transcripts_dir=transcripts_dir,
        )

    @property
    def storage_path(self) -> Path:
        return self.data_dir / f"{STORAGE_KEY}.json"
