"""Configuration helpers for the Skillbase application."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import TYPE_CHECKING, Final, Literal

from dotenv import load_dotenv

if TYPE_CHECKING:  # pragma: no cover
    from .observability import MetricsRecorder

load_dotenv()

ModelSpeed = Literal["fast", "quality"]

_DEFAULT_CHAT_BACKEND: Final[str] = "anthropic"
_DEFAULT_ANTHROPIC_MODEL: Final[str] = "claude-sonnet-4-20250514"
_DEFAULT_ANTHROPIC_FAST_MODEL: Final[str] = "claude-3-haiku-20240307"
_DEFAULT_OPENAI_CHAT_MODEL: Final[str] = "gpt-4o-mini"
_DEFAULT_OLLAMA_URL: Final[str] = "http://localhost:11434"
_DEFAULT_OLLAMA_MODEL: Final[str] = "llama3.1:8b"
_DEFAULT_OLLAMA_TIMEOUT: Final[float] = 60.0
_DEFAULT_LLM_MAX_TOKENS: Final[int] = 4096
_DEFAULT_TEMPERATURE_PRECISE: Final[float] = 0.1
_DEFAULT_TEMPERATURE_BALANCED: Final[float] = 0.3
_DEFAULT_DATA_DIR: Final[str] = "data"
_DEFAULT_SQLITE_PATH: Final[str] = "data/skillbase.sqlite"
_DEFAULT_NAMESPACE: Final[str] = "skillbase"
_DEFAULT_FETCH_TIMEOUT: Final[float] = 20.0
_DEFAULT_FETCH_MAX_CHARS: Final[int] = 20_000
_DEFAULT_SOURCE_MAX_CHARS: Final[int] = 100_000
_DEFAULT_FETCH_USER_AGENT: Final[str] = "SkillbaseBot/1.0 (+https://github.com/skillbase)"
_DEFAULT_BULK_BATCH_SIZE: Final[int] = 10
_MAX_BULK_BATCH_SIZE: Final[int] = 15
_DEFAULT_BULK_REQUEST_DELAY: Final[float] = 0.5
_DEFAULT_RATE_LIMIT_MAX_RETRIES: Final[int] = 3
_DEFAULT_RATE_LIMIT_RETRY_WAIT: Final[float] = 60.0
_DEFAULT_FETCH_MAX_REDIRECTS: Final[int] = 5


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_optional_float(name: str) -> float | None:
    """Read an optional float environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    value = _env_optional_float(name)
    return default if value is None else value


def _env_int(name: str, default: int) -> int:
    value = _env_optional_int(name)
    return default if value is None else value


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean environment variable with a fallback."""

    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    chat_backend: str = _DEFAULT_CHAT_BACKEND
    anthropic_api_key: str | None = None
    anthropic_model: str = _DEFAULT_ANTHROPIC_MODEL
    anthropic_fast_model: str = _DEFAULT_ANTHROPIC_FAST_MODEL
    openai_api_key: str | None = None
    openai_chat_model: str = _DEFAULT_OPENAI_CHAT_MODEL
    ollama_base_url: str = _DEFAULT_OLLAMA_URL
    ollama_model: str = _DEFAULT_OLLAMA_MODEL
    ollama_request_timeout: float = _DEFAULT_OLLAMA_TIMEOUT
    llm_max_tokens: int = _DEFAULT_LLM_MAX_TOKENS
    llm_temperature_precise: float = _DEFAULT_TEMPERATURE_PRECISE
    llm_temperature_balanced: float = _DEFAULT_TEMPERATURE_BALANCED
    data_dir: str = _DEFAULT_DATA_DIR
    sqlite_path: str = _DEFAULT_SQLITE_PATH
    observability_metrics_enabled: bool = True
    observability_namespace: str = _DEFAULT_NAMESPACE
    observability_prometheus_enabled: bool = False
    trace_prompt_snapshots: bool = False
    fetch_timeout: float = _DEFAULT_FETCH_TIMEOUT
    fetch_max_chars: int = _DEFAULT_FETCH_MAX_CHARS
    source_max_chars: int = _DEFAULT_SOURCE_MAX_CHARS
    fetch_user_agent: str = _DEFAULT_FETCH_USER_AGENT
    fetch_max_redirects: int = _DEFAULT_FETCH_MAX_REDIRECTS
    bulk_answer_batch_size: int = _DEFAULT_BULK_BATCH_SIZE
    bulk_request_delay_seconds: float = _DEFAULT_BULK_REQUEST_DELAY
    rate_limit_max_retries: int = _DEFAULT_RATE_LIMIT_MAX_RETRIES
    rate_limit_retry_wait_seconds: float = _DEFAULT_RATE_LIMIT_RETRY_WAIT
    progressive_tier2_enabled: bool = True
    progressive_tier3_enabled: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        metrics_enabled = _env_optional_bool("OBSERVABILITY_METRICS_ENABLED")
        batch_size = _env_int("BULK_ANSWER_BATCH_SIZE", _DEFAULT_BULK_BATCH_SIZE)

        return cls(
            chat_backend=os.getenv("CHAT_BACKEND", _DEFAULT_CHAT_BACKEND),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", _DEFAULT_ANTHROPIC_MODEL),
            anthropic_fast_model=os.getenv("ANTHROPIC_FAST_MODEL", _DEFAULT_ANTHROPIC_FAST_MODEL),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_chat_model=os.getenv("OPENAI_CHAT_MODEL", _DEFAULT_OPENAI_CHAT_MODEL),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", _DEFAULT_OLLAMA_URL),
            ollama_model=os.getenv("OLLAMA_MODEL", _DEFAULT_OLLAMA_MODEL),
            ollama_request_timeout=_env_float("OLLAMA_TIMEOUT", _DEFAULT_OLLAMA_TIMEOUT),
            llm_max_tokens=_env_optional_int("LLM_MAX_TOKENS") or _DEFAULT_LLM_MAX_TOKENS,
            llm_temperature_precise=_env_float("LLM_TEMPERATURE_PRECISE", _DEFAULT_TEMPERATURE_PRECISE),
            llm_temperature_balanced=_env_float("LLM_TEMPERATURE_BALANCED", _DEFAULT_TEMPERATURE_BALANCED),
            data_dir=os.getenv("DATA_DIR", _DEFAULT_DATA_DIR),
            sqlite_path=os.getenv("SQLITE_PATH", _DEFAULT_SQLITE_PATH),
            observability_metrics_enabled=metrics_enabled if metrics_enabled is not None else True,
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", _DEFAULT_NAMESPACE),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
            trace_prompt_snapshots=_env_bool("TRACE_PROMPT_SNAPSHOTS", False),
            fetch_timeout=_env_float("FETCH_TIMEOUT", _DEFAULT_FETCH_TIMEOUT),
            fetch_max_chars=max(1, _env_int("FETCH_MAX_CHARS", _DEFAULT_FETCH_MAX_CHARS)),
            source_max_chars=max(1, _env_int("SOURCE_MAX_CHARS", _DEFAULT_SOURCE_MAX_CHARS)),
            fetch_user_agent=os.getenv("FETCH_USER_AGENT", _DEFAULT_FETCH_USER_AGENT),
            fetch_max_redirects=max(0, _env_int("FETCH_MAX_REDIRECTS", _DEFAULT_FETCH_MAX_REDIRECTS)),
            bulk_answer_batch_size=min(_MAX_BULK_BATCH_SIZE, max(1, batch_size)),
            bulk_request_delay_seconds=max(
                0.0, _env_float("BULK_REQUEST_DELAY_SECONDS", _DEFAULT_BULK_REQUEST_DELAY)
            ),
            rate_limit_max_retries=max(
                0, _env_int("LLM_RATE_LIMIT_MAX_RETRIES", _DEFAULT_RATE_LIMIT_MAX_RETRIES)
            ),
            rate_limit_retry_wait_seconds=max(
                0.0, _env_float("LLM_RATE_LIMIT_RETRY_WAIT_SECONDS", _DEFAULT_RATE_LIMIT_RETRY_WAIT)
            ),
            progressive_tier2_enabled=_env_bool("PROGRESSIVE_TIER2_ENABLED", True),
            progressive_tier3_enabled=_env_bool("PROGRESSIVE_TIER3_ENABLED", True),
        )

    @property
    def is_anthropic_chat_backend(self) -> bool:
        """Return True when using the Anthropic Messages API."""

        return self.chat_backend.lower() == "anthropic"

    @property
    def is_openai_chat_backend(self) -> bool:
        """Return True when using the OpenAI Responses API for chat."""

        return self.chat_backend.lower() == "openai"

    @property
    def is_ollama_chat_backend(self) -> bool:
        """Return True when the chat backend is configured for an Ollama-hosted model."""

        return self.chat_backend.lower() == "ollama"

    def model_for_speed(self, speed: str | None) -> str:
        """Return the model identifier for the requested speed on the active backend."""

        if self.is_openai_chat_backend:
            return self.openai_chat_model
        if self.is_ollama_chat_backend:
            return self.ollama_model
        if (speed or "quality").lower() == "fast":
            return self.anthropic_fast_model
        return self.anthropic_model

    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser().resolve()

    def sqlite_file(self) -> Path:
        return Path(self.sqlite_path).expanduser().resolve()

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )


__all__ = ["ModelSpeed", "Settings"]
