"""
config/settings.py — taskloop Runtime Settings

Merges config.yaml (defaults/structure) with TASKLOOP_* environment variables.
All fields are validated and typed.

  - SessionSettings rejects non-positive limits and intervals at parse time
  - RetrySettings validates the backoff strategy and retryable categories
  - validate_all() performs cross-field validation and raises ConfigError
    with a human-readable message listing every problem found
  - load_settings() respects TASKLOOP_CONFIG as a fallback when no explicit
    config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskloop.exceptions import ConfigError, ErrorCategory


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_STRATEGIES = {"exponential", "linear", "fixed"}


def _require_positive(name: str, v: float) -> float:
    if v <= 0:
        raise ValueError(f"{name} must be > 0")
    return v


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class SessionSettings(BaseModel):
    max_sessions: int = 100
    session_timeout_seconds: float = 30 * 60
    cleanup_interval_seconds: float = 5 * 60
    compact_interval_seconds: float = 15 * 60
    todo_retention_seconds: float = 60 * 60
    max_log_entries: int = 50
    context_log_entries: int = 10
    batch_window_seconds: float = 0.1
    active_window_seconds: float = 5 * 60
    id_generation_attempts: int = 5

    @field_validator("max_sessions", "max_log_entries", "context_log_entries", "id_generation_attempts")
    @classmethod
    def _positive_int(cls, v: int, info) -> int:
        return int(_require_positive(f"session.{info.field_name}", v))

    @field_validator(
        "session_timeout_seconds",
        "cleanup_interval_seconds",
        "compact_interval_seconds",
        "todo_retention_seconds",
        "batch_window_seconds",
        "active_window_seconds",
    )
    @classmethod
    def _positive_seconds(cls, v: float, info) -> float:
        return _require_positive(f"session.{info.field_name}", v)


class TodoSettings(BaseModel):
    max_todos: int = 200
    max_description_length: int = 1000

    @field_validator("max_todos", "max_description_length")
    @classmethod
    def _positive(cls, v: int, info) -> int:
        return int(_require_positive(f"todos.{info.field_name}", v))


class RetrySettings(BaseModel):
    """Backoff config for retry-wrapped operations."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    strategy: str = "exponential"
    jitter_ratio: float = 0.1
    retryable_categories: list[str] = Field(
        default_factory=lambda: ["network", "timeout", "system"]
    )

    @field_validator("max_attempts")
    @classmethod
    def _positive_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retry.max_attempts must be >= 1")
        return v

    @field_validator("base_delay", "max_delay")
    @classmethod
    def _non_negative_delay(cls, v: float, info) -> float:
        if v < 0:
            raise ValueError(f"retry.{info.field_name} must be >= 0")
        return v

    @field_validator("strategy")
    @classmethod
    def _known_strategy(cls, v: str) -> str:
        v = v.lower()
        if v not in _VALID_STRATEGIES:
            raise ValueError(
                f"retry.strategy '{v}' is not supported. "
                f"Supported: {sorted(_VALID_STRATEGIES)}"
            )
        return v

    @field_validator("jitter_ratio")
    @classmethod
    def _valid_jitter(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("retry.jitter_ratio must be between 0.0 and 1.0")
        return v

    @field_validator("retryable_categories")
    @classmethod
    def _known_categories(cls, v: list[str]) -> list[str]:
        valid = {c.value for c in ErrorCategory}
        bad = [c for c in v if c not in valid]
        if bad:
            raise ValueError(
                f"retry.retryable_categories has unknown categories: {bad}. "
                f"Valid values: {sorted(valid)}"
            )
        return v


class ParserSettings(BaseModel):
    max_message_length: int = 1000
    preview_length: int = 200
    original_response_limit: int = 500


class VerificationSettings(BaseModel):
    auto_approval_enabled: bool = True
    timeout_seconds: float = 60.0
    max_pending: int = 10

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        return _require_positive("verification.timeout_seconds", v)


class RunnerSettings(BaseModel):
    max_iterations: int = 25

    @field_validator("max_iterations")
    @classmethod
    def _positive_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("runner.max_iterations must be >= 1")
        return v


class LoggingSettings(BaseModel):
    level: str = "INFO"
    log_dir: Optional[str] = None
    max_file_size_mb: int = 50
    backup_count: int = 5
    console_output: bool = True
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    taskloop runtime settings.

    Priority (highest to lowest):
      1. Environment variables (TASKLOOP_SESSION__MAX_SESSIONS=50, ...)
      2. config.yaml
      3. Field defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKLOOP_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    session: SessionSettings = Field(default_factory=SessionSettings)
    todos: TodoSettings = Field(default_factory=TodoSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    parser: ParserSettings = Field(default_factory=ParserSettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    runner: RunnerSettings = Field(default_factory=RunnerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def validate_all(self) -> None:
        """
        Cross-field validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        catches combinations that are individually valid but unusable together.
        """
        errors: list[str] = []

        if self.retry.base_delay > self.retry.max_delay:
            errors.append(
                f"retry.base_delay ({self.retry.base_delay}) is larger than "
                f"retry.max_delay ({self.retry.max_delay})."
            )

        if self.session.cleanup_interval_seconds > self.session.session_timeout_seconds:
            errors.append(
                "session.cleanup_interval_seconds is longer than "
                "session.session_timeout_seconds; idle sessions would outlive "
                "their timeout by more than one sweep."
            )

        if self.session.context_log_entries > self.session.max_log_entries:
            errors.append(
                f"session.context_log_entries ({self.session.context_log_entries}) "
                f"exceeds session.max_log_entries ({self.session.max_log_entries})."
            )

        if self.parser.preview_length > self.parser.original_response_limit:
            errors.append(
                "parser.preview_length must not exceed parser.original_response_limit."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\ntaskloop startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {
    "session", "todos", "retry", "parser", "verification", "runner", "logging",
}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument
      2. TASKLOOP_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("TASKLOOP_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def _merge_env_over_yaml(yaml_section: Any, env_section: BaseModel, fields_set: set[str]) -> Any:
    """Env-provided nested values override YAML; YAML overrides defaults."""
    if not isinstance(yaml_section, dict):
        return env_section
    merged = dict(yaml_section)
    merged.update(env_section.model_dump(include=fields_set))
    return merged


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))

    env_only = Settings()
    init_kwargs: dict[str, Any] = {}
    for key, value in yaml_data.items():
        if key not in _KNOWN_SECTIONS:
            continue
        env_section = getattr(env_only, key)
        init_kwargs[key] = _merge_env_over_yaml(value, env_section, env_section.model_fields_set)

    instance = Settings(**init_kwargs) if init_kwargs else env_only
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """Return the process Settings, loading from the default path on first use."""
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is not None:
            return _singleton
    return load_settings()


def reset_settings() -> None:
    """Forget the cached Settings (tests)."""
    global _singleton
    with _singleton_lock:
        _singleton = None
