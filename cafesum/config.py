"""Global configuration using Pydantic settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CAPABILITY_LIMITS: Dict[str, int] = {
    "llama-3.3-70b-versatile": 12_000,
    "llama-3.1-70b-versatile": 128_000,
    "llama-3.1-8b-instant": 128_000,
    "mixtral-8x7b-32768": 32_768,
}


class Settings(BaseSettings):
    """Application wide settings loaded from environment variables."""

    database_path: Path = Field(default_factory=lambda: Path("cafesum.db"))
    log_level: str = "INFO"

    completion_backend: str = "openai"
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    capability_id: str = "llama-3.3-70b-versatile"
    capability_limits: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_CAPABILITY_LIMITS)
    )
    default_capability_limit: int = 12_000
    reserved_tokens: int = 3_000
    max_response_tokens: int = 2_000
    completion_timeout: float = 60.0
    temperature: float = 0.3
    prompts_path: Optional[Path] = None

    digest_excerpt_chars: int = 200
    digest_keyword_count: int = 5
    digest_table_chars: int = 320
    digest_total_chars: int = 2_000
    min_section_chars: int = 40
    chat_keep_ratio: float = 0.8

    model_config = SettingsConfigDict(
        env_prefix="CAFESUM_",
        env_file=".env",
        case_sensitive=False,
    )

    def capability_limit(self, capability_id: str) -> int:
        return self.capability_limits.get(capability_id, self.default_capability_limit)


_settings: Optional[Settings] = None


_MODEL_CONFIG: Dict[str, Any] = dict(Settings.model_config or {})
_ENV_PREFIX: str = (_MODEL_CONFIG.get("env_prefix") or "").upper()
_CASE_SENSITIVE: bool = bool(_MODEL_CONFIG.get("case_sensitive", True))
_ENV_FILE = _MODEL_CONFIG.get("env_file") or ".env"
_ENV_PATH = Path(_ENV_FILE)


@dataclass
class EnvironmentSetting:
    """A configuration option together with the variable that overrides it."""

    field: str
    env_name: str
    value: Any
    default: Any
    annotation: Any


class EnvironmentSettingError(RuntimeError):
    """Raised when an override cannot be applied."""


def _env_key(field: str) -> str:
    key = f"{_ENV_PREFIX}{field}" if _ENV_PREFIX else field
    return key if _CASE_SENSITIVE else key.upper()


def _field_default(field_info) -> Any:
    if field_info.default_factory is not None:  # type: ignore[truthy-function]
        return field_info.default_factory()
    if field_info.is_required():
        return None
    return field_info.default


def _read_env_lines() -> Iterable[str]:
    if not _ENV_PATH.exists():
        return []
    return _ENV_PATH.read_text().splitlines()


def _write_env_value(env_name: str, value: Optional[str]) -> None:
    kept = []
    replaced = False
    for line in _read_env_lines():
        key = line.split("=", 1)[0].strip() if "=" in line else None
        if key != env_name or line.lstrip().startswith("#"):
            kept.append(line)
            continue
        replaced = True
        if value is not None:
            kept.append(f"{env_name}={value}")
    if not replaced and value is not None:
        kept.append(f"{env_name}={value}")

    if kept:
        _ENV_PATH.write_text("\n".join(kept) + "\n")
    elif _ENV_PATH.exists():
        _ENV_PATH.unlink()


def list_environment_settings(settings: Optional[Settings] = None) -> Iterable[EnvironmentSetting]:
    """Yield every setting with its variable name, current value and default."""

    settings = settings or get_settings()
    for name, field in Settings.model_fields.items():
        yield EnvironmentSetting(
            field=name,
            env_name=_env_key(name),
            value=getattr(settings, name),
            default=_field_default(field),
            annotation=field.annotation,
        )


def _apply_setting_update(field: str, raw_value: Optional[str]) -> Settings:
    if field not in Settings.model_fields:
        raise EnvironmentSettingError(f"Unknown setting: {field}")

    env_name = _env_key(field)
    previous = os.environ.get(env_name)

    if raw_value is None:
        os.environ.pop(env_name, None)
    else:
        os.environ[env_name] = raw_value

    try:
        new_settings = Settings()
    except ValidationError as exc:
        if previous is None:
            os.environ.pop(env_name, None)
        else:
            os.environ[env_name] = previous
        raise EnvironmentSettingError(str(exc)) from exc

    global _settings
    _settings = new_settings
    _write_env_value(env_name, raw_value)
    return new_settings


def update_environment_setting(field: str, raw_value: str) -> Settings:
    """Override a setting, persist it to the env file and reload."""

    return _apply_setting_update(field, raw_value)


def clear_environment_setting(field: str) -> Settings:
    """Drop an override for ``field`` and reload configuration."""

    return _apply_setting_update(field, None)


def get_settings() -> Settings:
    """Return a singleton instance of the application settings."""

    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


__all__ = [
    "DEFAULT_CAPABILITY_LIMITS",
    "Settings",
    "EnvironmentSetting",
    "EnvironmentSettingError",
    "clear_environment_setting",
    "get_settings",
    "list_environment_settings",
    "update_environment_setting",
]
