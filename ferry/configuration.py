"""Layered configuration loader for Ferry."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Literal, Mapping, Sequence

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import TranslationProviderConfigurationError

APP_NAME = "ferry"
CONFIG_FILE_NAME = "config.yaml"


class FerryConfig(BaseModel):
    """Schema describing all supported configuration options."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    LLM_PROVIDER: Literal["azure_openai", "openai"] = Field(
        default="openai",
        description="Large language model provider selection.",
    )
    OPENAI_API_KEY: str | None = Field(default=None, repr=False)
    OPENAI_BASE_URL: str | None = None
    AZURE_OPENAI_API_KEY: str | None = Field(default=None, repr=False)
    AZURE_OPENAI_ENDPOINT: str | None = None
    AZURE_OPENAI_API_VERSION: str | None = None
    AZURE_OPENAI_DEPLOYMENT_NAME: str | None = None
    HTTPS_PROXY: str | None = None

    FERRY_MODEL: str = "gpt-4o-mini"
    FERRY_TEMPERATURE: float = Field(default=0.1, ge=0.0, le=2.0)
    FERRY_FRAGMENT_SIZE: int = Field(default=2048, ge=0)
    FERRY_API_CALL_INTERVAL: float = Field(
        default=5.0,
        ge=0.0,
        description="Minimum seconds between two request starts; 0 disables limiting.",
    )
    FERRY_RETRY_BUDGET: int = Field(default=5, ge=0)
    FERRY_TARGET_LANGUAGES: List[str] = Field(default_factory=list)
    FERRY_SOURCE_FOLDER: Path | None = None
    FERRY_OUTPUT_BASE_PATH: Path | None = None
    FERRY_PROMPT_FILE: Path | None = None
    FERRY_DEBUG: bool = Field(
        default=False,
        description="Ask for confirmation before translating each document.",
    )
    FERRY_PROVIDER_DEBUG: bool = False

    @field_validator("LLM_PROVIDER", mode="before")
    @classmethod
    def _normalise_provider(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().lower().replace("-", "_")
            synonyms = {
                "azure_open_ai": "azure_openai",
                "azureopenai": "azure_openai",
            }
            normalized = synonyms.get(normalized, normalized)
            if normalized not in {"openai", "azure_openai"}:
                normalized = "openai"
            return normalized
        return value

    @field_validator("FERRY_TARGET_LANGUAGES", mode="before")
    @classmethod
    def _split_languages(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


def _config_file_paths(app_dir: Path) -> list[Path]:
    """Return candidate YAML files, lowest precedence first."""

    config_home = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")
    candidates = [
        config_home / APP_NAME / CONFIG_FILE_NAME,
        app_dir / CONFIG_FILE_NAME,
    ]
    return [path for path in candidates if path.is_file()]


def _load_discovered_yaml(*, app_dir: Path) -> dict[str, Any]:
    """Merge every discovered YAML configuration file into one mapping."""

    result: dict[str, Any] = {}
    for path in _config_file_paths(app_dir):
        try:
            with path.open("r", encoding="utf-8") as handle:
                parsed = yaml.safe_load(handle)
        except (OSError, yaml.YAMLError) as exc:
            raise TranslationProviderConfigurationError(
                f"Configuration file {path} could not be read: {exc}"
            ) from exc
        if parsed is None:
            continue
        if not isinstance(parsed, Mapping):
            raise TranslationProviderConfigurationError(
                f"Invalid configuration file {path}: expected a mapping at the root."
            )
        result.update(parsed)
    return result


def _merge_env_sources(target: dict[str, Any], *, app_dir: Path) -> None:
    """Merge .env and process environment variables into the target mapping."""

    allowed = set(FerryConfig.model_fields.keys())

    def merge_values(values: Mapping[str, str | None]) -> None:
        for key, value in sorted(values.items()):
            if value is None or key not in allowed:
                continue
            target[key] = value

    dotenv_path = app_dir / ".env"
    if dotenv_path.exists():
        merge_values(dotenv_values(dotenv_path))

    merge_values(dict(os.environ))


@lru_cache(maxsize=1)
def _load_settings(app_dir: Path | None = None) -> FerryConfig:
    """Load configuration layers once and cache the immutable model."""

    base_dir = app_dir or Path.cwd()
    combined = _load_discovered_yaml(app_dir=base_dir)
    _merge_env_sources(combined, app_dir=base_dir)
    try:
        return FerryConfig.model_validate(combined)
    except ValidationError as exc:
        raise TranslationProviderConfigurationError(
            _format_validation_errors(exc.errors())
        ) from exc


def validate_provider_settings(settings: FerryConfig) -> None:
    """Ensure the credentials of the selected provider are present."""

    provider = settings.LLM_PROVIDER
    errors: list[str] = []

    if provider == "openai":
        if not settings.OPENAI_API_KEY:
            errors.append(
                "OPENAI_API_KEY is required when LLM_PROVIDER is 'openai'."
            )
    elif provider == "azure_openai":
        missing = [
            name
            for name, value in {
                "AZURE_OPENAI_API_KEY": settings.AZURE_OPENAI_API_KEY,
                "AZURE_OPENAI_ENDPOINT": settings.AZURE_OPENAI_ENDPOINT,
                "AZURE_OPENAI_API_VERSION": settings.AZURE_OPENAI_API_VERSION,
                "AZURE_OPENAI_DEPLOYMENT_NAME": settings.AZURE_OPENAI_DEPLOYMENT_NAME,
            }.items()
            if not value
        ]
        if missing:
            errors.append(
                "The following Azure OpenAI settings must be provided when "
                f"LLM_PROVIDER is 'azure_openai': {', '.join(missing)}."
            )

    if errors:
        bullet_list = "\n".join(f"- {message}" for message in errors)
        raise TranslationProviderConfigurationError(
            "Configuration validation errors detected:\n" + bullet_list
        )


def _format_validation_errors(entries: Sequence[Mapping[str, Any]]) -> str:
    details: list[str] = []
    for entry in entries:
        path = entry.get("loc") or []
        location = ".".join(str(part) for part in path if part not in {None, ""})
        message = str(entry.get("msg") or "Invalid value")
        prefix = f"{location}: " if location else ""
        details.append(f"- {prefix}{message}")
    return "Configuration validation errors detected:\n" + "\n".join(details)


def get_settings(app_dir: Path | None = None) -> FerryConfig:
    """Return the validated configuration model for typed access."""

    return _load_settings(app_dir=app_dir)


def clear_settings_cache() -> None:
    _load_settings.cache_clear()
