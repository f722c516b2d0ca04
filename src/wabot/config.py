"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Environment variables override it
using ``__`` as the nested delimiter (e.g. ``BOT__OWNER=628123456789``).
Sources are deep-merged, so an override only needs the one key when its
section is spelled out in config.toml.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from wabot.config import get_settings

    s = get_settings()
    print(s.bot.prefix)
    print(s.ai.model)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; unknown keys are rejected so typos fail loudly."""

    model_config = {"extra": "forbid"}


class BotConfig(_StrictModel):
    name: str = "wabot"
    prefix: str = "."
    owner: str | None = None  # phone number or JID allowed to run admin commands
    auto_read: bool = True

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if len(v) != 1 or v.isspace():
            raise ValueError("prefix must be a single non-space character")
        return v


class SessionConfig(_StrictModel):
    dir: str = "sessions"
    min_entry_bytes: int = 8
    max_entry_bytes: int = 5 * 1024 * 1024

    @model_validator(mode="after")
    def validate_bounds(self) -> SessionConfig:
        if self.min_entry_bytes < 0 or self.max_entry_bytes <= self.min_entry_bytes:
            raise ValueError("session entry bounds must satisfy 0 <= min < max")
        return self


class ReconnectConfig(_StrictModel):
    base_delay_seconds: float = 5.0
    step_seconds: float = 5.0  # linear growth per consecutive failed attempt
    max_delay_seconds: float = 30.0
    terminal_status_codes: list[int] = [401]  # logged out
    desync_status_codes: list[int] = [411, 500]  # multi-device mismatch, bad session


class DecryptGuardConfig(_StrictModel):
    window_seconds: float = 300.0
    threshold: int = 10

    @field_validator("threshold")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError("threshold must be a positive integer")
        return v


class RateLimitConfig(_StrictModel):
    max_commands: int = 30
    window_seconds: float = 60.0
    cooldown_seconds: float = 5.0
    trusted_cooldown_seconds: float = 1.0

    @field_validator("max_commands")
    @classmethod
    def validate_max_commands(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_commands must be a positive integer")
        return v


class AiConfig(_StrictModel):
    command: str = "ollama"
    model: str = "qwen3:0.6b"
    label: str = "Qwen3 AI"
    timeout_seconds: float = 180.0
    status_timeout_seconds: float = 15.0
    error_excerpt_chars: int = 200


class VcardConfig(_StrictModel):
    path: str = "vcard.vcf"


class ContactsConfig(_StrictModel):
    lookup_timeout_seconds: float = 10.0


class PremiumConfig(_StrictModel):
    path: str = "data/premium.json"
    max_days: int = 365


class TransportConfig(_StrictModel):
    shutdown_grace_seconds: float = 5.0
    send_timeout_seconds: float = 20.0
    outgoing_queue_limit: int = 100
    max_send_attempts: int = 3


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Explicit-fields validation
# ---------------------------------------------------------------------------


def _is_exempt_field(model_cls: type[BaseModel], field_name: str) -> bool:
    """Optional fields and empty-container defaults need not be spelled out."""
    import types
    import typing

    field_info = model_cls.model_fields[field_name]
    annotation = field_info.annotation

    # Optional (X | None): TOML can't express null
    if isinstance(annotation, types.UnionType) and type(None) in annotation.__args__:
        return True
    origin = getattr(annotation, "__origin__", None)
    if origin is typing.Union and type(None) in annotation.__args__:
        return True

    return field_info.default in ([], {})


def _collect_implicit_fields(model: BaseModel) -> list[str]:
    """Find sections present in the input that leave required fields implicit.

    Sections omitted entirely use known-good defaults and are not checked.
    """
    errors: list[str] = []
    for field_name in type(model).model_fields:
        value = getattr(model, field_name)
        if not isinstance(value, _StrictModel) or field_name not in model.model_fields_set:
            continue
        child_cls = type(value)
        missing = {
            f
            for f in set(child_cls.model_fields) - value.model_fields_set
            if not _is_exempt_field(child_cls, f)
        }
        if missing:
            errors.append(f"{field_name}: missing {sorted(missing)}")
    return errors


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    bot: BotConfig = BotConfig()
    session: SessionConfig = SessionConfig()
    reconnect: ReconnectConfig = ReconnectConfig()
    decrypt_guard: DecryptGuardConfig = DecryptGuardConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    ai: AiConfig = AiConfig()
    vcard: VcardConfig = VcardConfig()
    contacts: ContactsConfig = ContactsConfig()
    premium: PremiumConfig = PremiumConfig()
    transport: TransportConfig = TransportConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _require_explicit_fields(self) -> Settings:
        """If you include a section in config.toml, spell out every field."""
        errors = _collect_implicit_fields(self)
        if errors:
            msg = "Config fields must be explicitly set:\n"
            msg += "\n".join(f"  - {e}" for e in errors)
            raise ValueError(msg)
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def session_dir(self) -> Path:
        return _resolve(self.project_root, self.session.dir)

    @cached_property
    def vcard_path(self) -> Path:
        return _resolve(self.project_root, self.vcard.path)

    @cached_property
    def premium_path(self) -> Path:
        return _resolve(self.project_root, self.premium.path)


def _resolve(root: Path, value: str) -> Path:
    p = Path(value).expanduser()
    if not p.is_absolute():
        p = root / p
    return p.resolve()


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
