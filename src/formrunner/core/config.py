# src/formrunner/core/config.py
"""Configuration schema and loading for formrunner.

Settings are validated by Pydantic and frozen after construction. Loading
goes through Dynaconf so that a YAML file and FORMRUNNER_-prefixed
environment variables merge with the schema defaults.
"""

import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator

from formrunner.contracts import Credentials


class ActorSettings(BaseModel):
    """External actor selection and login material."""

    model_config = {"frozen": True}

    plugin: str = Field(
        default="http",
        description="Built-in actor name ('http') or an import path 'package.module:ClassName'",
    )
    username: str = Field(default="", description="Login name passed to establish_session")
    password: SecretStr = Field(default=SecretStr(""), description="Login secret passed to establish_session")
    options: dict[str, Any] = Field(default_factory=dict, description="Actor-specific options")

    @field_validator("plugin")
    @classmethod
    def validate_plugin(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("plugin must not be empty")
        if ":" in v:
            module_name, _, class_name = v.partition(":")
            if not module_name or not class_name:
                raise ValueError(f"plugin import path must look like 'package.module:ClassName', got {v!r}")
        return v

    def credentials(self) -> Credentials:
        return Credentials(username=self.username, password=self.password.get_secret_value())


class RetrySettings(BaseModel):
    """Per-item retry policy."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=2, gt=0, description="Total attempts per item, including the first")
    backoff_seconds: float = Field(default=2.0, ge=0, description="Fixed wait between attempts")


class CheckpointSettings(BaseModel):
    """Checkpoint database configuration."""

    model_config = {"frozen": True}

    url: str = Field(
        default="sqlite:///./data/formrunner.db",
        description="SQLAlchemy database URL for the checkpoint store",
    )
    write_retries: int = Field(default=1, ge=0, description="Extra attempts for a failed checkpoint write")
    fail_on_write_error: bool = Field(
        default=False,
        description="End the run in error when a checkpoint write still fails after retries",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if "://" not in v:
            raise ValueError(f"url must be a SQLAlchemy URL (e.g. sqlite:///./data/formrunner.db), got {v!r}")
        return v


class ProgressSettings(BaseModel):
    """Progress publisher sizing."""

    model_config = {"frozen": True}

    log_buffer_size: int = Field(default=100, gt=0, description="Recent log lines replayed to new subscribers")
    subscriber_queue_size: int = Field(default=1000, gt=0, description="Per-subscriber event queue capacity")


class ControlSettings(BaseModel):
    """Timeouts for blocking control commands."""

    model_config = {"frozen": True}

    pause_timeout_seconds: float = Field(default=30.0, gt=0, description="How long pause() waits for the loop to park")
    stop_timeout_seconds: float = Field(default=60.0, gt=0, description="How long stop() waits for the actor release")


class ServerSettings(BaseModel):
    """HTTP control surface binding."""

    model_config = {"frozen": True}

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=3001, gt=0, le=65535, description="Bind port")


class FormRunnerSettings(BaseModel):
    """Top-level formrunner configuration.

    Every section has defaults, so an empty configuration is valid; the
    actor credentials normally come from the environment.
    """

    model_config = {"frozen": True}

    actor: ActorSettings = Field(default_factory=ActorSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    progress: ProgressSettings = Field(default_factory=ProgressSettings)
    control: ControlSettings = Field(default_factory=ControlSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original so validation can report it
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    """Lowercase mapping keys at every level.

    Dynaconf uppercases top-level keys and keys set through environment
    variables; the schema is lowercase throughout.
    """
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def load_settings(config_path: Path | None = None) -> FormRunnerSettings:
    """Load settings from an optional YAML file with environment overrides.

    Precedence, highest first:
    1. Environment variables (FORMRUNNER_*, nested keys with ``__``)
    2. Config file (settings.yaml)
    3. Defaults from the Pydantic schema

    Args:
        config_path: Path to a YAML configuration file, or None to load
            from the environment only.

    Returns:
        Validated FormRunnerSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config_path is given but doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if config_path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="FORMRUNNER",
        settings_files=[str(config_path)] if config_path is not None else [],
        environments=False,
        load_dotenv=False,  # The CLI loads .env itself
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lower_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return FormRunnerSettings(**raw_config)


def resolve_config(settings: FormRunnerSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-safe dict for display.

    Secret values are masked by Pydantic's SecretStr serialization.
    """
    return settings.model_dump(mode="json")
