"""Configuration loading, merging and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from aistack.configdir import config_dir

SYSTEM_CONFIG_FILE = "config.yaml"
USER_CONFIG_DIR = ".aistack"
USER_CONFIG_FILE = "config.yaml"

RUNTIME_DOCKER = "docker"
RUNTIME_PODMAN = "podman"

VALID_PROFILES = ("minimal", "standard-gpu", "dev")
VALID_LOG_LEVELS = ("debug", "info", "warn", "error")
VALID_LOG_FORMATS = ("json", "text")
VALID_UPDATE_MODES = ("rolling", "pinned")


class ConfigError(Exception):
    """Raised when configuration cannot be read, parsed or validated."""

    def __init__(self, message: str, errors: Iterable["ValidationError"] = ()):
        super().__init__(message)
        self.errors = tuple(errors)


@dataclass(frozen=True)
class ValidationError:
    """A single validation problem at a configuration path."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


def _string_field(data: Mapping[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ConfigError(f"{where}{key}: expected a string value")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _bool_field(data: Mapping[str, Any], key: str, where: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ConfigError(f"{where}{key}: cannot use {value!r} as a boolean")
    return value


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key}: expected a mapping")
    return value


def _one_of(values: Iterable[str]) -> str:
    return "[" + " ".join(values) + "]"


@dataclass
class LoggingConfig:
    level: str = ""
    format: str = ""


@dataclass
class ModelsConfig:
    keep_cache_on_uninstall: bool = False


@dataclass
class UpdatesConfig:
    mode: str = ""


@dataclass
class Config:
    """The complete configuration; unset fields hold empty values."""

    container_runtime: str = ""
    profile: str = ""
    gpu_lock: bool = False
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    updates: UpdatesConfig = field(default_factory=UpdatesConfig)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "Config":
        """Build a configuration from parsed YAML; unknown keys are ignored."""
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ConfigError("configuration document must be a mapping")
        logging_data = _section(data, "logging")
        models_data = _section(data, "models")
        updates_data = _section(data, "updates")
        return cls(
            container_runtime=_string_field(data, "container_runtime", ""),
            profile=_string_field(data, "profile", ""),
            gpu_lock=_bool_field(data, "gpu_lock", ""),
            logging=LoggingConfig(
                level=_string_field(logging_data, "level", "logging."),
                format=_string_field(logging_data, "format", "logging."),
            ),
            models=ModelsConfig(
                keep_cache_on_uninstall=_bool_field(
                    models_data, "keep_cache_on_uninstall", "models."
                ),
            ),
            updates=UpdatesConfig(mode=_string_field(updates_data, "mode", "updates.")),
        )

    def validate(self) -> list[ValidationError]:
        """Return every validation problem, in a fixed order."""
        errors: list[ValidationError] = []
        if self.container_runtime not in (RUNTIME_DOCKER, RUNTIME_PODMAN):
            errors.append(
                ValidationError(
                    "container_runtime",
                    f"must be '{RUNTIME_DOCKER}' or '{RUNTIME_PODMAN}', "
                    f"got '{self.container_runtime}'",
                )
            )
        if self.profile not in VALID_PROFILES:
            errors.append(
                ValidationError(
                    "profile",
                    f"must be one of {_one_of(VALID_PROFILES)}, got '{self.profile}'",
                )
            )
        if self.logging.level not in VALID_LOG_LEVELS:
            errors.append(
                ValidationError(
                    "logging.level",
                    f"must be one of {_one_of(VALID_LOG_LEVELS)}, got '{self.logging.level}'",
                )
            )
        if self.logging.format not in VALID_LOG_FORMATS:
            errors.append(
                ValidationError(
                    "logging.format",
                    f"must be one of {_one_of(VALID_LOG_FORMATS)}, got '{self.logging.format}'",
                )
            )
        if self.updates.mode not in VALID_UPDATE_MODES:
            errors.append(
                ValidationError(
                    "updates.mode",
                    f"must be one of {_one_of(VALID_UPDATE_MODES)}, got '{self.updates.mode}'",
                )
            )
        return errors


def default_config() -> Config:
    """Return the configuration with its built-in defaults."""
    return Config(
        container_runtime=RUNTIME_DOCKER,
        profile="standard-gpu",
        gpu_lock=True,
        logging=LoggingConfig(level="info", format="json"),
        models=ModelsConfig(keep_cache_on_uninstall=True),
        updates=UpdatesConfig(mode="rolling"),
    )


def merge_config(dst: Config, src: Config) -> None:
    """Copy non-empty string values of ``src`` into ``dst``; booleans always override."""
    if src.container_runtime:
        dst.container_runtime = src.container_runtime
    if src.profile:
        dst.profile = src.profile
    dst.gpu_lock = src.gpu_lock
    if src.logging.level:
        dst.logging.level = src.logging.level
    if src.logging.format:
        dst.logging.format = src.logging.format
    dst.models.keep_cache_on_uninstall = src.models.keep_cache_on_uninstall
    if src.updates.mode:
        dst.updates.mode = src.updates.mode


def format_validation_errors(errors: Iterable[ValidationError]) -> str:
    """Render validation errors for display."""
    errors = list(errors)
    if not errors:
        return ""
    if len(errors) == 1:
        return str(errors[0])
    lines = "".join(f"  - {error}\n" for error in errors)
    return f"{len(errors)} validation errors:\n{lines}"


def _merge_file(cfg: Config, path: str | os.PathLike[str]) -> None:
    text = Path(path).read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse YAML: {exc}") from exc
    merge_config(cfg, Config.from_mapping(data))


def _check(cfg: Config) -> None:
    errors = cfg.validate()
    if errors:
        raise ConfigError(
            f"config.validation.error: {format_validation_errors(errors)}", errors
        )


def load() -> Config:
    """Load defaults, then the system file, then the user file, and validate."""
    cfg = default_config()
    for label, path in (("system", system_config_path()), ("user", user_config_path())):
        if path is None:
            continue
        try:
            _merge_file(cfg, path)
        except FileNotFoundError:
            continue
        except (OSError, ConfigError) as exc:
            raise ConfigError(f"failed to load {label} config: {exc}") from exc
    _check(cfg)
    return cfg


def load_from(path: str | os.PathLike[str]) -> Config:
    """Load defaults merged with one specific file, and validate."""
    cfg = default_config()
    try:
        _merge_file(cfg, path)
    except (OSError, ConfigError) as exc:
        raise ConfigError(f"failed to load config from {os.fspath(path)}: {exc}") from exc
    _check(cfg)
    return cfg


def system_config_path() -> str:
    """Return the path of the system configuration file."""
    return os.path.join(config_dir(), SYSTEM_CONFIG_FILE)


def user_config_path() -> str | None:
    """Return the path of the user configuration file, or None without a home directory."""
    try:
        home = Path.home()
    except (RuntimeError, KeyError):
        return None
    return str(home / USER_CONFIG_DIR / USER_CONFIG_FILE)