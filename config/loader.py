"""YAML configuration file with a global section and per-plugin sections."""

from __future__ import annotations

import os

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from config.defaults import DEFAULTS
from config.targets import PLATFORM_TARGETS


class ConfigValidationError(Exception):
    """Raised when the config file or a plugin section does not validate."""

    def __init__(self, message, plugin_id=None):
        super().__init__(message)
        self.plugin_id = plugin_id


class ConfigModel(BaseModel):
    """Base model: camelCase keys in YAML, snake_case attributes in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class PipelineConfig(ConfigModel):
    max_retries: int = Field(default=DEFAULTS["max_retries"], gt=0)
    output_dir: str = DEFAULTS["output_dir"]
    prompts_dir: str
    compiler_script: str
    get_context_script: str = ""
    target: str = DEFAULTS["target"]
    background_grace_period_ms: int = Field(default=DEFAULTS["background_grace_period_ms"], ge=0)

    @field_validator("max_retries")
    @classmethod
    def _cap_retries(cls, value):
        return min(value, DEFAULTS["hard_max_retries"])

    @field_validator("target")
    @classmethod
    def _known_target(cls, value):
        if value not in PLATFORM_TARGETS:
            raise ValueError(f"unknown target '{value}', expected one of: {', '.join(PLATFORM_TARGETS)}")
        return value


class ConfigFile(ConfigModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    global_: PipelineConfig = Field(alias="global")
    plugins: dict[str, dict] = Field(default_factory=dict)


def _format_errors(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        field = ".".join(str(p) for p in err["loc"])
        parts.append(f"'{field}': {err['msg']}" if field else err["msg"])
    return ", ".join(parts)


def get_default_config_path(cwd=None):
    return os.path.join(cwd or os.getcwd(), DEFAULTS["config_file"])


def load_config(config_path) -> ConfigFile:
    """Load and validate the config file.

    Raises:
        ConfigValidationError: missing file, bad YAML, or schema violations.
    """
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigValidationError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML syntax: {e}")

    try:
        return ConfigFile.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid configuration file: {_format_errors(e)}")


def validate_plugin_config(plugin_id, raw, model):
    """Validate one plugin section against its pydantic model."""
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigValidationError(
            f"Invalid configuration for plugin '{plugin_id}': {_format_errors(e)}",
            plugin_id=plugin_id,
        )


def get_plugin_config(config_file: ConfigFile, plugin_id, model):
    return validate_plugin_config(plugin_id, config_file.plugins.get(plugin_id, {}), model)
