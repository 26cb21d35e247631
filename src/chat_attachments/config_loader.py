"""Configuration loading with clear priority hierarchy.

Configuration is loaded in the following priority order (lowest to highest):
1. Pydantic model defaults (defined in config_models.py)
2. config.yaml file
3. Environment variables (a .env file is loaded first when present)
4. CLI arguments (applied after load_config returns)
"""

from __future__ import annotations

import copy
import logging
import os
import pathlib
from dataclasses import dataclass
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from .config_models import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.yaml"


@dataclass
class EnvVarMapping:
    """Defines how an environment variable maps to a config path.

    Attributes:
        env_var: Environment variable name
        config_path: Dot-separated path in config dict (e.g., "store.storage_path")
        value_type: Type to convert the value to (str, int, float, bool, list, dict)
        list_separator: Separator for list values (default ",")
        dict_separator: Separator for dict key:value pairs (default ":")
    """

    env_var: str
    config_path: str
    value_type: type = str
    list_separator: str = ","
    dict_separator: str = ":"


ENV_VAR_MAPPINGS: list[EnvVarMapping] = [
    # Store
    EnvVarMapping("ATTACHMENT_STORE_BACKEND", "store.backend"),
    EnvVarMapping("ATTACHMENT_STORAGE_PATH", "store.storage_path"),
    # Transport
    EnvVarMapping("ATTACHMENT_TRANSPORT_URL", "transport.base_url"),
    EnvVarMapping("ATTACHMENT_TRANSPORT_TIMEOUT", "transport.timeout_seconds", float),
    EnvVarMapping("ATTACHMENT_TRANSPORT_CHUNK_SIZE", "transport.chunk_size", int),
    EnvVarMapping("ATTACHMENT_TRANSPORT_HEADERS", "transport.headers", dict),
    # Media info
    EnvVarMapping("ATTACHMENT_MEDIA_INFO_KINDS", "media_info.extract_kinds", list),
    EnvVarMapping(
        "ATTACHMENT_REQUIRED_MEDIA_INFO_KINDS", "media_info.required_kinds", list
    ),
    # Operations
    EnvVarMapping(
        "ATTACHMENT_STAGE_TIMEOUT", "operations.stage_timeout_seconds", float
    ),
    EnvVarMapping(
        "ATTACHMENT_MAX_TRACKED_FAILURES", "operations.max_tracked_failures", int
    ),
    EnvVarMapping("LOG_LEVEL", "log_level"),
]


def deep_merge_dicts(
    base_dict: dict[str, Any],
    merge_dict: dict[str, Any],
) -> dict[str, Any]:
    """Deeply merges merge_dict into base_dict, returning a new dictionary."""
    result = copy.deepcopy(base_dict)
    for key, value in merge_dict.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge_dicts(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def set_nested_value(data: dict[str, Any], path: str, value: Any) -> None:  # noqa: ANN401
    """Set a value at a dot-separated path, creating intermediate dicts."""
    keys = path.split(".")
    current = data
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def parse_env_value(
    value: str,
    value_type: type,
    list_separator: str = ",",
    dict_separator: str = ":",
) -> Any:  # noqa: ANN401
    """Parse an environment variable value to the specified type.

    Raises:
        ValueError: If the value cannot be converted to the target type
    """
    if value_type is str:
        return value

    if value_type is int:
        return int(value)

    if value_type is float:
        return float(value)

    if value_type is bool:
        return value.lower() in {"true", "1", "yes"}

    if value_type is list:
        return [item.strip() for item in value.split(list_separator) if item.strip()]

    if value_type is dict:
        parsed: dict[str, str] = {}
        for pair in value.split(list_separator):
            if dict_separator in pair:
                key, val = pair.split(dict_separator, 1)
                parsed[key.strip()] = val.strip()
        return parsed

    return value


def load_yaml_file(file_path: str | pathlib.Path) -> dict[str, Any]:
    """Load a YAML file, returning an empty dict if it is missing or not a mapping."""
    try:
        with open(file_path, encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        logger.info(f"{file_path} not found. Using defaults.")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing {file_path}: {e}")
        raise
    if content is None:
        return {}
    if not isinstance(content, dict):
        logger.warning(f"{file_path} is not a valid dictionary. Ignoring.")
        return {}
    return content


def apply_env_var_overrides(
    config_data: dict[str, Any],
    mappings: list[EnvVarMapping] | None = None,
) -> None:
    """Apply environment variable overrides to configuration in place.

    Args:
        config_data: The configuration dictionary to modify
        mappings: Env var mappings to apply (defaults to ENV_VAR_MAPPINGS)
    """
    if mappings is None:
        mappings = ENV_VAR_MAPPINGS

    for mapping in mappings:
        env_value = os.getenv(mapping.env_var)
        if env_value is None:
            continue
        try:
            parsed_value = parse_env_value(
                env_value,
                mapping.value_type,
                mapping.list_separator,
                mapping.dict_separator,
            )
        except ValueError as e:
            logger.error(
                f"Invalid value for {mapping.env_var}: {e}. Using previous value."
            )
            continue
        set_nested_value(config_data, mapping.config_path, parsed_value)
        logger.debug(f"Applied env var {mapping.env_var} to {mapping.config_path}")


def load_config(
    config_file_path: str | pathlib.Path = DEFAULT_CONFIG_FILE,
    load_dotenv_file: bool = True,
) -> AppConfig:
    """Load configuration from defaults, YAML and the environment.

    CLI arguments should be applied after this function returns using
    ``AppConfig.model_copy(update={...})``.

    Args:
        config_file_path: Path to the operator config YAML file (optional)
        load_dotenv_file: Whether to load a .env file first

    Returns:
        A validated AppConfig

    Raises:
        ValidationError: If configuration contains invalid keys or values
    """
    config_data = AppConfig().model_dump(mode="json")
    config_data = deep_merge_dicts(config_data, load_yaml_file(config_file_path))

    if load_dotenv_file:
        load_dotenv()
    apply_env_var_overrides(config_data)

    try:
        config = AppConfig.model_validate(config_data)
    except ValidationError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise
    logger.info(
        f"Loaded configuration: store={config.store.backend} "
        f"({config.store.storage_path}), transport={config.transport.base_url}"
    )
    return config
