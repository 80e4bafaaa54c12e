"""
Loads and saves job configuration from/to YAML files.

File I/O lives here; validation rules live in the schema.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml
from pydantic import ValidationError

from ..core.errors import ConfigurationError
from .schema import DedupeConfig

logger = logging.getLogger(__name__)


def config_from_dict(data: Mapping[str, Any]) -> DedupeConfig:
    """
    Validate a dictionary against the DedupeConfig schema.

    Args:
        data: Configuration data

    Returns:
        A validated DedupeConfig

    Raises:
        ConfigurationError: If the data fails validation
    """
    try:
        return DedupeConfig.model_validate(dict(data))
    except ValidationError as e:
        logger.error(f"Configuration validation failed:\n{e}")
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def load_raw_config(config_path: Path | str) -> Dict[str, Any]:
    """
    Load unvalidated configuration data from a YAML file.

    Args:
        config_path: Path to the YAML file

    Returns:
        Dictionary with the raw file contents

    Raises:
        ConfigurationError: If the file is missing or is not a YAML mapping
    """
    config_path = Path(config_path)
    if not config_path.exists():
        logger.error(f"Configuration file not found at: {config_path}")
        raise ConfigurationError(f"Configuration file not found at: {config_path}")

    logger.info(f"Loading configuration from: {config_path}")
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping at the top level")
    return data


def load_config(config_path: Path | str) -> DedupeConfig:
    """
    Load and validate a configuration file.

    Args:
        config_path: Path to the YAML file

    Returns:
        A validated DedupeConfig

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    return config_from_dict(load_raw_config(config_path))


def save_config(config: DedupeConfig, path: Path | str) -> None:
    """
    Save a DedupeConfig to a YAML file.

    Args:
        config: Configuration to save
        path: Output path
    """
    if not isinstance(config, DedupeConfig):
        raise TypeError("Input must be a DedupeConfig instance to save.")

    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Saving configuration to: {output_path}")
    with open(output_path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(
            config.to_dict(),
            f,
            default_flow_style=False,
            sort_keys=False,
            indent=2
        )
