"""Job configuration: schema and YAML loading."""

from .schema import BlockingConfig, DedupeConfig, FieldConfig
from .loader import config_from_dict, load_config, load_raw_config, save_config

__all__ = [
    'BlockingConfig',
    'DedupeConfig',
    'FieldConfig',
    'config_from_dict',
    'load_config',
    'load_raw_config',
    'save_config',
]
