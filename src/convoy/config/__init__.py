"""Configuration loading for Convoy."""

from convoy.config.env_loader import get_env_var, load_env_file, substitute_env_vars
from convoy.config.loader import ConfigLoader, find_config_path, write_example_config

__all__ = [
    "ConfigLoader",
    "find_config_path",
    "get_env_var",
    "load_env_file",
    "substitute_env_vars",
    "write_example_config",
]
