"""Provides functions for loading and accessing configuration settings.

Supports loading from .env files, environment variables, and a YAML
configuration file (~/.cardstats/config.yaml). Keys are dotted
('rate_limit.max_requests'); nested YAML mappings are flattened into them.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
DEFAULT_CONFIG_DIR = Path.home() / ".cardstats"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
ENV_FILE_NAME = ".env"
ENV_PREFIX = "CARDSTATS_"

DEFAULTS: Dict[str, Any] = {
    "listing.base_url": "https://mangabuff.ru",
    "listing.timeout_seconds": 10.0,
    "storage.dir": str(DEFAULT_CONFIG_DIR / "storage"),
    "storage.max_value_bytes": 8 * 1024 * 1024,
    "rate_limit.max_requests": 70,
    "rate_limit.window_seconds": 60.0,
    "retry.max_attempts": 3,
    "retry.base_delay_seconds": 1.0,
    "retry.max_delay_seconds": 10.0,
    "retry.throttle_delay_seconds": 15.0,
    "retry.throttle_max_attempts": 3,
    "batch.size": 4,
    "batch.pause_seconds": 5.0,
    "cache.manual_cooldown_seconds": 3600.0,
    "cache.error_cooldown_seconds": 300.0,
    "cache.save_debounce_seconds": 2.0,
    "logging.level": "WARNING",
    "logging.file": None,
    "logging.format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}

# --- Global Configuration Store ---
_config: Dict[str, Any] = {}
_test_config: Dict[str, Any] = {}
_loaded = False

def _flatten(mapping: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in mapping.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat

def env_var_name(key: str) -> str:
    """'rate_limit.max_requests' -> 'CARDSTATS_RATE_LIMIT_MAX_REQUESTS'."""
    return f"{ENV_PREFIX}{key.upper().replace('.', '_')}"

def load_configuration(config_file: Path = DEFAULT_CONFIG_FILE, env_file: Optional[Path] = None) -> None:
    """Loads configuration from environment, .env file, and YAML file.

    Priority order (highest to lowest):
    1. Environment Variables
    2. .env file
    3. YAML configuration file
    4. DEFAULTS

    Args:
        config_file: Path to the YAML configuration file.
        env_file: Path to the .env file (searches upwards from cwd if None).
    """
    global _config, _loaded
    if _loaded:
        logger.debug("Configuration already loaded.")
        return

    _config = {}

    # 1. YAML file (lowest priority)
    if config_file.exists():
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                yaml_config = yaml.safe_load(f)
            if isinstance(yaml_config, dict):
                _config.update(_flatten(yaml_config))
                logger.info(f"Loaded configuration from YAML: {config_file}")
            elif yaml_config is not None:
                logger.warning(f"YAML config file {config_file} did not contain a mapping.")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load or parse YAML config {config_file}: {e}")
    else:
        logger.debug(f"YAML config file not found: {config_file}")

    # 2. .env file; override=False keeps real environment variables on top
    dotenv_path = env_file or find_dotenv_path()
    if dotenv_path:
        if load_dotenv(dotenv_path=dotenv_path, override=False):
            logger.info(f"Loaded environment variables from: {dotenv_path}")
    else:
        logger.debug("No .env file found at or above the current directory.")

    _loaded = True

def reload_configuration(config_file: Path = DEFAULT_CONFIG_FILE, env_file: Optional[Path] = None) -> None:
    global _loaded
    _loaded = False
    load_configuration(config_file, env_file)

def _coerce(value: str) -> Any:
    if value.lower() == 'true':
        return True
    if value.lower() == 'false':
        return False
    try:
        return float(value) if '.' in value else int(value)
    except ValueError:
        return value

def get_config(key: str, default: Any = None) -> Any:
    """
    Get a configuration value by dotted key.

    Priority:
    1. Test configuration
    2. Environment variable (CARDSTATS_<KEY>)
    3. YAML config
    4. default argument, then DEFAULTS
    """
    if key in _test_config:
        return _test_config[key]

    env_key = env_var_name(key)
    if env_key in os.environ:
        return _coerce(os.environ[env_key])

    if key in _config:
        return _config[key]

    if default is not None:
        return default
    return DEFAULTS.get(key)

def get_int(key: str, default: Optional[int] = None) -> int:
    value = get_config(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Config '{key}' is not an integer ({value!r}); using default")
        return int(default if default is not None else DEFAULTS[key])

def get_float(key: str, default: Optional[float] = None) -> float:
    value = get_config(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Config '{key}' is not a number ({value!r}); using default")
        return float(default if default is not None else DEFAULTS[key])

def find_dotenv_path() -> Optional[Path]:
    """Searches for the .env file upwards from the current directory."""
    cwd = Path.cwd()
    for path in [cwd] + list(cwd.parents):
        env_path = path / ENV_FILE_NAME
        if env_path.is_file():
            return env_path
    return None

def set_config(key: str, value: Any) -> None:
    """Sets a configuration value for this process and its children.

    Args:
        key: Configuration key (e.g., 'logging.level')
        value: Value to set
    """
    _config[key] = value
    env_var = env_var_name(key)
    os.environ[env_var] = str(value)
    logger.debug(f"Config set: {key}={value}, environment variable: {env_var}")

def set_config_for_testing(config_dict: Dict[str, Any]) -> None:
    """
    Set configuration values for testing purposes.
    These values override every other source.
    """
    _test_config.update(config_dict)
    logger.debug(f"Set testing configuration: {config_dict}")

def clear_test_config() -> None:
    """Clear all testing configuration values."""
    _test_config.clear()
    logger.debug("Cleared testing configuration")

# Load configuration when the module is imported
load_configuration()
