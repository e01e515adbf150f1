"""Configuration defaults and loading for the form discovery engine."""

import copy
import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# All timeouts are in milliseconds
DEFAULT_CONFIG: Dict[str, Any] = {
    "timeouts": {
        "navigation": 20000,
        "settle": 10000,          # await_settled bound used by discovery
        "option_resolution": 4000,
        "overlay_close": 1500,
        "confirmation": 15000,
        "manual_submission": 600000,   # review-and-submit window of the filler
        "interaction": 3000,
    },
    "polling": {
        "poll_interval": 50,
        "quiet_interval": 150,
    },
    "limits": {
        "max_retries": 2,
        "max_rediscovery": 5,
        "max_confirmation_attempts": 1,
    },
    "browser": {
        "headless": True,
        "viewport": {"width": 1366, "height": 960},
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
        ),
    },
}


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value
    return target


def build_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return a fresh copy of the defaults with ``overrides`` merged in."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    if overrides:
        _deep_merge(config, overrides)
    return config


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a JSON file and merge it over the defaults.

    Args:
        config_path: Path to a JSON file. ``None`` returns the defaults.

    Returns:
        Merged configuration dictionary
    """
    if not config_path:
        return build_config()

    if not os.path.exists(config_path):
        logger.warning(f"Configuration file not found at {config_path}. Using defaults.")
        return build_config()

    with open(config_path, "r", encoding="utf-8") as f:
        user_config = json.load(f)

    logger.info(f"Loaded configuration from {config_path}")
    return build_config(user_config)
