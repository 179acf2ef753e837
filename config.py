"""
Hub Configuration
=================
Loads ``config/config.yaml`` (or the file named by ``HUB_CONFIG``), merges it
over built-in defaults and clamps values that would break the hub.

This module provides:
- DEFAULT_CONFIG with every section the hub reads
- load_config() / get_conf(section, key, default)
- validate_config() with logged adjustments
"""
import os
import copy
import logging
from pathlib import Path
from typing import Dict, Any, Optional

import yaml

logger = logging.getLogger("config")

DEFAULT_CONFIG_PATH = "./config/config.yaml"

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    'hub': {
        'db_path': './data/hub.db',
    },
    'logging': {
        'level': 'INFO',
        'file': 'logs/hub.log',
        'max_bytes': 1024 * 1024,
        'backup_count': 3,
    },
    'web': {
        'host': '0.0.0.0',
        'port': 8000,
    },
    'automation': {
        'execution_timeout': 300,     # seconds, 0 disables
        'purge_logs_on_delete': True,
    },
    'scheduler': {
        'timezone': 'UTC',
    },
    'retention': {
        'history_days': 30,
        'log_days': 30,
        'cleanup_interval': 3600,     # seconds
    },
    'mqtt': {
        'enabled': False,
        'broker_host': 'localhost',
        'broker_port': 1883,
        'username': None,
        'password': None,
        'base_topic': 'smarthub',
        'qos': 0,
    },
    'ai': {
        'default_provider': 'ollama',
        'timeout': 30,
        'providers': {
            'ollama': {'base_url': 'http://localhost:11434', 'model': 'llama3'},
            'openai': {'base_url': 'https://api.openai.com/v1', 'model': 'gpt-4o-mini', 'api_key': None},
            'claude': {'base_url': 'https://api.anthropic.com/v1', 'model': 'claude-3-5-haiku-latest', 'api_key': None},
            'gemini': {'base_url': 'https://generativelanguage.googleapis.com/v1beta', 'model': 'gemini-1.5-flash', 'api_key': None},
        },
    },
}

CONFIG: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)


def merge_with_user_config(base: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep-merge user overrides into a copy of ``base``.

    Unknown sections are kept so adapters can carry their own settings.
    """
    merged = copy.deepcopy(base)
    for key, value in (user or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_with_user_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and adjust configuration values.

    - automation.execution_timeout: must be >= 0
    - retention.*_days: must be >= 1
    - retention.cleanup_interval: at least 60 seconds
    - ai.default_provider: must name a configured provider
    """
    validated = copy.deepcopy(config)

    automation = validated.setdefault('automation', {})
    try:
        timeout = float(automation.get('execution_timeout', 300))
    except (TypeError, ValueError):
        logger.warning(f"Invalid automation.execution_timeout {automation.get('execution_timeout')!r}, using 300")
        timeout = 300
    if timeout < 0:
        logger.warning("automation.execution_timeout < 0, disabling timeout")
        timeout = 0
    automation['execution_timeout'] = timeout

    retention = validated.setdefault('retention', {})
    for key in ('history_days', 'log_days'):
        value = retention.get(key, 30)
        if not isinstance(value, (int, float)) or value < 1:
            logger.warning(f"retention.{key} invalid ({value!r}), setting to 1")
            retention[key] = 1
    if retention.get('cleanup_interval', 3600) < 60:
        logger.warning("retention.cleanup_interval < 60, setting to 60")
        retention['cleanup_interval'] = 60

    ai = validated.setdefault('ai', {})
    providers = ai.get('providers') or {}
    if ai.get('default_provider') not in providers:
        fallback = next(iter(providers), None)
        logger.warning(f"ai.default_provider {ai.get('default_provider')!r} not configured, using {fallback!r}")
        ai['default_provider'] = fallback

    return validated


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML and merge it over the defaults.

    A missing file yields the defaults. A malformed file is an error.
    """
    global CONFIG

    filepath = Path(path or os.environ.get("HUB_CONFIG", DEFAULT_CONFIG_PATH))
    user_config: Dict[str, Any] = {}

    if filepath.exists():
        try:
            with open(filepath, 'r') as f:
                user_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML file {filepath}: {e}")
            raise
        logger.info(f"Loaded configuration from {filepath}")
    else:
        logger.info(f"No config at {filepath}, using defaults")

    CONFIG = validate_config(merge_with_user_config(DEFAULT_CONFIG, user_config))
    return CONFIG


def get_conf(section: str, key: str, default=None):
    """Get configuration value."""
    return CONFIG.get(section, {}).get(key, default)


def get_section(section: str) -> Dict[str, Any]:
    return CONFIG.get(section, {})
