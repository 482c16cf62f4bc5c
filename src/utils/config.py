import copy
import os
import re
from typing import Any, Dict

import yaml

from utils.errors import ConfigError

DEFAULTS: Dict[str, Any] = {
    'database': {
        'url': 'sqlite:///./data/logward.db',
    },
    'redis': {
        'host': 'localhost',
        'port': 6379,
        'db': 0,
        'password': None,
    },
    'detection': {
        'case_sensitive': False,
        'rule_cache_ttl': 30,
    },
    'scheduler': {
        'interval_seconds': 60,
        'run_on_start': True,
    },
    'alerting': {
        'distributed_lock': False,
        'lock_timeout': 120,
    },
    'queues': {
        'notifications': 'alert-notifications',
        'detection': 'sigma-detection',
        'max_attempts': 3,
        'block_timeout': 5,
    },
    'notifications': {
        'webhook_timeout': 10,
        'max_retries': 3,
        'retry_delay': 1,
        'dedup_window': 3600,
        'use_redis': True,
        'smtp': {
            'host': None,
            'port': 587,
            'user': None,
            'password': None,
            'from': None,
            'use_tls': True,
        },
    },
    'logging': {
        'level': 'INFO',
        'file': None,
    },
}

_ENV_VAR_RE = re.compile(r'\$\{([^}]+)\}')


def expand_env_vars(content: str) -> str:
    """Expand ${VAR_NAME} references; unset variables become empty strings."""
    def expand_env_var(match):
        var_name = match.group(1)
        return os.environ.get(var_name, '')

    return _ENV_VAR_RE.sub(expand_env_var, content)


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if value is None and key in merged:
            # Empty values (e.g. an unset ${VAR}) keep the default.
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: str) -> Dict[str, Any]:
    """Load YAML configuration file with environment variable expansion."""
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found at {path}")

    with open(path, 'r') as f:
        content = expand_env_vars(f.read())

    try:
        loaded = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    return deep_merge(DEFAULTS, loaded)
