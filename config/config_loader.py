import os
from collections.abc import Mapping
from typing import Any, Dict, Optional

import yaml

_config_cache: Optional[Dict[str, Any]] = None

# Environment variables that override a config key when set.
ENV_OVERRIDES = {
    "REMOVEBG_API_KEY": ("removebg", "api_key"),
    "FIREBASE_WEB_API_KEY": ("firebase", "web_api_key"),
    "FIREBASE_PROJECT_ID": ("firebase", "project_id"),
    "FIREBASE_STORAGE_BUCKET": ("firebase", "bucket"),
    "LOG_LEVEL": ("log", "log_level"),
}


def get_project_dir():
    """Return the repository root (the directory holding config.yaml)."""
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__))) + "/"


def read_config(config_path):
    with open(config_path, "r", encoding="utf-8") as file:
        config = yaml.safe_load(file)
    return config or {}


def load_config(refresh: bool = False) -> Dict[str, Any]:
    """Load config.yaml, merge data/.config.yaml over it and apply env overrides."""
    global _config_cache
    if _config_cache is not None and not refresh:
        return _config_cache

    default_config_path = get_project_dir() + "config.yaml"
    custom_config_path = get_project_dir() + "data/.config.yaml"

    default_config = read_config(default_config_path)
    custom_config = {}
    if os.path.exists(custom_config_path):
        custom_config = read_config(custom_config_path)

    config = merge_configs(default_config, custom_config)
    apply_env_overrides(config)
    ensure_directories(config)

    _config_cache = config
    return config


def apply_env_overrides(config: Dict[str, Any], environ: Optional[Mapping] = None):
    environ = os.environ if environ is None else environ
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            config.setdefault(section, {})[key] = value
    return config


def ensure_directories(config):
    """Create the log directory when file logging is configured."""
    log_config = config.get("log", {})
    if not log_config.get("log_file"):
        return
    log_dir = os.path.join(get_project_dir(), log_config.get("log_dir", "tmp"))
    try:
        os.makedirs(log_dir, exist_ok=True)
    except PermissionError:
        print(f"Warning: cannot create directory {log_dir}, check write permissions")


def merge_configs(default_config, custom_config):
    """
    Recursively merge two config mappings; custom_config wins.

    Args:
        default_config: defaults shipped in config.yaml
        custom_config: deployment overrides

    Returns:
        The merged mapping
    """
    if not isinstance(default_config, Mapping) or not isinstance(
        custom_config, Mapping
    ):
        return custom_config

    merged = dict(default_config)

    for key, value in custom_config.items():
        if (
            key in merged
            and isinstance(merged[key], Mapping)
            and isinstance(value, Mapping)
        ):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged
