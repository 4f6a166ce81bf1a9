import os
import yaml
from pathlib import Path
from typing import Dict, Any, Union
from .models import PackagerConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "TRANSCODED_FOLDER_PATH": "paths.output_root",
    "VIDEO_FOLDER_PATH": "paths.watch_root",
    "PORT": "server.port",
    "MAX_CONCURRENT_JOBS": "scheduler.max_concurrent_jobs",
    "HWACCEL_ENABLED": "encoding.hwaccel_enabled",
    "QUALITY_PROFILE": "encoding.quality_profile",
}


def get_config_value(config: Union[PackagerConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: PackagerConfig model or dict
        path: Dot-separated path like "encoding.segment_duration_s"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, PackagerConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ=None) -> Dict[str, Any]:
    """Build a nested override dict from recognised environment variables.

    Values stay strings; pydantic coerces them ("true", "4", ...) on validation.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value in (None, ""):
            continue
        section, key = path.split(".")
        overrides.setdefault(section, {})[key] = value
    return overrides


def resolve_config(cli_args: Dict[str, Any] = None, environ=None) -> PackagerConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic PackagerConfig model.

    Raises:
        pydantic.ValidationError: If the merged settings are invalid
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    config = PackagerConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
