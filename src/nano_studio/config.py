import yaml
from pathlib import Path
from typing import Any, Dict, Union

from pydantic import ValidationError

from .exceptions import ConfigError
from .models import StudioConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def get_config_value(config: Union[StudioConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: StudioConfig model or dict
        path: Dot-separated path like "remote.base_url"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, StudioConfig):
        # Convert to dict for uniform access
        config = config.model_dump()

    # Navigate nested dict
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
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Dict[str, Any] = None,
    default_path: Path = DEFAULT_CONFIG_PATH,
    local_path: Path = LOCAL_CONFIG_PATH,
) -> StudioConfig:
    """
    Resolve config: Built-in defaults < Default YAML < Local YAML < CLI
    Returns validated Pydantic StudioConfig model.

    Raises:
        ConfigError: If a YAML file is malformed or the merged config is invalid
    """
    cli_args = cli_args or {}

    # 1. Load default YAML
    config_data = load_yaml(Path(default_path))

    # 2. Merge local overrides
    local_data = load_yaml(Path(local_path))
    config_data = merge_dicts(config_data, local_data)

    try:
        # 3. Create validated Pydantic model
        config = StudioConfig.from_dict(config_data)

        # 4. Apply CLI overrides
        return config.merge_cli_overrides(cli_args)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
