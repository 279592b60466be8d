import yaml
from pathlib import Path
from typing import Optional
from .models import AppConfig

DEFAULT_CONFIG_PATH = Path("conf/hvc.yaml")


def load_config(config_path: Optional[Path]) -> AppConfig:
    """Loads YAML config into AppConfig.

    A missing file is only an error when the caller asked for a non-default
    path; the default location falls back to built-in defaults.
    """
    if config_path is None:
        return AppConfig()
    if not config_path.exists():
        if config_path == DEFAULT_CONFIG_PATH:
            return AppConfig()
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    return AppConfig(**data)
