from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

CONFIG_FILE = "modelbind.yaml"
ON_ERROR_CHOICES = ("stop", "skip")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class GeneratorConfig:
    model_info: str = "model-info.json"
    binding_suffix: str = "_mb"
    on_error: str = "stop"
    exclude: List[str] = field(default_factory=list)
    log_level: str = "WARNING"


_FIELD_TYPES = {
    "model_info": str,
    "binding_suffix": str,
    "on_error": str,
    "exclude": list,
    "log_level": str,
}


def config_from_dict(data: Dict[str, Any]) -> GeneratorConfig:
    for key, value in data.items():
        expected = _FIELD_TYPES.get(key)
        if expected is None:
            raise ValueError(f"Unknown config key: {key}")
        if not isinstance(value, expected):
            raise ValueError(f"Config key '{key}' must be a {expected.__name__}.")

    config = GeneratorConfig(**data)
    if config.on_error not in ON_ERROR_CHOICES:
        raise ValueError(f"Config key 'on_error' must be one of {', '.join(ON_ERROR_CHOICES)}.")
    config.log_level = config.log_level.upper()
    if config.log_level not in LOG_LEVELS:
        raise ValueError(f"Config key 'log_level' must be one of {', '.join(LOG_LEVELS)}.")
    if not all(isinstance(pattern, str) for pattern in config.exclude):
        raise ValueError("Config key 'exclude' must be a list of glob patterns.")
    if not config.binding_suffix:
        raise ValueError("Config key 'binding_suffix' must not be empty.")
    return config


def load_config(path: Optional[str] = None, search_dir: Optional[str] = None) -> GeneratorConfig:
    """Load ``modelbind.yaml``.

    An explicit ``path`` must exist. Without one, ``search_dir`` (default the
    working directory) is checked and defaults apply when no file is there.
    """
    if path is None:
        candidate = Path(search_dir or ".") / CONFIG_FILE
        if not candidate.exists():
            return GeneratorConfig()
        config_path = candidate
    else:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

    with config_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)

    if data is None:
        return GeneratorConfig()

    if not isinstance(data, dict):
        raise ValueError("Config YAML must parse to an object/map at root.")

    return config_from_dict(data)
