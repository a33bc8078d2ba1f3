import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

# Keys every deployment must define; everything else has a code default.
REQUIRED_KEYS = {
    'exchange': ('symbol',),
    'strategy': (
        'bb_factor',
        'smoothing_const',
        'window_size',
        'velocity_window_size',
        'stop_loss_threshold',
    ),
}


class ConfigError(RuntimeError):
    pass


def _wrap(value: Any) -> Any:
    if isinstance(value, dict):
        return SectionProxy(value)
    return value


class SectionProxy(Mapping):
    """Read-only view of one config section; nested dicts come back wrapped."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        if name not in self._data or self._data[name] is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    """YAML configuration with ``${ENV_VAR}`` / ``${ENV_VAR:-default}`` expansion.

    The file defaults to ``config.yaml`` next to this module; ``BOT_CONFIG_PATH``
    overrides it. Expanded values are parsed as YAML scalars, so
    ``simulation: ${BOT_SIMULATION:-true}`` yields a bool rather than a string.
    """

    def __init__(self, config_path: Optional[str] = None):
        path = config_path or os.getenv('BOT_CONFIG_PATH') or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{self.config_path} must contain a mapping at the top level")
        data = self._resolve_env_vars(raw)
        self._validate(data)
        return data

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str) and node.startswith('${') and node.endswith('}'):
            env_key, _, default = node[2:-1].partition(':-')
            value = os.getenv(env_key, default)
            if value in (None, ''):
                return None
            return self._coerce(value)
        return node

    @staticmethod
    def _coerce(value: str) -> Any:
        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            return value
        # Only scalars; a secret that happens to look like a list stays text.
        if isinstance(parsed, (bool, int, float)):
            return parsed
        return value

    def _validate(self, data: Dict[str, Any]) -> None:
        missing = []
        for section, keys in REQUIRED_KEYS.items():
            if section not in data:
                continue
            block = data.get(section) or {}
            missing.extend(f"{section}.{key}" for key in keys if block.get(key) is None)
        if missing:
            raise ConfigError(f"{self.config_path} is missing required keys: {', '.join(missing)}")

    def require(self, *sections: str) -> None:
        absent = [name for name in sections if not self._data.get(name)]
        if absent:
            raise ConfigError(f"{self.config_path} has no section(s): {', '.join(absent)}")

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        return _wrap(value)

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
