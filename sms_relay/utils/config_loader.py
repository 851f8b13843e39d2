from pathlib import Path
from typing import Any

import yaml

from sms_relay.utils.logger import LoggerManager


class ConfigLoader:
    """
    Loads and provides access to a YAML configuration file.
    Supports nested keys via dot notation.

    A missing file is allowed when `required=False`; the loader then behaves
    like an empty mapping so defaults and environment overrides still apply.
    """

    def __init__(self, path: str | Path, required: bool = True):
        self.path = Path(path)
        self.required = required
        self.logger = LoggerManager.get_logger(__name__)
        self.config = self._load()

    def _load(self) -> dict:
        path = self.path
        if not path.exists():
            if not self.required:
                self.logger.info("config.absent", extra={"path": str(path)})
                return {}
            self.logger.error("config.missing", extra={"path": str(path)})
            raise FileNotFoundError(f"Config file not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self.logger.error(
                "config.load.fail", extra={"path": str(path), "error": str(e)}, exc_info=True
            )
            raise

        if data is None:
            data = {}
        if not isinstance(data, dict):
            self.logger.error("config.invalid_type", extra={"path": str(path)})
            raise ValueError(f"Invalid config (expected mapping) at {path}")

        self.logger.info("config.loaded", extra={"path": str(path)})
        return data

    def get(self, key: str, default: Any = None) -> Any:
        """Supports dot notation for nested access."""
        parts = key.split(".")
        val = self.config
        for part in parts:
            if isinstance(val, dict) and part in val:
                val = val[part]
            else:
                return default
        return val

    def section(self, key: str) -> dict:
        """Return a nested mapping, or an empty dict when absent."""
        val = self.get(key, {})
        return dict(val) if isinstance(val, dict) else {}

    def as_dict(self) -> dict:
        return self.config
