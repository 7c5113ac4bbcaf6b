"""Controller settings loaded from an optional YAML file.

```yaml
defaults:
  username: admin
  password_env: UNIFI_PASSWORD
  verify_ssl: false
  schema_dir: ./schemas

controllers:
  192.168.1.1:
    site: default
    concurrency: 8
  udm:
    host: udm.lan
    unifi_os: true
```

Values resolve in this order: built-in defaults, the file's ``defaults``,
the controller's own entry, then ``UNIFI_*`` environment variables.
"""
import logging
import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Optional

import yaml

from ..controller.base import ControllerConfig

logger = logging.getLogger(__name__)

# Environment variable -> (setting, converter)
ENV_OVERRIDES = {
    "UNIFI_USERNAME": ("username", str),
    "UNIFI_SITE": ("site", str),
    "UNIFI_PORT": ("port", int),
    "UNIFI_VERIFY_SSL": ("verify_ssl", lambda v: v.strip().lower() in ("1", "true", "yes", "on")),
    "UNIFI_OS": ("unifi_os", lambda v: v.strip().lower() in ("1", "true", "yes", "on")),
    "UNIFI_SCHEMA_DIR": ("schema_dir", str),
    "UNIFI_SCHEMA_VERSION": ("schema_version", str),
    "UNIFI_SECRETS_DIR": ("secrets_dir", str),
    "UNIFI_CONCURRENCY": ("concurrency", int),
}


class Settings:
    """Controller settings from YAML plus environment overrides."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._find_config()
        self._config: dict = {}
        if self.config_path:
            self._load_config()

    @staticmethod
    def _find_config() -> Optional[str]:
        """Find the settings file; running without one is fine."""
        search_paths = [
            Path.cwd() / "configs" / "unifi-converge.yaml",
            Path.cwd() / "unifi-converge.yaml",
            Path.home() / ".config" / "unifi-converge" / "settings.yaml",
            Path("/etc/unifi-converge/settings.yaml"),
        ]

        for path in search_paths:
            if path.exists():
                return str(path)
        return None

    def _load_config(self) -> None:
        """Load the YAML configuration."""
        with open(self.config_path, encoding="utf-8") as f:
            self._config = yaml.safe_load(f) or {}
        if not isinstance(self._config, dict):
            raise ValueError(f"{self.config_path}: settings must be a mapping")
        logger.debug(f"Loaded settings from {self.config_path}")

    def get_controller_ids(self) -> list[str]:
        return list(self._config.get("controllers", {}) or {})

    def _entry(self, host: str) -> dict:
        controllers = self._config.get("controllers", {}) or {}
        if host in controllers:
            return dict(controllers[host] or {})
        for entry in controllers.values():
            if isinstance(entry, dict) and entry.get("host") == host:
                return dict(entry)
        return {}

    def get_controller_config(self, host: str) -> ControllerConfig:
        """Build the ControllerConfig for a host or controller alias."""
        values: dict[str, Any] = {}
        values.update(self._config.get("defaults", {}) or {})
        values.update(self._entry(host))
        values.setdefault("host", host)

        for var, (key, convert) in ENV_OVERRIDES.items():
            raw = os.environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                values[key] = convert(raw)
            except ValueError:
                logger.warning(f"Ignoring {var}={raw!r}: not a valid {key}")

        known = {f.name for f in fields(ControllerConfig)}
        unknown = sorted(set(values) - known)
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(unknown)}")
        return ControllerConfig(**{k: v for k, v in values.items() if k in known})


def load_settings(host: str, config_path: Optional[str] = None) -> ControllerConfig:
    """Load the ControllerConfig for ``host``."""
    return Settings(config_path).get_controller_config(host)
