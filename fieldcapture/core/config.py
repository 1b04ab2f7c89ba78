"""Configuration for FieldCapture."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = "~/.fieldcapture/db/fieldcapture.db"
_DEFAULT_CONFIG_PATH = "~/.fieldcapture/config.yaml"

# Env var → config attribute
_ENV_OVERRIDES = {
    "FIELDCAPTURE_DB_PATH": "db_path",
    "FIELDCAPTURE_REMOTE_URL": "remote_url",
    "FIELDCAPTURE_REALTIME_URL": "realtime_url",
    "FIELDCAPTURE_API_KEY": "api_key",
    "FIELDCAPTURE_USER_ID": "user_id",
}

_FLOAT_KEYS = ("poll_interval", "sync_debounce", "request_timeout")
_STR_KEYS = ("db_path", "remote_url", "realtime_url", "api_key", "user_id", "log_level")


def config_path() -> Path:
    return Path(os.getenv("FIELDCAPTURE_CONFIG", _DEFAULT_CONFIG_PATH)).expanduser()


@dataclass
class Config:
    # Local store
    db_path: str = _DEFAULT_DB_PATH

    # Remote store
    remote_url: Optional[str] = None
    realtime_url: Optional[str] = None
    api_key: Optional[str] = None
    request_timeout: float = 10.0

    # Current user (opaque id from the auth layer)
    user_id: Optional[str] = None

    # Sync cadence
    poll_interval: float = 30.0
    sync_debounce: float = 5.0

    log_level: str = "WARNING"

    @classmethod
    def load(cls, path: Optional[str] = None) -> Config:
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path).expanduser() if path else config_path()

        data: Dict[str, Any] = {}
        if cfg_path.exists():
            try:
                with open(cfg_path) as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
                data = {}

        cfg = cls()

        for key in _STR_KEYS:
            if data.get(key):
                setattr(cfg, key, str(data[key]))
        for key in _FLOAT_KEYS:
            if key in data and data[key] is not None:
                setattr(cfg, key, float(data[key]))

        # Environment overrides
        for env_var, attr in _ENV_OVERRIDES.items():
            if value := os.getenv(env_var):
                setattr(cfg, attr, value)

        return cfg

    @classmethod
    def set_config(cls, key: str, value: Any) -> None:
        """Persist a single key into the YAML file, keeping the others."""
        cfg_path = config_path()
        data: Dict[str, Any] = {}
        if cfg_path.exists():
            data = yaml.safe_load(cfg_path.read_text()) or {}
        data[key] = value
        cfg_path.parent.mkdir(parents=True, exist_ok=True)
        cfg_path.write_text(yaml.safe_dump(data, sort_keys=True))

    @property
    def resolved_db_path(self) -> Path:
        return Path(self.db_path).expanduser()

    @property
    def resolved_realtime_url(self) -> Optional[str]:
        """Explicit realtime URL, or one derived from the REST base URL."""
        if self.realtime_url:
            return self.realtime_url
        if not self.remote_url:
            return None
        base = self.remote_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket"

    def check_remote(self) -> Optional[str]:
        """Check that a remote store is configured.

        Returns None if OK, or an error message string.
        """
        if not self.remote_url:
            return "No remote configured: set 'remote_url' in config.yaml or export FIELDCAPTURE_REMOTE_URL"
        if not self.api_key:
            return "Missing API key: set 'api_key' in config.yaml or export FIELDCAPTURE_API_KEY"
        return None
