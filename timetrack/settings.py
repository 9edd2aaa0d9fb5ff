"""ConfigManager — environment profiles, layered settings and logging setup."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from timetrack import config as defaults

logger = logging.getLogger(__name__)

# All known configuration keys with defaults
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "TIMETRACK_ENV": {"default": "development", "description": "Environment profile"},
    "TIMETRACK_DATA_DIR": {"default": str(defaults.DEFAULT_DATA_DIR), "description": "Directory holding user documents"},
    "TIMETRACK_LOG_LEVEL": {"default": "INFO", "description": "Logging level"},
    "TIMETRACK_CLIENT_TIMEOUT": {"default": defaults.CLIENT_TIMEOUT, "description": "Client liveness / stale lock timeout (seconds)"},
    "TIMETRACK_LOCK_WAIT": {"default": defaults.LOCK_WAIT_TIME, "description": "Maximum wait for the write lock (seconds)"},
    "TIMETRACK_RETENTION_DAYS": {"default": defaults.RETENTION_DAYS, "description": "Purge documents untouched for this many days"},
    "TIMETRACK_USERNAME": {"default": "admin", "description": "Login user name"},
    "TIMETRACK_PASSWORD": {"default": "admin", "description": "Login password (secret)"},
    "TIMETRACK_SERVER_URL": {"default": "http://localhost:5000", "description": "Server base URL used by the sync client"},
    "TIMETRACK_POLL_INTERVAL": {"default": defaults.POLL_INTERVAL, "description": "Change polling interval (seconds)"},
}

_PROFILES: dict[str, dict[str, str]] = {
    "development": {
        "TIMETRACK_ENV": "development",
        "TIMETRACK_LOG_LEVEL": "DEBUG",
    },
    "production": {
        "TIMETRACK_ENV": "production",
        "TIMETRACK_LOG_LEVEL": "WARNING",
        "TIMETRACK_DATA_DIR": "/app/data",
    },
    "testing": {
        "TIMETRACK_ENV": "testing",
        "TIMETRACK_LOG_LEVEL": "DEBUG",
        "TIMETRACK_LOCK_WAIT": "1",
    },
}


class Settings(BaseModel):
    """Typed view of the merged configuration."""

    env: str = "development"
    data_dir: Path = defaults.DEFAULT_DATA_DIR
    log_level: str = "INFO"
    client_timeout: float = defaults.CLIENT_TIMEOUT
    lock_wait: float = defaults.LOCK_WAIT_TIME
    retention_days: int = defaults.RETENTION_DAYS
    username: str = "admin"
    password: str = "admin"
    server_url: str = "http://localhost:5000"
    poll_interval: float = defaults.POLL_INTERVAL

    @classmethod
    def from_config(cls, config: dict[str, str]) -> Settings:
        """Build settings from a flat ``TIMETRACK_*`` dict."""
        values = {
            key[len("TIMETRACK_"):].lower(): value
            for key, value in config.items()
            if key.startswith("TIMETRACK_")
        }
        return cls.model_validate(values)


class ConfigManager:
    """Manage timetrack configuration across environments."""

    def __init__(self) -> None:
        self.sources: dict[str, str] = {}

    def generate_env_template(self, project_path: str | Path) -> Path:
        """Create .env.example with all config keys.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        env_path = root / ".env.example"

        lines = ["# timetrack configuration template", "# Copy to .env and fill in values", ""]
        for key, info in _CONFIG_KEYS.items():
            lines.append(f"# {info['description']}")
            lines.append(f"{key}={info['default']}")
            lines.append("")

        env_path.write_text("\n".join(lines), encoding="utf-8")
        return env_path

    def load_config(self, project_path: str | Path) -> dict[str, str]:
        """Load merged config: defaults -> profile -> config.json -> .env -> env vars.

        Returns a flat dict of configuration values.  After the call
        :attr:`sources` names the layer each value came from.
        """
        root = Path(project_path)
        defaults_layer = {key: str(info["default"]) for key, info in _CONFIG_KEYS.items()}
        env_layer = {key: os.environ[key] for key in _CONFIG_KEYS if key in os.environ}
        env_name = env_layer.get("TIMETRACK_ENV", defaults_layer["TIMETRACK_ENV"])

        layers = [
            ("defaults", defaults_layer),
            (f"profile:{env_name}", _PROFILES.get(env_name, {})),
            ("config.json", _read_json_layer(root / ".timetrack" / "config.json")),
            (".env", _read_env_layer(root / ".env")),
            ("environment", env_layer),
        ]

        config: dict[str, str] = {}
        self.sources = {}
        for name, layer in layers:
            for key, value in layer.items():
                config[key] = value
                self.sources[key] = name

        for key in sorted(config):
            if key in _CONFIG_KEYS and self.sources[key] != "defaults":
                logger.debug("%s set by %s", key, self.sources[key])
        return config

    def load_settings(self, project_path: str | Path) -> Settings:
        """Load the merged config as a :class:`Settings` instance.

        Raises ValueError naming the offending keys and the layer that
        set them when a value does not fit its field.
        """
        config = self.load_config(project_path)
        try:
            return Settings.from_config(config)
        except ValidationError as exc:
            bad = []
            for error in exc.errors():
                key = f"TIMETRACK_{str(error['loc'][0]).upper()}"
                bad.append(f"{key}={config.get(key)!r} (from {self.sources.get(key, '?')})")
            raise ValueError(f"Invalid configuration: {', '.join(bad)}") from exc


def _read_json_layer(path: Path) -> dict[str, str]:
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        logger.warning("Could not read %s", path, exc_info=True)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: expected a JSON object", path)
        return {}
    return {str(k): str(v) for k, v in data.items()}


def _read_env_layer(path: Path) -> dict[str, str]:
    if not path.is_file():
        return {}
    values: dict[str, str] = {}
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        logger.warning("Could not read %s", path, exc_info=True)
        return {}
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def configure_logging(settings: Settings) -> None:
    """Apply the configured log level to the ``timetrack`` logger tree."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("timetrack").setLevel(level)
