"""Persisted configuration management."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from .models import APP_DIR, Config

CONFIG_PATH = (APP_DIR / "config.json").expanduser()

ENV_OVERRIDES = {
    "ASSEMBLYAI_API_KEY": "assemblyai_api_key",
    "LLAMA_CLOUD_API_KEY": "llama_cloud_api_key",
    "OPENAI_API_KEY": "openai_api_key",
    "GROK_API_KEY": "grok_api_key",
    "GEMINI_API_KEY": "gemini_api_key",
    "VOYAGE_API_KEY": "voyage_api_key",
    "WONBIZ_JWT_SECRET": "jwt_secret",
    "WONBIZ_DB_PATH": "db_path",
    "WONBIZ_SERVER_URL": "server_url",
}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


def _read_file() -> dict:
    if not CONFIG_PATH.exists():
        return {}
    try:
        payload = json.loads(CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Configuration file must contain a JSON object")
    return payload


def _check_keys(payload: dict) -> dict:
    known = {f.name for f in fields(Config)}
    unknown = set(payload) - known
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
    return payload


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Load the configuration file and apply environment overrides."""

    payload = _check_keys(_read_file())

    env = os.environ if environ is None else environ
    for variable, key in ENV_OVERRIDES.items():
        value = env.get(variable)
        if value:
            payload[key] = value
    return Config(**payload)


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(config).items() if v is not None}
    CONFIG_PATH.write_text(json.dumps(data, indent=2))


def update_config(**kwargs: Any) -> Config:
    config = Config(**_check_keys(_read_file()))
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            raise ConfigError(f"Unknown configuration key: {key}")
    save_config(config)
    return config


def ensure_db_dir(config: Config) -> Path:
    path = Path(config.db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path
