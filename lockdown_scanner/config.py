# lockdown_scanner/config.py
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

import yaml
from platformdirs import user_data_path

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"

APP_NAME = "LockDownScanner"
APP_AUTHOR = "LockDown"

GITHUB_TOKEN_ENV_VAR = "GITHUB_TOKEN"
DB_PATH_ENV_VAR = "LOCKDOWN_DB_PATH"


def default_database_path() -> Path:
    """Cross-platform location of the scan database."""
    try:
        data_dir = user_data_path(appname=APP_NAME, appauthor=APP_AUTHOR, ensure_exists=True)
        return data_dir / "lockdown.sqlite"
    except OSError as e:
        logger.warning(f"Could not create user data directory ({e}); falling back to ./lockdown_local.sqlite")
        return Path("./lockdown_local.sqlite").resolve()


@dataclass(frozen=True)
class ScannerConfig:
    github_api_base: str = "https://api.github.com"
    osv_batch_url: str = "https://api.osv.dev/v1/querybatch"
    osv_vuln_url: str = "https://api.osv.dev/v1/vulns/"
    github_token: Optional[str] = None
    user_agent: str = "LockDown-Security-Scanner"
    # Seconds; applied to every outbound request
    http_timeout: float = 30.0
    max_workers: int = 4
    max_code_files: int = 200
    max_file_size: int = 200_000
    fetch_vuln_details: bool = True
    database_path: Optional[str] = None

    def resolved_database_path(self) -> Path:
        if self.database_path:
            return Path(self.database_path)
        return default_database_path()


def _coerce(name: str, value, default):
    """Casts a YAML value to the type of the field default, or keeps the default."""
    if default is None:
        return value
    if value is None:
        return default
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        return type(default)(value)
    except (TypeError, ValueError):
        logger.warning(f"Config key '{name}' has invalid value {value!r}; using default {default!r}")
        return default


def config_from_mapping(data: dict) -> ScannerConfig:
    base = ScannerConfig()
    known = {f.name: getattr(base, f.name) for f in fields(ScannerConfig)}
    overrides = {}
    for key, value in data.items():
        if key not in known:
            logger.debug(f"Ignoring unknown config key '{key}'")
            continue
        overrides[key] = _coerce(key, value, known[key])
    return replace(base, **overrides)


def load_config(config_path: str = CONFIG_FILENAME) -> ScannerConfig:
    """Loads scanner settings from a YAML file, then applies environment overrides."""
    loaded: dict = {}
    path = Path(config_path)
    if path.is_file():
        logger.info(f"Loading configuration from '{path.resolve()}'")
        try:
            with open(path, 'r', encoding='utf-8') as f:
                content = yaml.safe_load(f)
            if isinstance(content, dict):
                loaded = content
            else:
                logger.warning(f"Config file '{path.resolve()}' does not contain a mapping; using defaults.")
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration file '{path.resolve()}': {e}")
    else:
        logger.info(f"Configuration file '{config_path}' not found. Using defaults/environment.")

    config = config_from_mapping(loaded)

    env_token = os.environ.get(GITHUB_TOKEN_ENV_VAR)
    if env_token:
        config = replace(config, github_token=env_token)
    env_db = os.environ.get(DB_PATH_ENV_VAR)
    if env_db:
        config = replace(config, database_path=env_db)
    return config
