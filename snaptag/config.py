"""
Configuration management for snaptag stores.

The configuration is stored as a TOML file in the store directory.
It selects the timer backend, the default search match mode, and
whether the operations log is written.
"""

import os
import tomllib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import tomli_w


CONFIG_FILENAME = "snaptag.toml"
CONFIG_VERSION = 1
DATABASE_FILENAME = "snaptag.db"

TIMER_BACKENDS = ("thread", "null")
MATCH_MODES = ("exact", "prefix", "substring")


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = ""
    timer_backend: str = "thread"
    default_match: str = "exact"
    ops_log: bool = True

    def __post_init__(self) -> None:
        if not self.created:
            self.created = datetime.now(timezone.utc).isoformat()

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        """Path to the SQLite record store."""
        return self.path / DATABASE_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """
    Store directory: SNAPTAG_STORE_PATH if set, else ~/.snaptag.
    """
    env = os.environ.get("SNAPTAG_STORE_PATH")
    if env:
        return Path(env).expanduser().resolve()
    return Path.home() / ".snaptag"


def _validate(config: StoreConfig) -> StoreConfig:
    if config.timer_backend not in TIMER_BACKENDS:
        raise ValueError(
            f"Unknown timer backend {config.timer_backend!r} (expected one of {TIMER_BACKENDS})"
        )
    if config.default_match not in MATCH_MODES:
        raise ValueError(
            f"Unknown match mode {config.default_match!r} (expected one of {MATCH_MODES})"
        )
    return config


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with defaults."""
    return StoreConfig(path=store_path)


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    return _validate(StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        timer_backend=data.get("timers", {}).get("backend", "thread"),
        default_match=data.get("search", {}).get("default_match", "exact"),
        ops_log=bool(data.get("logging", {}).get("ops_log", True)),
    ))


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    _validate(config)
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "timers": {"backend": config.timer_backend},
        "search": {"default_match": config.default_match},
        "logging": {"ops_log": config.ops_log},
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    else:
        config = create_default_config(store_path)
        save_config(config)
        return config
