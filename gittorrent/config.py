"""
gittorrent Configuration
========================
Central configuration for the daemon and the remote helper.

[CONFIG] Sources, lowest priority first:
1. Dataclass defaults below
2. ``config.json`` in the config directory (written with defaults on first run)
3. Environment variables ``GITTORRENT_*`` (a ``.env`` file is honoured)
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigOrKeyError

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_DIR = Path.home() / ".config" / "gittorrent"
CONFIG_FILE_NAME = "config.json"


@dataclass
class DHTConfig:
    """DHT engine settings."""

    # Shared database of the local DHT engine (relative to config dir)
    storage_path: str = "dht.db"

    # Bootstrap nodes, kept for engines that join a public network
    bootstrap: List[Tuple[str, int]] = field(default_factory=lambda: [
        ("router.bittorrent.com", 6881),
        ("router.utorrent.com", 6881),
        ("dht.transmissionbt.com", 6881),
    ])

    # Address published to the DHT together with announcements
    announce_host: str = "127.0.0.1"


@dataclass
class TransferConfig:
    """Transfer engine settings."""

    listen_port: int = 6882

    # Downloaded packs land here (relative to config dir)
    save_path: str = "transfers"


@dataclass
class CryptoConfig:
    """Signing key settings."""

    # Ed25519 keypair, hex encoded JSON (relative to config dir)
    key_file: str = "key.json"


@dataclass
class DaemonConfig:
    """Server role settings."""

    # Directory scanned for */git-daemon-export-ok
    repos_dir: str = "."

    # TCP port of the wire server, announced with every object id
    announce_port: int = 30000

    # Seconds between publish cycles
    publish_interval: float = 1800.0

    # Generated packs are written here (relative to config dir)
    packs_dir: str = "packs"


@dataclass
class Config:
    """Main configuration object."""

    config_dir: Path = DEFAULT_CONFIG_DIR
    dht: DHTConfig = field(default_factory=DHTConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    log_level: str = "INFO"
    color: bool = True

    def resolve(self, relative: str) -> Path:
        """Resolve a path setting against the config directory."""
        path = Path(relative).expanduser()
        if path.is_absolute():
            return path
        return self.config_dir / path

    @property
    def key_path(self) -> Path:
        return self.resolve(self.crypto.key_file)

    @property
    def dht_storage_path(self) -> Path:
        return self.resolve(self.dht.storage_path)

    @property
    def transfer_save_path(self) -> Path:
        return self.resolve(self.transfer.save_path)

    @property
    def packs_path(self) -> Path:
        return self.resolve(self.daemon.packs_dir)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form, without the config directory itself."""
        data = asdict(self)
        data.pop("config_dir")
        return data


# Environment overrides: variable -> (section, attribute, type)
ENV_OVERRIDES: Dict[str, Tuple[Optional[str], str, type]] = {
    "GITTORRENT_DHT_STORAGE": ("dht", "storage_path", str),
    "GITTORRENT_ANNOUNCE_HOST": ("dht", "announce_host", str),
    "GITTORRENT_TRANSFER_PORT": ("transfer", "listen_port", int),
    "GITTORRENT_SAVE_PATH": ("transfer", "save_path", str),
    "GITTORRENT_KEY_FILE": ("crypto", "key_file", str),
    "GITTORRENT_REPOS_DIR": ("daemon", "repos_dir", str),
    "GITTORRENT_ANNOUNCE_PORT": ("daemon", "announce_port", int),
    "GITTORRENT_PUBLISH_INTERVAL": ("daemon", "publish_interval", float),
    "GITTORRENT_PACKS_DIR": ("daemon", "packs_dir", str),
    "GITTORRENT_LOG_LEVEL": (None, "log_level", str),
}


def _apply_section(target: Any, values: Dict[str, Any]) -> None:
    for key, value in values.items():
        if not hasattr(target, key):
            raise ConfigOrKeyError(f"Unknown config option: {key}")
        current = getattr(target, key)
        if key == "bootstrap":
            value = [(str(host), int(port)) for host, port in value]
        elif isinstance(current, bool):
            value = bool(value)
        elif isinstance(current, (int, float)):
            value = type(current)(value)
        setattr(target, key, value)


def _apply_file(config: Config, data: Dict[str, Any]) -> None:
    for key, value in data.items():
        section = getattr(config, key, None)
        if isinstance(value, dict) and section is not None and not isinstance(section, (str, bool)):
            _apply_section(section, value)
        else:
            _apply_section(config, {key: value})


def _apply_env(config: Config) -> None:
    for name, (section, attr, cast) in ENV_OVERRIDES.items():
        raw = os.getenv(name, "").strip()
        if not raw:
            continue
        target = getattr(config, section) if section else config
        try:
            setattr(target, attr, cast(raw))
        except ValueError as e:
            raise ConfigOrKeyError(f"Invalid value for {name}: {raw!r}") from e


def load_config(config_dir: Optional[Path] = None, create: bool = True) -> Config:
    """
    Load configuration.

    Args:
        config_dir: Override for the config directory
        create: Write a default config.json when none exists

    Returns:
        Config

    Raises:
        ConfigOrKeyError: Unreadable or invalid config file
    """
    load_dotenv()

    if config_dir is None:
        env_dir = os.getenv("GITTORRENT_CONFIG_DIR", "").strip()
        config_dir = Path(env_dir).expanduser() if env_dir else DEFAULT_CONFIG_DIR

    config = Config(config_dir=Path(config_dir))
    config_path = config.config_dir / CONFIG_FILE_NAME

    if not config_path.exists() and create:
        config.config_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
        config_path.chmod(0o644)
        logger.info(f"[CONFIG] Created default config file: {config_path}")

    if config_path.exists():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigOrKeyError(f"Cannot read {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigOrKeyError(f"{config_path} must contain a JSON object")
        try:
            _apply_file(config, data)
        except (TypeError, ValueError) as e:
            raise ConfigOrKeyError(f"Invalid value in {config_path}: {e}") from e
        logger.info(f"[CONFIG] Loading config: {config_path}")

    _apply_env(config)
    return config
