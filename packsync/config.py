"""Engine configuration and its on-disk store"""

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CommandTimeouts:
    """Per-call timeouts (seconds) for remote filesystem operations"""
    list: float = 20
    read: float = 20
    write: float = 30
    stat: float = 20
    move: float = 60
    delete: float = 30
    mkdir: float = 30
    download: float = 600
    unzip: float = 600


@dataclass
class EngineConfig:
    """Everything the install/update engine needs; passed in explicitly"""
    fetch_concurrency: int = 4
    server_jar_name: str = "server.jar"
    state_file_name: str = ".packsync.json"
    scratch_dir_name: str = ".packsync_tmp"
    bootstrap_file_name: str = "PACKSYNC_LOADER_SETUP.txt"
    modrinth_api_url: str = "https://api.modrinth.com/v2"
    user_agent: str = "PackSync/1.0.0 (modpack install engine)"
    loader_resolver: str = "fabric-meta"  # "fabric-meta" or "panel"
    panel_url: str = ""
    panel_token: str = ""
    daemon_id: str = ""
    pin_minecraft_version: bool = True
    timeouts: CommandTimeouts = field(default_factory=CommandTimeouts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        """Builds a config from a dict, ignoring unknown keys"""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and k != "timeouts"}

        timeouts_data = data.get("timeouts") or {}
        timeout_names = {f.name for f in fields(CommandTimeouts)}
        timeouts = CommandTimeouts(**{
            k: float(v) for k, v in timeouts_data.items() if k in timeout_names
        })
        return cls(timeouts=timeouts, **kwargs)


class ConfigStore:
    """Loads and saves the engine config as JSON (~/.packsync/config.json)"""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else Path.home() / ".packsync"
        self.config_file = self.config_dir / "config.json"

    def load(self) -> EngineConfig:
        """Loads the config; a missing or broken file yields the defaults"""
        if not self.config_file.exists():
            return EngineConfig()
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                return EngineConfig.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable config %s: %s", self.config_file, e)
            return EngineConfig()

    def save(self, config: EngineConfig):
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(config.to_dict(), f, indent=2)

    def set_value(self, key: str, value: str) -> EngineConfig:
        """
        Updates a single top-level key (or "timeouts.<name>") and saves

        Args:
            key: Config key
            value: New value as typed on the command line

        Returns:
            The updated config

        Raises:
            KeyError: if the key is unknown
        """
        config = self.load()
        data = config.to_dict()

        if key.startswith("timeouts."):
            name = key.split(".", 1)[1]
            if name not in data["timeouts"]:
                raise KeyError(key)
            data["timeouts"][name] = float(value)
        else:
            if key not in data or key == "timeouts":
                raise KeyError(key)
            current = data[key]
            if isinstance(current, bool):
                data[key] = value.strip().lower() in ("1", "true", "yes", "on")
            elif isinstance(current, int):
                data[key] = int(value)
            else:
                data[key] = value

        config = EngineConfig.from_dict(data)
        self.save(config)
        return config

    def clear(self) -> bool:
        """Removes the stored config"""
        if self.config_file.exists():
            self.config_file.unlink()
            return True
        return False
