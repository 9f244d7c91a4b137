"""
PackSync - Modrinth modpack install and update engine
Installs .mrpack modpacks onto Minecraft server instances and keeps them updated
"""

__version__ = "1.0.0"

from .config import EngineConfig, ConfigStore
from .core.errors import (
    ModpackError,
    ParseError,
    ResolutionError,
    FetchError,
    PlanError,
    PersistError,
)
from .managers.modpack.modpack_manager import (
    ModpackManager,
    InstallResult,
    UpdateResult,
    UpdateStatus,
)

__all__ = [
    "EngineConfig",
    "ConfigStore",
    "ModpackError",
    "ParseError",
    "ResolutionError",
    "FetchError",
    "PlanError",
    "PersistError",
    "ModpackManager",
    "InstallResult",
    "UpdateResult",
    "UpdateStatus",
]
