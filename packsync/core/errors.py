"""
Error types raised by the modpack install/update engine.

Every error a caller can receive from an install or update derives from
ModpackError, so a single except clause covers the whole pipeline.
"""

from typing import Optional


class ModpackError(Exception):
    """Base class for all engine errors"""


class ParseError(ModpackError):
    """The package index (or the archive holding it) is malformed"""


class ResolutionError(ModpackError):
    """No usable loader could be resolved, or the loader jar lookup failed"""


class FetchError(ModpackError):
    """Content acquisition or integrity verification failed"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class PlanError(ModpackError):
    """The update could not be planned (e.g. no installed pack recorded)"""


class PersistError(ModpackError):
    """The pack state record could not be written"""


class OverrideError(ModpackError):
    """An override entry could not be moved into the instance root"""


class InstanceBusyError(ModpackError):
    """Another install or update is already running on the instance"""


class RemoteFSError(ModpackError):
    """A remote filesystem call failed"""

    def __init__(self, message: str, command: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message)
        self.command = command
        self.path = path


class RemoteNotFoundError(RemoteFSError):
    """The remote path does not exist"""
