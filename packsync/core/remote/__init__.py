"""Remote filesystem layer - local directory or agent node."""

from .filesystem import RemoteEntry, RemoteFileSystem, LocalFileSystem
from .agent import AgentCommandClient, AgentFileSystem

__all__ = [
    "RemoteEntry",
    "RemoteFileSystem",
    "LocalFileSystem",
    "AgentCommandClient",
    "AgentFileSystem",
]
