"""
Modpack engine.
The orchestrator lives in modpack_manager; this package exports the data model.
"""

from .manifest import (
    LoaderKind,
    LoaderSpec,
    PackageIndex,
    PackSource,
    PackStateRecord,
)

__all__ = [
    "LoaderKind",
    "LoaderSpec",
    "PackageIndex",
    "PackSource",
    "PackStateRecord",
]
