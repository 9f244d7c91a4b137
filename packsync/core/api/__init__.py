"""API Package - external services (Modrinth, loader metadata, panel)."""

from .handlers import (
    ModrinthAPI,
    LoaderResolver,
    ResolvedServerJar,
    FabricMetaResolver,
    PanelLoaderResolver,
    RoutingLoaderResolver
)

__all__ = [
    "ModrinthAPI",
    "LoaderResolver",
    "ResolvedServerJar",
    "FabricMetaResolver",
    "PanelLoaderResolver",
    "RoutingLoaderResolver"
]
