import logging
from typing import Callable, Optional

from ...config import EngineConfig
from ...core.api import (
    FabricMetaResolver,
    LoaderResolver,
    PanelLoaderResolver,
    ResolvedServerJar,
    RoutingLoaderResolver,
)
from ...core.errors import FetchError, RemoteFSError, ResolutionError
from ...core.remote import RemoteFileSystem
from ...utils.path_utils import checksum_kwargs, join_rel_path
from ..modpack.manifest import LoaderKind, LoaderSpec

logger = logging.getLogger(__name__)


class LoaderManager:
    """Handles mod loader server jars (Fabric/Quilt) and manual setup notes (Forge/NeoForge)"""

    # Installer locations for loaders that need a manual bootstrap
    FORGE_MAVEN_URL = "https://maven.minecraftforge.net/net/minecraftforge/forge"
    NEOFORGE_MAVEN_URL = "https://maven.neoforged.net/releases/net/neoforged/neoforge"

    def __init__(self, resolver: LoaderResolver):
        self.resolver = resolver

    @classmethod
    def from_config(cls, config: EngineConfig) -> "LoaderManager":
        """
        Builds the manager with the resolver selected in the config

        "panel" sends every loader to the panel. "fabric-meta" serves Fabric from
        meta.fabricmc.net and Quilt from the panel when panel_url is set.
        """
        if config.loader_resolver == "panel":
            if not config.panel_url:
                raise ResolutionError("loader_resolver 'panel' requires panel_url")
            return cls(PanelLoaderResolver(config.panel_url, config.panel_token, config.user_agent))

        routes = {LoaderKind.FABRIC.value: FabricMetaResolver(user_agent=config.user_agent)}
        if config.panel_url:
            routes[LoaderKind.QUILT.value] = PanelLoaderResolver(
                config.panel_url, config.panel_token, config.user_agent)
        else:
            logger.debug("No panel_url configured; Quilt server jars cannot be resolved")
        return cls(RoutingLoaderResolver(routes))

    # ==================== SERVER JAR ====================

    def resolve_server_jar(self, minecraft_version: str, loader: LoaderSpec) -> ResolvedServerJar:
        """
        Resolves the server jar download for an automatable loader

        Args:
            minecraft_version: Minecraft version (e.g. "1.20.1")
            loader: Loader kind and version from the index

        Returns:
            ResolvedServerJar with the download URL and optional checksum

        Raises:
            ResolutionError: if the loader is not automatable or the lookup fails
        """
        if not loader.kind.automatable:
            raise ResolutionError(f"{loader.kind.value} server jars cannot be installed automatically")
        resolved = self.resolver.resolve(minecraft_version, loader.kind.value, loader.version)
        if not resolved.url:
            raise ResolutionError(f"{loader.kind.value} server jar url missing")
        logger.debug("Resolved %s %s server jar: %s", loader.kind.value, loader.version, resolved.url)
        return resolved

    def install_server_jar(
        self,
        fs: RemoteFileSystem,
        instance_root: str,
        jar_name: str,
        resolved: ResolvedServerJar,
        log_callback: Optional[Callable[[str], None]] = None
    ) -> str:
        """
        Downloads a resolved server jar into the instance

        Returns:
            Jar path relative to the instance root

        Raises:
            FetchError: if the download or its checksum verification fails
        """
        if log_callback:
            log_callback(f"Downloading server launcher ({jar_name})...\n")
        try:
            fs.download(join_rel_path(instance_root, jar_name), resolved.url, **checksum_kwargs(resolved.checksum))
        except RemoteFSError as e:
            raise FetchError(f"failed to download server jar: {e}", path=jar_name) from e
        return jar_name

    # ==================== MANUAL BOOTSTRAP ====================

    def installer_url(self, minecraft_version: str, loader: LoaderSpec) -> str:
        """Official installer URL for Forge/NeoForge"""
        if loader.kind == LoaderKind.FORGE:
            full_version = loader.version
            if not full_version.startswith(f"{minecraft_version}-"):
                full_version = f"{minecraft_version}-{loader.version}"
            return f"{self.FORGE_MAVEN_URL}/{full_version}/forge-{full_version}-installer.jar"
        if loader.kind == LoaderKind.NEOFORGE:
            return f"{self.NEOFORGE_MAVEN_URL}/{loader.version}/neoforge-{loader.version}-installer.jar"
        return ""

    def bootstrap_instructions(self, minecraft_version: str, loader: LoaderSpec, pack_name: str = "") -> str:
        """Human-readable setup notes for loaders that need their installer run by hand"""
        name = {LoaderKind.FORGE: "Forge", LoaderKind.NEOFORGE: "NeoForge"}.get(loader.kind, loader.kind.value)
        installer = self.installer_url(minecraft_version, loader)
        installer_file = installer.rsplit("/", 1)[-1] if installer else f"{loader.kind.value}-installer.jar"

        lines = [
            f"{name} server setup required",
            "=" * 40,
            "",
        ]
        if pack_name:
            lines.append(f"Modpack:        {pack_name}")
        lines += [
            f"Minecraft:      {minecraft_version}",
            f"Loader:         {loader.kind.value}",
            f"Loader version: {loader.version}",
            "",
            "The modpack files (mods, configs, overrides) are already in place.",
            f"{name} cannot be installed automatically, so the server is not runnable yet.",
            "",
            "Steps:",
            f"  1. Download the installer: {installer or '(see the loader website)'}",
            "  2. Put it in this instance folder and run:",
            f"       java -jar {installer_file} --installServer",
            "  3. Accept the EULA (eula=true in eula.txt).",
            "  4. Start the server with the generated run.sh / run.bat (or the jar the installer reports).",
            "  5. Delete the installer jar and its .log file once the server starts.",
            "",
        ]
        return "\n".join(lines)

    def write_bootstrap_instructions(
        self,
        fs: RemoteFileSystem,
        instance_root: str,
        file_name: str,
        minecraft_version: str,
        loader: LoaderSpec,
        pack_name: str = ""
    ) -> str:
        """
        Writes the setup notes into the instance

        Returns:
            Path of the document relative to the instance root

        Raises:
            RemoteFSError: if the write fails
        """
        text = self.bootstrap_instructions(minecraft_version, loader, pack_name)
        fs.write(join_rel_path(instance_root, file_name), text.encode("utf-8"))
        return file_name
