import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests
from packaging import version

from ..errors import FetchError, ResolutionError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "PackSync/1.0.0 (modpack install engine)"


class ModrinthAPI:
    """Handles requests to the Modrinth API for modpack versions"""

    BASE_URL = "https://api.modrinth.com/v2"

    def __init__(self, base_url: Optional[str] = None, user_agent: str = DEFAULT_USER_AGENT):
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": user_agent
        })

    def _get(self, path: str, params: Optional[Dict] = None, timeout: float = 10):
        url = f"{self.base_url}{path}"
        logger.debug("GET %s %s", url, params or "")
        try:
            response = self.session.get(url, params=params, timeout=timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise FetchError(f"Modrinth request failed ({path}): {e}") from e
        except ValueError as e:
            raise FetchError(f"Modrinth returned invalid JSON ({path})") from e

    def get_modpack_versions(
        self,
        project_id: str,
        game_versions: Optional[List[str]] = None,
        loaders: Optional[List[str]] = None
    ) -> List[Dict]:
        """
        Gets the available versions of a modpack

        Args:
            project_id: Project ID (or slug) on Modrinth
            game_versions: Only versions for these Minecraft versions
            loaders: Only versions for these loaders

        Returns:
            List of version objects as returned by Modrinth
        """
        params = {}
        if game_versions:
            params["game_versions"] = json.dumps(game_versions)
        if loaders:
            params["loaders"] = json.dumps(loaders)
        data = self._get(f"/project/{project_id}/version", params=params or None)
        return data if isinstance(data, list) else []

    def get_version(self, version_id: str) -> Dict:
        """Gets one version object"""
        data = self._get(f"/version/{version_id}")
        if not isinstance(data, dict):
            raise FetchError(f"unexpected Modrinth response for version {version_id}")
        return data

    def get_latest_version(self, project_id: str, game_version: Optional[str] = None) -> Optional[Dict]:
        """
        Gets the newest published version of a modpack

        Args:
            project_id: Project ID on Modrinth
            game_version: Restrict to this Minecraft version

        Returns:
            Newest version object, or None if the project has no matching versions
        """
        versions = self.get_modpack_versions(project_id, game_versions=[game_version] if game_version else None)
        if not versions:
            return None
        return max(versions, key=lambda v: str(v.get("date_published") or ""))

    @staticmethod
    def pick_mrpack_file(version_data: Dict) -> Dict[str, str]:
        """
        Picks the .mrpack archive of a version

        Returns:
            {"url", "filename", "sha1"} of the primary .mrpack file, else the
            first .mrpack, else the first file

        Raises:
            FetchError: if the version has no downloadable file
        """
        files = version_data.get("files") or []
        mrpacks = [f for f in files if str(f.get("filename", "")).endswith(".mrpack")]
        chosen = None
        for candidate in mrpacks:
            if candidate.get("primary"):
                chosen = candidate
                break
        if chosen is None:
            chosen = mrpacks[0] if mrpacks else (files[0] if files else None)

        if not chosen or not chosen.get("url"):
            raise FetchError(f"version {version_data.get('id', '?')} has no downloadable file")

        return {
            "url": str(chosen["url"]),
            "filename": str(chosen.get("filename") or "modpack.mrpack"),
            "sha1": str((chosen.get("hashes") or {}).get("sha1") or ""),
        }


# ==================== LOADER RESOLVERS ====================

@dataclass
class ResolvedServerJar:
    """Where to fetch a loader server jar from"""
    url: str
    checksum: Optional[str] = None


class LoaderResolver(ABC):
    """Maps (minecraft version, loader kind, loader version) to a server jar download"""

    @abstractmethod
    def resolve(self, minecraft_version: str, loader_kind: str, loader_version: str) -> ResolvedServerJar:
        """
        Raises:
            ResolutionError: if no jar can be resolved
        """


class FabricMetaResolver(LoaderResolver):
    """Resolves Fabric server launcher jars through meta.fabricmc.net"""

    FABRIC_META_URL = "https://meta.fabricmc.net/v2"

    def __init__(self, meta_url: Optional[str] = None, user_agent: str = DEFAULT_USER_AGENT):
        self.meta_url = (meta_url or self.FABRIC_META_URL).rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": user_agent})
        self._installer_version: Optional[str] = None

    def get_latest_installer(self) -> str:
        """
        Gets the newest stable Fabric installer version

        Raises:
            ResolutionError: if the installer list cannot be fetched
        """
        if self._installer_version:
            return self._installer_version
        try:
            response = self.session.get(f"{self.meta_url}/versions/installer", timeout=10)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ResolutionError(f"failed to list Fabric installers: {e}") from e

        stable = [item["version"] for item in data if item.get("stable") and item.get("version")]
        candidates = stable or [item["version"] for item in data if item.get("version")]
        if not candidates:
            raise ResolutionError("no Fabric installer versions available")

        self._installer_version = max(candidates, key=version.parse)
        return self._installer_version

    def resolve(self, minecraft_version: str, loader_kind: str, loader_version: str) -> ResolvedServerJar:
        if loader_kind != "fabric":
            raise ResolutionError(f"Fabric meta cannot resolve a {loader_kind} server jar")

        installer = self.get_latest_installer()
        url = (
            f"{self.meta_url}/versions/loader/"
            f"{minecraft_version}/{loader_version}/{installer}/server/jar"
        )

        # Make sure the combination exists before anything is written
        try:
            response = self.session.get(
                f"{self.meta_url}/versions/loader/{minecraft_version}/{loader_version}", timeout=10)
        except requests.RequestException as e:
            raise ResolutionError(f"failed to resolve Fabric server jar: {e}") from e
        if response.status_code != 200:
            raise ResolutionError(
                f"Fabric loader {loader_version} is not available for Minecraft {minecraft_version}")

        return ResolvedServerJar(url=url)


class PanelLoaderResolver(LoaderResolver):
    """Resolves server jars through the panel's /api/mc/<kind>/server-jar endpoint"""

    def __init__(self, panel_url: str, token: str = "", user_agent: str = DEFAULT_USER_AGENT):
        self.panel_url = panel_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": user_agent})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def resolve(self, minecraft_version: str, loader_kind: str, loader_version: str) -> ResolvedServerJar:
        url = f"{self.panel_url}/api/mc/{loader_kind}/server-jar"
        try:
            response = self.session.get(url, params={"mc": minecraft_version, "loader": loader_version}, timeout=30)
        except requests.RequestException as e:
            raise ResolutionError(f"failed to resolve {loader_kind} server jar: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.ok:
            message = (data or {}).get("error") if isinstance(data, dict) else None
            raise ResolutionError(message or f"failed to resolve {loader_kind} server jar")

        jar_url = str((data or {}).get("url") or "").strip()
        if not jar_url:
            raise ResolutionError(f"{loader_kind} server jar url missing")

        checksum = (data or {}).get("sha256") or (data or {}).get("sha1") or (data or {}).get("checksum")
        return ResolvedServerJar(url=jar_url, checksum=str(checksum) if checksum else None)


class RoutingLoaderResolver(LoaderResolver):
    """Sends each loader kind to the resolver that serves it"""

    def __init__(self, routes: Dict[str, LoaderResolver]):
        self.routes = dict(routes)

    def resolve(self, minecraft_version: str, loader_kind: str, loader_version: str) -> ResolvedServerJar:
        resolver = self.routes.get(loader_kind)
        if resolver is None:
            # Fabric meta has no Quilt counterpart that serves a ready server jar
            raise ResolutionError(
                f"no server jar source for {loader_kind}; set panel_url (or loader_resolver 'panel')")
        return resolver.resolve(minecraft_version, loader_kind, loader_version)
