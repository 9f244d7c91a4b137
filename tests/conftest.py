import hashlib
import io
import json
import threading
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import requests

from packsync.config import EngineConfig
from packsync.core.api import LoaderResolver, ModrinthAPI, ResolvedServerJar
from packsync.core.download import ContentDownloader
from packsync.core.errors import FetchError, ResolutionError
from packsync.core.remote import LocalFileSystem
from packsync.managers.loader import LoaderManager
from packsync.managers.modpack.modpack_manager import ModpackManager


def sha1_of(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def build_mrpack(index: dict, overrides: Optional[Dict[str, bytes]] = None,
                 server_overrides: Optional[Dict[str, bytes]] = None) -> bytes:
    """Zips an index plus override trees into .mrpack bytes"""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("modrinth.index.json", json.dumps(index))
        for path, data in (overrides or {}).items():
            zf.writestr(f"overrides/{path}", data)
        for path, data in (server_overrides or {}).items():
            zf.writestr(f"server-overrides/{path}", data)
    return buffer.getvalue()


class PackServer:
    """Fake upstream: Modrinth version listings, pack archives and CDN content"""

    sha1 = staticmethod(sha1_of)
    build_archive = staticmethod(build_mrpack)

    def __init__(self):
        self.content: Dict[str, bytes] = {}
        self.versions: Dict[str, List[dict]] = {}

    def host(self, path: str, data: bytes, env_server: str = "required", hashed: bool = True) -> dict:
        """Publishes a content file and returns its index entry"""
        url = f"https://cdn.test/{sha1_of(data)}/{path.rsplit('/', 1)[-1]}"
        self.content[url] = data
        entry = {
            "path": path,
            "downloads": [url],
            "fileSize": len(data),
            "env": {"client": "required", "server": env_server},
            "hashes": {"sha1": sha1_of(data), "sha512": hashlib.sha512(data).hexdigest()} if hashed else {},
        }
        return entry

    def publish(self, project_id: str, version_id: str, files: List[dict], dependencies: Dict[str, str],
                overrides=None, server_overrides=None, date: str = "2024-01-01T00:00:00Z") -> dict:
        """Builds a pack version and makes it visible through the fake Modrinth API"""
        index = {
            "formatVersion": 1,
            "game": "minecraft",
            "versionId": version_id,
            "name": f"{project_id} pack",
            "files": files,
            "dependencies": dependencies,
        }
        archive = build_mrpack(index, overrides, server_overrides)
        url = f"https://cdn.test/{project_id}/{version_id}.mrpack"
        self.content[url] = archive

        version = {
            "id": version_id,
            "project_id": project_id,
            "version_number": version_id,
            "date_published": date,
            "game_versions": [dependencies["minecraft"]],
            "files": [{
                "url": url,
                "filename": f"{project_id}-{version_id}.mrpack",
                "primary": True,
                "hashes": {"sha1": sha1_of(archive)},
            }],
        }
        self.versions.setdefault(project_id, []).append(version)
        return version


class FakeDownloader(ContentDownloader):
    """ContentDownloader that serves bodies from a PackServer instead of the network"""

    def __init__(self, server: PackServer):
        super().__init__(retry_delay=0)
        self.server = server
        self.requested: List[str] = []
        self._lock = threading.Lock()

    def _stream_to(self, url, path, progress_callback):
        with self._lock:
            self.requested.append(url)
        if url not in self.server.content:
            raise requests.HTTPError(f"404 Client Error: Not Found for url: {url}")
        data = self.server.content[url]
        with open(path, "wb") as f:
            f.write(data)
        return sha1_of(data), hashlib.sha256(data).hexdigest(), len(data)


class FakeModrinthAPI(ModrinthAPI):
    """ModrinthAPI answering from a PackServer"""

    def __init__(self, server: PackServer):
        super().__init__()
        self.server = server
        self.calls: List[str] = []

    def get_modpack_versions(self, project_id, game_versions=None, loaders=None):
        self.calls.append(f"versions:{project_id}")
        versions = self.server.versions.get(project_id, [])
        if game_versions:
            versions = [v for v in versions if set(v["game_versions"]) & set(game_versions)]
        return list(versions)

    def get_version(self, version_id):
        self.calls.append(f"version:{version_id}")
        for versions in self.server.versions.values():
            for version in versions:
                if version["id"] == version_id:
                    return version
        raise FetchError(f"Modrinth request failed (/version/{version_id}): 404")


class FakeResolver(LoaderResolver):
    """Resolves Fabric/Quilt server jars to URLs hosted on the PackServer"""

    def __init__(self, server: PackServer):
        self.server = server
        self.calls: List[tuple] = []

    def resolve(self, minecraft_version, loader_kind, loader_version):
        self.calls.append((minecraft_version, loader_kind, loader_version))
        if loader_kind not in ("fabric", "quilt"):
            raise ResolutionError(f"cannot resolve {loader_kind}")
        data = f"{loader_kind}-{minecraft_version}-{loader_version}".encode()
        url = f"https://meta.test/{loader_kind}/{minecraft_version}/{loader_version}/server.jar"
        self.server.content[url] = data
        return ResolvedServerJar(url=url, checksum=sha1_of(data))


@pytest.fixture()
def pack_server() -> PackServer:
    return PackServer()


@pytest.fixture()
def downloader(pack_server) -> FakeDownloader:
    return FakeDownloader(pack_server)


@pytest.fixture()
def servers_root(tmp_path) -> Path:
    return tmp_path / "servers"


@pytest.fixture()
def local_fs(servers_root, downloader) -> LocalFileSystem:
    return LocalFileSystem(str(servers_root), downloader)


@pytest.fixture()
def modrinth(pack_server) -> FakeModrinthAPI:
    return FakeModrinthAPI(pack_server)


@pytest.fixture()
def resolver(pack_server) -> FakeResolver:
    return FakeResolver(pack_server)


@pytest.fixture()
def log_lines() -> List[str]:
    return []


@pytest.fixture()
def manager(local_fs, modrinth, resolver, log_lines) -> ModpackManager:
    return ModpackManager(
        EngineConfig(),
        local_fs,
        loader_manager=LoaderManager(resolver),
        modrinth_api=modrinth,
        log_callback=log_lines.append,
    )
