"""
Manifest Codec - modrinth.index.json parsing and the persisted pack state record.

The pack state record is the one artifact other tooling relies on to know
whether a pack is installed and which version; its JSON layout is stable.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ...core.errors import ParseError, PersistError, RemoteFSError, ResolutionError
from ...core.remote import RemoteFileSystem
from ...utils.path_utils import join_rel_path, normalize_rel_path

logger = logging.getLogger(__name__)

INDEX_FILE_NAME = "modrinth.index.json"
STATE_SCHEMA_VERSION = 1
STATE_PROVIDER = "packsync"


class LoaderKind(Enum):
    """Mod loaders a pack can declare"""
    FABRIC = "fabric"
    QUILT = "quilt"
    NEOFORGE = "neoforge"
    FORGE = "forge"

    @property
    def automatable(self) -> bool:
        """True if the server jar can be fetched without running an installer"""
        return self in (LoaderKind.FABRIC, LoaderKind.QUILT)


# Dependency keys in precedence order (first non-empty wins)
LOADER_KEYS = [
    (LoaderKind.FABRIC, ("fabric-loader",)),
    (LoaderKind.QUILT, ("quilt-loader",)),
    (LoaderKind.NEOFORGE, ("neoforge", "neo-forge")),
    (LoaderKind.FORGE, ("forge",)),
]


@dataclass(frozen=True)
class LoaderSpec:
    """The single loader a pack runs on"""
    kind: LoaderKind
    version: str


@dataclass
class IndexFile:
    """One externally hosted file listed in the index"""
    path: str
    downloads: List[str]
    hashes: Dict[str, str] = field(default_factory=dict)
    env_server: str = "required"
    file_size: int = 0

    @property
    def sha1(self) -> str:
        return str(self.hashes.get("sha1") or "").strip().lower()

    @property
    def url(self) -> str:
        return self.downloads[0] if self.downloads else ""

    @property
    def server_side(self) -> bool:
        return self.env_server != "unsupported"


@dataclass
class PackageIndex:
    """Parsed modrinth.index.json"""
    name: str
    summary: str
    version_id: str
    minecraft: str
    dependencies: Dict[str, str]
    files: List[IndexFile]
    format_version: int = 1
    project_id: Optional[str] = None

    def server_files(self) -> List[IndexFile]:
        """Files that must be present on a server install"""
        return [f for f in self.files if f.server_side]


@dataclass
class PackSource:
    """Where a pack archive came from"""
    kind: str  # "modrinth", "url" or "upload"
    url: str = ""
    file_name: str = ""
    project_id: Optional[str] = None
    version_id: Optional[str] = None
    sha1: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind}
        if self.project_id:
            data["project_id"] = self.project_id
        if self.version_id:
            data["version_id"] = self.version_id
        data["url"] = self.url
        data["file_name"] = self.file_name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackSource":
        return cls(
            kind=str(data.get("kind") or ""),
            url=str(data.get("url") or ""),
            file_name=str(data.get("file_name") or ""),
            project_id=data.get("project_id") or None,
            version_id=data.get("version_id") or None,
        )


@dataclass
class StateFile:
    path: str
    sha1: str = ""


@dataclass
class PackStateRecord:
    """What is currently installed on an instance"""
    source: PackSource
    minecraft_version: str
    loader: LoaderSpec
    files: List[StateFile]
    jar_path: Optional[str] = None
    installed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    schema_version: int = STATE_SCHEMA_VERSION
    provider: str = STATE_PROVIDER

    def file_hashes(self) -> Dict[str, str]:
        """path -> sha1 map used by the update planner"""
        return {f.path: f.sha1 for f in self.files}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "provider": self.provider,
            "installed_at": self.installed_at,
            "source": self.source.to_dict(),
            "minecraft": {"version": self.minecraft_version},
            "loader": {"kind": self.loader.kind.value, "version": self.loader.version},
            "server": {"jar_path": self.jar_path},
            "files": [
                {"path": f.path, "sha1": f.sha1}
                for f in sorted(self.files, key=lambda f: f.path)
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackStateRecord":
        """
        Builds a record from its JSON form

        Raises:
            ValueError/KeyError/TypeError: if the document is not a state record
        """
        if not isinstance(data, dict):
            raise TypeError("state record must be an object")
        loader = data["loader"]
        files = []
        for entry in data.get("files") or []:
            path = normalize_rel_path(entry.get("path"))
            if path:
                files.append(StateFile(path=path, sha1=str(entry.get("sha1") or "").lower()))
        return cls(
            schema_version=int(data.get("schema_version") or STATE_SCHEMA_VERSION),
            provider=str(data.get("provider") or STATE_PROVIDER),
            installed_at=str(data.get("installed_at") or ""),
            source=PackSource.from_dict(data.get("source") or {}),
            minecraft_version=str(data["minecraft"]["version"]),
            loader=LoaderSpec(kind=LoaderKind(loader["kind"]), version=str(loader.get("version") or "")),
            jar_path=(data.get("server") or {}).get("jar_path") or None,
            files=files,
        )


# ==================== INDEX ====================

def parse_index(raw: Union[bytes, str, Dict[str, Any]]) -> PackageIndex:
    """
    Parses a modrinth.index.json document

    Args:
        raw: File contents (bytes/str) or an already decoded dict

    Returns:
        PackageIndex

    Raises:
        ParseError: if the document is not a valid index or lacks dependencies.minecraft
    """
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            text = raw.decode("utf-8-sig") if isinstance(raw, bytes) else raw
            data = json.loads(text)
        except (UnicodeDecodeError, ValueError) as e:
            raise ParseError(f"invalid index: {e}") from e

    if not isinstance(data, dict):
        raise ParseError("invalid index: top level is not an object")

    deps = data.get("dependencies")
    if not isinstance(deps, dict):
        raise ParseError("invalid index: missing dependencies")
    dependencies = {str(k): str(v or "").strip() for k, v in deps.items()}
    minecraft = dependencies.get("minecraft", "")
    if not minecraft:
        raise ParseError("invalid index: missing dependencies.minecraft")

    raw_files = data.get("files", [])
    if not isinstance(raw_files, list):
        raise ParseError("invalid index: files is not a list")

    files = [_parse_index_file(entry, i) for i, entry in enumerate(raw_files)]

    try:
        format_version = int(data.get("formatVersion") or 1)
    except (TypeError, ValueError) as e:
        raise ParseError("invalid index: formatVersion is not a number") from e

    return PackageIndex(
        name=str(data.get("name") or ""),
        summary=str(data.get("summary") or ""),
        version_id=str(data.get("versionId") or ""),
        minecraft=minecraft,
        dependencies=dependencies,
        files=files,
        format_version=format_version,
    )


def _parse_index_file(entry: Any, position: int) -> IndexFile:
    if not isinstance(entry, dict):
        raise ParseError(f"invalid index: files[{position}] is not an object")

    raw_path = str(entry.get("path") or "")
    path = normalize_rel_path(raw_path)
    if not path or raw_path.strip().startswith(("/", "\\")):
        raise ParseError(f"invalid index: unsafe file path {raw_path!r}")

    env = entry.get("env") or {}
    env_server = str(env.get("server") or "required").strip().lower() if isinstance(env, dict) else "required"

    downloads = [str(u).strip() for u in (entry.get("downloads") or []) if str(u or "").strip()]
    if not downloads and env_server != "unsupported":
        raise ParseError(f"invalid index: file missing download url: {path}")

    hashes = entry.get("hashes") or {}
    if not isinstance(hashes, dict):
        hashes = {}

    try:
        file_size = int(entry.get("fileSize") or 0)
    except (TypeError, ValueError):
        file_size = 0

    return IndexFile(
        path=path,
        downloads=downloads,
        hashes={str(k): str(v) for k, v in hashes.items()},
        env_server=env_server,
        file_size=file_size,
    )


def resolve_loader(index: PackageIndex) -> LoaderSpec:
    """
    Picks the pack's loader: fabric-loader, then quilt-loader, then neoforge, then forge

    Raises:
        ResolutionError: if none of the known loader keys is present
    """
    for kind, keys in LOADER_KEYS:
        for key in keys:
            version = index.dependencies.get(key, "")
            if version:
                return LoaderSpec(kind=kind, version=version)

    unknown = sorted(k for k in index.dependencies if k != "minecraft")
    detail = f" (found: {', '.join(unknown)})" if unknown else ""
    raise ResolutionError(f"unsupported loader{detail}")


# ==================== STATE ====================

def state_path(instance_root: str, state_file_name: str) -> str:
    return join_rel_path(instance_root, state_file_name)


def read_state(fs: RemoteFileSystem, instance_root: str, state_file_name: str) -> Optional[PackStateRecord]:
    """
    Reads the pack state record of an instance

    Returns:
        The record, or None if it is absent or unreadable (treated as "no prior install")
    """
    path = state_path(instance_root, state_file_name)
    try:
        raw = fs.read(path)
    except RemoteFSError as e:
        logger.debug("No readable pack state at %s: %s", path, e)
        return None

    try:
        return PackStateRecord.from_dict(json.loads(raw.decode("utf-8")))
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
        logger.debug("Ignoring unparseable pack state at %s: %s", path, e)
        return None


def write_state(fs: RemoteFileSystem, instance_root: str, state_file_name: str, record: PackStateRecord):
    """
    Writes the whole record in a single write call

    Raises:
        PersistError: if the write fails
    """
    path = state_path(instance_root, state_file_name)
    data = json.dumps(record.to_dict(), indent=2).encode("utf-8")
    try:
        fs.write(path, data)
    except RemoteFSError as e:
        raise PersistError(f"failed to write pack state {path}: {e}") from e
