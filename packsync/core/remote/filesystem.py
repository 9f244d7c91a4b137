"""
Remote filesystem contract used by the modpack engine, plus a local implementation.

The engine only ever touches instance files through this interface, so the
same install/update code drives a local directory or a remote agent node.
"""

import logging
import shutil
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..download.downloader import ContentDownloader, DownloadResult
from ..errors import FetchError, RemoteFSError, RemoteNotFoundError
from ...utils.path_utils import normalize_rel_path

logger = logging.getLogger(__name__)


@dataclass
class RemoteEntry:
    """One directory entry on the remote tree"""
    name: str
    is_dir: bool
    size: int = 0
    mtime_unix: int = 0


class RemoteFileSystem(ABC):
    """Filesystem operations on the servers root, addressed by relative path"""

    @abstractmethod
    def list(self, path: str) -> List[RemoteEntry]:
        ...

    @abstractmethod
    def read(self, path: str) -> bytes:
        ...

    @abstractmethod
    def write(self, path: str, data: bytes):
        ...

    @abstractmethod
    def stat(self, path: str) -> RemoteEntry:
        ...

    @abstractmethod
    def move(self, src: str, dst: str):
        ...

    @abstractmethod
    def delete(self, path: str):
        ...

    @abstractmethod
    def mkdir(self, path: str):
        ...

    @abstractmethod
    def download(self, path: str, url: str, sha1: Optional[str] = None, sha256: Optional[str] = None) -> DownloadResult:
        """Fetches url into path, verifying the given hashes before committing"""

    @abstractmethod
    def unzip(self, zip_path: str, dest_dir: str, strip_top_level: bool = True):
        ...

    def exists(self, path: str) -> bool:
        try:
            self.stat(path)
            return True
        except RemoteNotFoundError:
            return False


class LocalFileSystem(RemoteFileSystem):
    """RemoteFileSystem over a local directory (single-host installs and tests)"""

    def __init__(self, root: str, downloader: Optional[ContentDownloader] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.downloader = downloader or ContentDownloader()

    def resolve(self, path: str, allow_root: bool = False) -> Path:
        """
        Maps a relative remote path onto the local root

        Raises:
            RemoteFSError: for absolute, escaping or (unless allowed) root paths
        """
        raw = str(path or "").strip().replace("\\", "/")
        if raw.startswith("/") or (len(raw) > 1 and raw[1] == ":"):
            raise RemoteFSError(f"absolute paths are not allowed: {raw}", path=raw)

        rel = normalize_rel_path(raw)
        if rel:
            return self.root / rel
        if raw.strip("/") in ("", "."):
            if allow_root:
                return self.root
            raise RemoteFSError("refuse to operate on root", path=raw)
        raise RemoteFSError(f"invalid path: {raw}", path=raw)

    def list(self, path: str) -> List[RemoteEntry]:
        target = self.resolve(path, allow_root=True)
        if not target.is_dir():
            raise RemoteNotFoundError(f"not found: {path}", command="list", path=path)
        entries = []
        for child in sorted(target.iterdir()):
            info = child.stat()
            entries.append(RemoteEntry(
                name=child.name,
                is_dir=child.is_dir(),
                size=0 if child.is_dir() else info.st_size,
                mtime_unix=int(info.st_mtime),
            ))
        return entries

    def read(self, path: str) -> bytes:
        target = self.resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as e:
            raise RemoteNotFoundError(f"not found: {path}", command="read", path=path) from e
        except OSError as e:
            raise RemoteFSError(str(e), command="read", path=path) from e

    def write(self, path: str, data: bytes):
        target = self.resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise RemoteFSError(str(e), command="write", path=path) from e

    def stat(self, path: str) -> RemoteEntry:
        target = self.resolve(path, allow_root=True)
        if not target.exists():
            raise RemoteNotFoundError(f"not found: {path}", command="stat", path=path)
        info = target.stat()
        return RemoteEntry(
            name=target.name,
            is_dir=target.is_dir(),
            size=0 if target.is_dir() else info.st_size,
            mtime_unix=int(info.st_mtime),
        )

    def move(self, src: str, dst: str):
        source = self.resolve(src)
        dest = self.resolve(dst)
        if not source.exists():
            raise RemoteNotFoundError(f"not found: {src}", command="move", path=src)
        try:
            if dest.exists():
                self._remove(dest)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(dest))
        except OSError as e:
            raise RemoteFSError(str(e), command="move", path=src) from e

    def delete(self, path: str):
        target = self.resolve(path)
        if not target.exists():
            raise RemoteNotFoundError(f"not found: {path}", command="delete", path=path)
        try:
            self._remove(target)
        except OSError as e:
            raise RemoteFSError(str(e), command="delete", path=path) from e

    def mkdir(self, path: str):
        target = self.resolve(path)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RemoteFSError(str(e), command="mkdir", path=path) from e

    def download(self, path: str, url: str, sha1: Optional[str] = None, sha256: Optional[str] = None) -> DownloadResult:
        target = self.resolve(path)
        try:
            result = self.downloader.download(url, str(target), sha1=sha1, sha256=sha256)
        except FetchError as e:
            raise RemoteFSError(str(e), command="download", path=path) from e
        result.path = path
        return result

    def unzip(self, zip_path: str, dest_dir: str, strip_top_level: bool = True):
        archive = self.resolve(zip_path)
        dest = self.resolve(dest_dir)
        if not archive.is_file():
            raise RemoteNotFoundError(f"not found: {zip_path}", command="unzip", path=zip_path)

        try:
            with zipfile.ZipFile(archive, 'r') as zip_ref:
                members = [
                    (info, self._clean_member(info.filename))
                    for info in zip_ref.infolist()
                ]
                members = [(info, name) for info, name in members if name]
                strip_prefix = self._common_top_level([n for _, n in members]) if strip_top_level else ""

                for info, name in members:
                    if strip_prefix and name.startswith(strip_prefix):
                        name = name[len(strip_prefix):]
                    rel = normalize_rel_path(name)
                    if not rel:
                        if name.strip("/"):
                            raise RemoteFSError(f"zip entry escapes destination: {info.filename}",
                                                command="unzip", path=zip_path)
                        continue

                    out_path = dest / rel
                    if info.is_dir():
                        out_path.mkdir(parents=True, exist_ok=True)
                        continue
                    out_path.parent.mkdir(parents=True, exist_ok=True)
                    with zip_ref.open(info) as src, open(out_path, 'wb') as dst:
                        shutil.copyfileobj(src, dst)
            logger.debug("Unzipped %s -> %s (%d entries)", zip_path, dest_dir, len(members))
        except zipfile.BadZipFile as e:
            raise RemoteFSError(f"invalid zip: {e}", command="unzip", path=zip_path) from e
        except OSError as e:
            raise RemoteFSError(str(e), command="unzip", path=zip_path) from e

    @staticmethod
    def _clean_member(name: str) -> str:
        name = name.replace("\\", "/").lstrip("/")
        if name.startswith("__MACOSX/"):
            return ""
        return name

    @staticmethod
    def _common_top_level(names: List[str]) -> str:
        """Prefix ("top/") shared by every entry, or an empty string"""
        tops = set()
        for name in names:
            first, sep, _rest = name.partition("/")
            if not sep or first in (".", ".."):
                # A file at the archive root means there is no wrapper directory
                return ""
            tops.add(first)
            if len(tops) > 1:
                return ""
        return f"{tops.pop()}/" if len(tops) == 1 else ""

    @staticmethod
    def _remove(target: Path):
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        else:
            target.unlink()
