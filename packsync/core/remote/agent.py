"""
RemoteFileSystem backed by an agent node, reached through the panel's command RPC.
"""

import base64
import logging
from typing import Any, Dict, List, Optional

import requests

from .filesystem import RemoteEntry, RemoteFileSystem
from ..download.downloader import DownloadResult
from ..errors import RemoteFSError, RemoteNotFoundError
from ...config import CommandTimeouts

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("not found", "no such file", "does not exist")


class AgentCommandClient:
    """Sends commands to one agent (daemon) through the panel API"""

    def __init__(self, panel_url: str, daemon_id: str, token: str = "", user_agent: str = "PackSync/1.0"):
        self.base_url = panel_url.rstrip("/")
        self.daemon_id = daemon_id
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": user_agent,
            "Content-Type": "application/json",
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def call(self, name: str, args: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """
        Runs a command on the agent and returns its output

        Args:
            name: Command name (e.g. "fs_list")
            args: Command arguments
            timeout: Timeout in seconds, forwarded to the agent as timeoutMs

        Returns:
            The command's output dict

        Raises:
            RemoteFSError: if the request fails or the command reports an error
        """
        url = f"{self.base_url}/api/daemons/{requests.utils.quote(self.daemon_id, safe='')}/command"
        body = {"name": name, "args": args, "timeoutMs": int(timeout * 1000)}
        path = args.get("path") or args.get("zip_path") or args.get("from")
        logger.debug("agent %s: %s %s", self.daemon_id, name, path or "")

        try:
            # Give the HTTP hop a little more than the agent's own budget
            response = self.session.post(url, json=body, timeout=timeout + 10)
        except requests.RequestException as e:
            raise RemoteFSError(f"command {name} failed: {e}", command=name, path=path) from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.ok:
            message = (payload or {}).get("error") or f"request failed (HTTP {response.status_code})"
            raise RemoteFSError(f"command {name} failed: {message}", command=name, path=path)

        result = (payload or {}).get("result") or {}
        if not result.get("ok"):
            message = str(result.get("error") or "command failed")
            error_type = RemoteNotFoundError if _is_not_found(message) else RemoteFSError
            raise error_type(message, command=name, path=path)

        return result.get("output") or {}


def _is_not_found(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _NOT_FOUND_MARKERS)


class AgentFileSystem(RemoteFileSystem):
    """Maps the RemoteFileSystem contract onto the agent's fs_* commands"""

    def __init__(self, client: AgentCommandClient, timeouts: Optional[CommandTimeouts] = None, instance_id: str = ""):
        self.client = client
        self.timeouts = timeouts or CommandTimeouts()
        self.instance_id = instance_id

    def _with_instance(self, args: Dict[str, Any]) -> Dict[str, Any]:
        # Lets the agent stream install logs for the instance
        if self.instance_id:
            args["instance_id"] = self.instance_id
        return args

    def list(self, path: str) -> List[RemoteEntry]:
        out = self.client.call("fs_list", {"path": path}, self.timeouts.list)
        entries = []
        for ent in out.get("entries") or []:
            name = str(ent.get("name") or "").strip()
            if not name or name in (".", ".."):
                continue
            entries.append(RemoteEntry(
                name=name,
                is_dir=bool(ent.get("isDir")),
                size=int(ent.get("size") or 0),
                mtime_unix=int(ent.get("mtime_unix") or 0),
            ))
        return entries

    def read(self, path: str) -> bytes:
        out = self.client.call("fs_read", {"path": path}, self.timeouts.read)
        try:
            return base64.b64decode(str(out.get("b64") or ""))
        except ValueError as e:
            raise RemoteFSError(f"invalid b64 payload for {path}", command="fs_read", path=path) from e

    def write(self, path: str, data: bytes):
        b64 = base64.b64encode(data).decode("ascii")
        self.client.call("fs_write", {"path": path, "b64": b64}, self.timeouts.write)

    def stat(self, path: str) -> RemoteEntry:
        out = self.client.call("fs_stat", {"path": path}, self.timeouts.stat)
        if out.get("exists") is False:
            raise RemoteNotFoundError(f"not found: {path}", command="fs_stat", path=path)
        return RemoteEntry(
            name=path.rsplit("/", 1)[-1],
            is_dir=bool(out.get("isDir")),
            size=int(out.get("size") or 0),
            mtime_unix=int(out.get("mtime_unix") or 0),
        )

    def move(self, src: str, dst: str):
        self.client.call("fs_move", {"from": src, "to": dst}, self.timeouts.move)

    def delete(self, path: str):
        self.client.call("fs_delete", {"path": path}, self.timeouts.delete)

    def mkdir(self, path: str):
        self.client.call("fs_mkdir", {"path": path}, self.timeouts.mkdir)

    def download(self, path: str, url: str, sha1: Optional[str] = None, sha256: Optional[str] = None) -> DownloadResult:
        args: Dict[str, Any] = {"path": path, "url": url}
        if sha1:
            args["sha1"] = sha1
        if sha256:
            args["sha256"] = sha256
        out = self.client.call("fs_download", self._with_instance(args), self.timeouts.download)
        return DownloadResult(
            path=path,
            bytes=int(out.get("bytes") or 0),
            sha1=str(out.get("sha1") or ""),
            sha256=str(out.get("sha256") or ""),
        )

    def unzip(self, zip_path: str, dest_dir: str, strip_top_level: bool = True):
        args = {"zip_path": zip_path, "dest_dir": dest_dir, "strip_top_level": strip_top_level}
        self.client.call("fs_unzip", self._with_instance(args), self.timeouts.unzip)
