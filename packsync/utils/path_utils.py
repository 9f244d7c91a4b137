"""
Path and hash helpers shared by the remote filesystem layer and the modpack engine.
Remote paths are always forward-slash and relative to the servers root.
"""

import re
from typing import Dict, Optional

_HEX40 = re.compile(r"^[0-9a-fA-F]{40}$")
_HEX64 = re.compile(r"^[0-9a-fA-F]{64}$")


def normalize_rel_path(raw: Optional[str]) -> str:
    """
    Normalizes a relative file path coming from an index or a user

    Args:
        raw: Raw path (may use backslashes, leading slashes or "./")

    Returns:
        Normalized "a/b/c" path, or "" if the path is empty or tries to
        leave its root through "." / ".." segments
    """
    value = str(raw or "").strip().replace("\\", "/")
    while value.startswith("./"):
        value = value[2:]
    parts = [p for p in value.split("/") if p]
    if not parts:
        return ""
    for part in parts:
        if part in (".", ".."):
            return ""
    return "/".join(parts)


def join_rel_path(left: str, right: str) -> str:
    """Joins two relative paths, tolerating empty sides and stray slashes"""
    a = "/".join(p for p in str(left or "").replace("\\", "/").split("/") if p)
    b = "/".join(p for p in str(right or "").replace("\\", "/").split("/") if p)
    if not a:
        return b
    if not b:
        return a
    return f"{a}/{b}"


def is_hex40(value: Optional[str]) -> bool:
    """True for a well-formed sha1 hex digest"""
    return bool(_HEX40.match(str(value or "").strip()))


def is_hex64(value: Optional[str]) -> bool:
    """True for a well-formed sha256 hex digest"""
    return bool(_HEX64.match(str(value or "").strip()))


def checksum_kwargs(checksum: Optional[str]) -> Dict[str, str]:
    """
    Maps a bare checksum onto the download() keyword it belongs to

    Args:
        checksum: Hex digest of unknown algorithm

    Returns:
        {"sha1": ...} for 40 hex chars, {"sha256": ...} for 64, {} otherwise
    """
    value = str(checksum or "").strip().lower()
    if is_hex40(value):
        return {"sha1": value}
    if is_hex64(value):
        return {"sha256": value}
    return {}


def is_under(path: str, prefix: str) -> bool:
    """True if path is inside the directory prefix (e.g. "mods/")"""
    prefix = prefix.rstrip("/") + "/"
    return path.startswith(prefix)
