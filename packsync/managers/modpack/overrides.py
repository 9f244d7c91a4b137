"""
Override Reconciler - moves a pack's bundled files into the instance root.
"""

import logging
from typing import Callable, List, Optional

from ...core.errors import OverrideError, RemoteFSError, RemoteNotFoundError
from ...core.remote import RemoteFileSystem
from ...utils.path_utils import join_rel_path

logger = logging.getLogger(__name__)

# Applied in order; later layers win
OVERRIDE_LAYERS = ("overrides", "server-overrides")


class OverrideReconciler:
    """Applies overrides/ and server-overrides/ entry by entry (no recursive merge)"""

    def __init__(self, fs: RemoteFileSystem):
        self.fs = fs

    def apply(
        self,
        extract_dir: str,
        instance_root: str,
        log_callback: Optional[Callable[[str], None]] = None
    ) -> List[str]:
        """
        Moves each top-level entry of every override layer into instance_root

        Args:
            extract_dir: Where the pack archive was unpacked
            instance_root: Instance directory
            log_callback: Function to report progress

        Returns:
            Names of the moved entries, in move order

        Raises:
            OverrideError: if an entry cannot be moved into place
        """
        moved = []
        for layer in OVERRIDE_LAYERS:
            layer_dir = join_rel_path(extract_dir, layer)
            try:
                entries = self.fs.list(layer_dir)
            except RemoteNotFoundError:
                # Overrides are optional
                continue
            except RemoteFSError as e:
                raise OverrideError(f"cannot list {layer}/: {e}") from e

            for entry in entries:
                name = entry.name.strip()
                if not name or name in (".", "..") or "/" in name:
                    continue
                self._replace(join_rel_path(layer_dir, name), join_rel_path(instance_root, name))
                moved.append(name)

            if log_callback and entries:
                log_callback(f"  Applied {len(entries)} entries from {layer}/\n")
            logger.debug("Applied %s/ (%d entries)", layer, len(entries))

        return moved

    def _replace(self, src: str, dst: str):
        try:
            if self.fs.exists(dst):
                self.fs.delete(dst)
            self.fs.move(src, dst)
        except RemoteFSError as e:
            raise OverrideError(f"failed to move override {src} -> {dst}: {e}") from e
