"""
Fetch Pool - bounded concurrent download of modpack content files.

Workers pull from one shared queue until it is empty or a failure sets the
abort flag. Items already in flight when the flag is set run to completion;
files written before the failure are left in place.
"""

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

from ...core.errors import FetchError
from ...core.remote import RemoteFileSystem
from ...utils.path_utils import is_hex40, join_rel_path

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = 4

ProgressCallback = Callable[[int, int, str], None]


@dataclass
class FetchItem:
    """One content file to materialize, relative to the instance root"""
    path: str
    url: str
    sha1: str = ""


class FetchPool:
    """Downloads a batch of FetchItems with at most MAX_CONCURRENCY in flight"""

    def __init__(self, fs: RemoteFileSystem, max_workers: int = MAX_CONCURRENCY):
        self.fs = fs
        self.max_workers = max(1, min(MAX_CONCURRENCY, int(max_workers or MAX_CONCURRENCY)))

    def concurrency_for(self, total: int) -> int:
        return max(1, min(self.max_workers, total))

    def run(self, instance_root: str, items: List[FetchItem], on_progress: Optional[ProgressCallback] = None) -> int:
        """
        Downloads every item into instance_root

        Args:
            instance_root: Instance directory the item paths are relative to
            items: Files to fetch
            on_progress: Called as (done, total, current_path) after each success

        Returns:
            Number of files fetched

        Raises:
            FetchError: the first failure encountered (later ones are only logged)
        """
        total = len(items)
        if total == 0:
            return 0

        queue: Deque[FetchItem] = deque(items)
        queue_lock = threading.Lock()
        progress_lock = threading.Lock()
        abort = threading.Event()
        errors: List[FetchError] = []
        done = [0]

        def next_item() -> Optional[FetchItem]:
            with queue_lock:
                if abort.is_set() or not queue:
                    return None
                return queue.popleft()

        def worker():
            while True:
                item = next_item()
                if item is None:
                    return
                try:
                    self._fetch(instance_root, item)
                except FetchError as e:
                    with queue_lock:
                        errors.append(e)
                        abort.set()
                    logger.warning("Fetch failed for %s: %s", item.path, e)
                    return

                with progress_lock:
                    done[0] += 1
                    if on_progress:
                        on_progress(done[0], total, item.path)

        concurrency = self.concurrency_for(total)
        logger.debug("Fetching %d files with %d workers", total, concurrency)

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="fetch") as executor:
            futures = [executor.submit(worker) for _ in range(concurrency)]
            for future in futures:
                future.result()

        if errors:
            raise errors[0]
        return done[0]

    def _fetch(self, instance_root: str, item: FetchItem):
        path = join_rel_path(instance_root, item.path)
        sha1 = item.sha1.strip().lower() if is_hex40(item.sha1) else None
        try:
            self.fs.download(path, item.url, sha1=sha1)
        except Exception as e:
            raise FetchError(f"failed to fetch {item.path}: {e}", path=item.path) from e
