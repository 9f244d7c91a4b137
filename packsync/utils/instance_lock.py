"""
Advisory per-instance lock so two installs/updates never run on the same instance
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Set

from ..core.errors import InstanceBusyError


class InstanceLockRegistry:
    """Non-blocking, in-process locks keyed by instance id"""

    def __init__(self):
        self._held: Set[str] = set()
        self._guard = threading.Lock()

    def is_locked(self, instance_id: str) -> bool:
        with self._guard:
            return instance_id in self._held

    @contextmanager
    def hold(self, instance_id: str) -> Iterator[None]:
        """
        Holds the lock for instance_id for the duration of the block

        Raises:
            InstanceBusyError: if another operation already holds it
        """
        with self._guard:
            if instance_id in self._held:
                raise InstanceBusyError(f"another install/update is running on '{instance_id}'")
            self._held.add(instance_id)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(instance_id)


# Shared by every ModpackManager in the process unless one is given its own
instance_locks = InstanceLockRegistry()
