"""
Update Planner - decides per file what an update does.

Updates are safe by default: a stale file left behind is preferable to a lost
world or an overwritten hand-edited config.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from ...core.remote import RemoteFileSystem
from ...utils.path_utils import is_hex40, is_under, join_rel_path
from .fetch_pool import FetchItem

logger = logging.getLogger(__name__)

# Never written by an update
PROTECTED_DIRS = ("world/", "saves/", "defaultconfigs/")
# Written only if the file does not exist yet
USER_CONFIG_DIRS = ("config/",)
# Only obsolete files under these directories are deleted
CLEANUP_DIRS = ("mods/",)


class PlanAction(Enum):
    SKIP_UNCHANGED = "skip_unchanged"
    SKIP_PROTECTED = "skip_protected"
    FETCH = "fetch"
    DELETE_OBSOLETE = "delete_obsolete"


@dataclass
class PlanDecision:
    path: str
    action: PlanAction
    item: Optional[FetchItem] = None


@dataclass
class UpdatePlan:
    decisions: List[PlanDecision] = field(default_factory=list)

    def _with(self, action: PlanAction) -> List[PlanDecision]:
        return [d for d in self.decisions if d.action == action]

    @property
    def fetch_items(self) -> List[FetchItem]:
        return [d.item for d in self._with(PlanAction.FETCH) if d.item is not None]

    @property
    def deletions(self) -> List[str]:
        return [d.path for d in self._with(PlanAction.DELETE_OBSOLETE)]

    @property
    def unchanged(self) -> List[str]:
        return [d.path for d in self._with(PlanAction.SKIP_UNCHANGED)]

    @property
    def protected(self) -> List[str]:
        return [d.path for d in self._with(PlanAction.SKIP_PROTECTED)]

    def summary(self) -> Dict[str, int]:
        return {action.value: len(self._with(action)) for action in PlanAction}


def hashes_match(old_sha1: Optional[str], new_sha1: Optional[str]) -> bool:
    """True only when both sides are well-formed sha1 digests and equal"""
    if not (is_hex40(old_sha1) and is_hex40(new_sha1)):
        return False
    return old_sha1.strip().lower() == new_sha1.strip().lower()


class UpdatePlanner:
    """Diffs the installed file manifest against a newer one"""

    def __init__(self, fs: RemoteFileSystem):
        self.fs = fs

    def plan(self, instance_root: str, old_files: Dict[str, str], new_files: List[FetchItem]) -> UpdatePlan:
        """
        Builds the update plan

        Args:
            instance_root: Instance directory (used to check which configs exist)
            old_files: path -> sha1 from the previous pack state record
            new_files: Files of the new index

        Returns:
            UpdatePlan with one decision per new file plus one per obsolete mod
        """
        plan = UpdatePlan()
        new_paths = set()

        for item in new_files:
            new_paths.add(item.path)

            if hashes_match(old_files.get(item.path), item.sha1):
                plan.decisions.append(PlanDecision(item.path, PlanAction.SKIP_UNCHANGED, item))
            elif self._is_protected(instance_root, item.path):
                plan.decisions.append(PlanDecision(item.path, PlanAction.SKIP_PROTECTED, item))
            else:
                plan.decisions.append(PlanDecision(item.path, PlanAction.FETCH, item))

        for path in sorted(old_files):
            if path in new_paths:
                continue
            if any(is_under(path, d) for d in CLEANUP_DIRS):
                plan.decisions.append(PlanDecision(path, PlanAction.DELETE_OBSOLETE))
            else:
                logger.debug("Leaving obsolete file outside mods/ in place: %s", path)

        logger.debug("Update plan: %s", plan.summary())
        return plan

    def _is_protected(self, instance_root: str, path: str) -> bool:
        if any(is_under(path, d) for d in PROTECTED_DIRS):
            return True
        if any(is_under(path, d) for d in USER_CONFIG_DIRS):
            # An existing config is assumed to be user-modified
            return self.fs.exists(join_rel_path(instance_root, path))
        return False
