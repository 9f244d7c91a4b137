import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from ...config import EngineConfig
from ...core.api import ModrinthAPI, ResolvedServerJar
from ...core.errors import (
    FetchError,
    ModpackError,
    ParseError,
    PersistError,
    PlanError,
    RemoteFSError,
    RemoteNotFoundError,
)
from ...core.remote import RemoteFileSystem
from ...utils.instance_lock import InstanceLockRegistry, instance_locks
from ...utils.logger import LoggerMixin
from ...utils.path_utils import is_hex40, join_rel_path, normalize_rel_path
from ..loader import LoaderManager
from .fetch_pool import FetchItem, FetchPool, ProgressCallback
from .manifest import (
    INDEX_FILE_NAME,
    LoaderSpec,
    PackageIndex,
    PackSource,
    PackStateRecord,
    StateFile,
    parse_index,
    read_state,
    resolve_loader,
    write_state,
)
from .overrides import OverrideReconciler
from .update_planner import UpdatePlan, UpdatePlanner

_module_logger = logging.getLogger(__name__)


class UpdateStatus(Enum):
    UPDATED = "updated"
    NO_CHANGES = "no_changes"


@dataclass
class InstallResult:
    record: PackStateRecord
    fetched: int
    bootstrap_path: Optional[str] = None
    overrides: List[str] = field(default_factory=list)
    cleanup_error: Optional[str] = None


@dataclass
class UpdateResult:
    status: UpdateStatus
    record: PackStateRecord
    plan: Optional[UpdatePlan] = None
    fetched: int = 0
    deleted: List[str] = field(default_factory=list)
    bootstrap_path: Optional[str] = None
    cleanup_error: Optional[str] = None


@dataclass
class _PreparedPack:
    """A pack archive unpacked into the scratch workspace"""
    source: PackSource
    index: PackageIndex
    loader: LoaderSpec
    extract_dir: str

    def fetch_items(self) -> List[FetchItem]:
        return [
            FetchItem(path=f.path, url=f.url, sha1=f.sha1 if is_hex40(f.sha1) else "")
            for f in self.index.server_files()
        ]


class ModpackManager(LoggerMixin):
    """Installs Modrinth modpacks onto an instance and keeps them updated"""

    def __init__(
        self,
        config: EngineConfig,
        fs: RemoteFileSystem,
        loader_manager: Optional[LoaderManager] = None,
        modrinth_api: Optional[ModrinthAPI] = None,
        locks: Optional[InstanceLockRegistry] = None,
        log_callback: Optional[Callable[[str], None]] = None
    ):
        self.config = config
        self.fs = fs
        self.loader_manager = loader_manager or LoaderManager.from_config(config)
        self.modrinth_api = modrinth_api or ModrinthAPI(config.modrinth_api_url, config.user_agent)
        self.locks = locks or instance_locks
        self.fetch_pool = FetchPool(fs, config.fetch_concurrency)
        self.overrides = OverrideReconciler(fs)
        self.planner = UpdatePlanner(fs)
        self.logger = _module_logger
        self.log_callback = log_callback

    # ==================== PUBLIC API ====================

    def get_installed_pack(self, instance_id: str) -> Optional[PackStateRecord]:
        """Returns the pack state record of an instance, or None if nothing is installed"""
        return read_state(self.fs, self._instance_root(instance_id), self.config.state_file_name)

    def install_modpack(
        self,
        instance_id: str,
        source: PackSource,
        on_progress: Optional[ProgressCallback] = None
    ) -> InstallResult:
        """
        Installs a modpack into an instance

        Args:
            instance_id: Instance directory, relative to the servers root
            source: Where to get the .mrpack archive from
            on_progress: Called as (done, total, current_file) while content downloads

        Returns:
            InstallResult with the persisted pack state record

        Raises:
            ModpackError: the first failure; nothing is rolled back
        """
        inst = self._instance_root(instance_id)
        with self.locks.hold(inst):
            try:
                result = self._install(inst, source, on_progress)
            except ModpackError as e:
                self._log(f"Error during installation: {e}", "error")
                self._cleanup(inst)
                raise
            result.cleanup_error = self._cleanup(inst)
            return result

    def update_modpack(
        self,
        instance_id: str,
        target: Optional[PackSource] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> UpdateResult:
        """
        Updates the installed modpack to the latest (or the given) version

        World data, saves, defaultconfigs and existing configs are never overwritten;
        obsolete files are only removed from mods/.

        Args:
            instance_id: Instance directory, relative to the servers root
            target: Explicit version to update to (default: latest on Modrinth)
            on_progress: Called as (done, total, current_file) while content downloads

        Returns:
            UpdateResult; status is NO_CHANGES when already on the target version

        Raises:
            PlanError: if no pack is installed or no version source is available
            ModpackError: any later failure; the previous state record is kept
        """
        inst = self._instance_root(instance_id)
        with self.locks.hold(inst):
            record = self._require_state(inst)
            new_source = self._check_version(record, target)
            if new_source is None:
                self._log(f"{inst}: already on version {record.source.version_id}, no changes", "success")
                return UpdateResult(status=UpdateStatus.NO_CHANGES, record=record)

            try:
                result = self._update(inst, record, new_source, on_progress)
            except ModpackError as e:
                self._log(f"Error during update: {e}", "error")
                self._cleanup(inst)
                raise
            result.cleanup_error = self._cleanup(inst)
            return result

    def preview_update(self, instance_id: str, target: Optional[PackSource] = None) -> Optional[UpdatePlan]:
        """
        Computes the update plan without touching instance files

        Returns:
            The plan, or None if the instance is already on the target version
        """
        inst = self._instance_root(instance_id)
        with self.locks.hold(inst):
            record = self._require_state(inst)
            new_source = self._check_version(record, target)
            if new_source is None:
                return None
            try:
                prepared = self._load_pack(inst, new_source)
                return self.planner.plan(inst, record.file_hashes(), prepared.fetch_items())
            finally:
                self._cleanup(inst)

    # ==================== INSTALL ====================

    def _install(self, inst: str, source: PackSource, on_progress: Optional[ProgressCallback]) -> InstallResult:
        self._log("MODPACK INSTALLATION", "info")

        self._log_step(1, 6, "Downloading and reading modpack...")
        prepared = self._load_pack(inst, source)
        index = prepared.index
        self._log(f"  -Modpack: {index.name or '?'} {index.version_id}")
        self._log(f"  -Minecraft: {index.minecraft}")
        self._log(f"  -Loader: {prepared.loader.kind.value} {prepared.loader.version}")

        self._log_step(2, 6, "Resolving mod loader...")
        jar = self._resolve_jar(index, prepared.loader)

        self._log_step(3, 6, "Applying overrides...")
        moved = self.overrides.apply(prepared.extract_dir, inst, self.log_callback)

        items = prepared.fetch_items()
        self._log_step(4, 6, f"Downloading {len(items)} files...")
        fetched = self.fetch_pool.run(inst, items, on_progress)
        self._log(f"Downloaded {fetched}/{len(items)} files", "success")

        self._log_step(5, 6, "Installing mod loader...")
        jar_path, bootstrap_path = self._bootstrap_loader(inst, index, prepared.loader, jar)

        self._log_step(6, 6, "Saving pack state...")
        record = PackStateRecord(
            source=prepared.source,
            minecraft_version=index.minecraft,
            loader=prepared.loader,
            jar_path=jar_path,
            files=[StateFile(path=item.path, sha1=item.sha1) for item in items],
        )
        write_state(self.fs, inst, self.config.state_file_name, record)

        self._log("MODPACK INSTALLED SUCCESSFULLY", "success")
        return InstallResult(record=record, fetched=fetched, bootstrap_path=bootstrap_path, overrides=moved)

    # ==================== UPDATE ====================

    def _check_version(self, record: PackStateRecord, target: Optional[PackSource]) -> Optional[PackSource]:
        """Returns the source to update to, or None if there is nothing newer"""
        if target is not None:
            if target.version_id and target.version_id == record.source.version_id:
                return None
            return target

        if record.source.kind != "modrinth" or not record.source.project_id:
            raise PlanError(
                f"cannot check for updates of a '{record.source.kind}' pack; pass an explicit target version")

        game_version = record.minecraft_version if self.config.pin_minecraft_version else None
        latest = self.modrinth_api.get_latest_version(record.source.project_id, game_version=game_version)
        if not latest or not latest.get("id"):
            self._log(f"No published versions found for {record.source.project_id}", "warning")
            return None
        if latest["id"] == record.source.version_id:
            return None

        self._log(f"New version available: {latest.get('version_number') or latest['id']}", "info")
        return PackSource(kind="modrinth", project_id=record.source.project_id, version_id=latest["id"])

    def _update(
        self,
        inst: str,
        record: PackStateRecord,
        source: PackSource,
        on_progress: Optional[ProgressCallback]
    ) -> UpdateResult:
        self._log("MODPACK UPDATE", "info")

        self._log_step(1, 6, "Downloading and reading new modpack version...")
        prepared = self._load_pack(inst, source)
        index = prepared.index

        self._log_step(2, 6, "Resolving mod loader...")
        loader_changed = (prepared.loader != record.loader or index.minecraft != record.minecraft_version)
        jar: Optional[ResolvedServerJar] = None
        if prepared.loader.kind.automatable and (loader_changed or not record.jar_path):
            jar = self._resolve_jar(index, prepared.loader)

        self._log_step(3, 6, "Comparing installed files...")
        old_files = record.file_hashes()
        items = prepared.fetch_items()
        plan = self.planner.plan(inst, old_files, items)
        summary = plan.summary()
        self._log(
            f"  {summary['fetch']} to download, {summary['skip_unchanged']} unchanged, "
            f"{summary['skip_protected']} protected, {summary['delete_obsolete']} to remove")

        self._log_step(4, 6, f"Downloading {len(plan.fetch_items)} changed files...")
        fetched = self.fetch_pool.run(inst, plan.fetch_items, on_progress)

        self._log_step(5, 6, "Removing obsolete mods and updating loader...")
        deleted = self._delete_obsolete(inst, plan.deletions)

        jar_path = record.jar_path
        bootstrap_path = None
        if jar is not None:
            jar_path, bootstrap_path = self._bootstrap_loader(inst, index, prepared.loader, jar)
        elif not prepared.loader.kind.automatable:
            jar_path = None
            if loader_changed:
                jar_path, bootstrap_path = self._bootstrap_loader(inst, index, prepared.loader, None)

        self._log_step(6, 6, "Saving pack state...")
        protected = set(plan.protected)
        files = []
        for item in items:
            if item.path in protected:
                # Not written by this update: keep what was recorded before, if anything
                if item.path in old_files:
                    files.append(StateFile(path=item.path, sha1=old_files[item.path]))
            else:
                files.append(StateFile(path=item.path, sha1=item.sha1))

        new_record = PackStateRecord(
            source=prepared.source,
            minecraft_version=index.minecraft,
            loader=prepared.loader,
            jar_path=jar_path,
            files=files,
        )
        write_state(self.fs, inst, self.config.state_file_name, new_record)

        self._log("MODPACK UPDATED SUCCESSFULLY", "success")
        return UpdateResult(
            status=UpdateStatus.UPDATED,
            record=new_record,
            plan=plan,
            fetched=fetched,
            deleted=deleted,
            bootstrap_path=bootstrap_path,
        )

    def _delete_obsolete(self, inst: str, paths: List[str]) -> List[str]:
        deleted = []
        for path in paths:
            try:
                self.fs.delete(join_rel_path(inst, path))
            except RemoteNotFoundError:
                self._log(f"  Already gone: {path}")
                continue
            deleted.append(path)
            self._log(f"  Removed {path}")
        return deleted

    # ==================== SHARED STEPS ====================

    def _instance_root(self, instance_id: str) -> str:
        inst = normalize_rel_path(instance_id)
        if not inst:
            raise ModpackError(f"invalid instance id: {instance_id!r}")
        return inst

    def _scratch_root(self, inst: str) -> str:
        return join_rel_path(inst, self.config.scratch_dir_name)

    def _require_state(self, inst: str) -> PackStateRecord:
        record = read_state(self.fs, inst, self.config.state_file_name)
        if record is None:
            raise PlanError(f"no modpack installed on {inst}")
        return record

    def _load_pack(self, inst: str, source: PackSource) -> _PreparedPack:
        """Fetches the archive into the scratch workspace, unpacks it and parses the index"""
        scratch = self._scratch_root(inst)
        extract_dir = join_rel_path(scratch, "mrpack")

        # Clean old temp, then unzip to temp (never directly into the instance)
        try:
            self.fs.delete(extract_dir)
        except RemoteNotFoundError:
            pass
        except RemoteFSError as e:
            self._log(f"Could not clear old scratch workspace: {e}", "warning")
        try:
            self.fs.mkdir(extract_dir)
        except RemoteFSError as e:
            raise FetchError(f"cannot create scratch workspace: {e}") from e

        source = self._resolve_source(source)
        archive_path = self._acquire_archive(inst, scratch, source)

        try:
            self.fs.unzip(archive_path, extract_dir, strip_top_level=True)
        except RemoteFSError as e:
            raise ParseError(f"invalid modpack archive: {e}") from e

        try:
            raw_index = self.fs.read(join_rel_path(extract_dir, INDEX_FILE_NAME))
        except RemoteNotFoundError as e:
            raise ParseError(f"{INDEX_FILE_NAME} not found in archive") from e
        except RemoteFSError as e:
            raise ParseError(f"cannot read {INDEX_FILE_NAME}: {e}") from e

        index = parse_index(raw_index)
        index.project_id = source.project_id
        loader = resolve_loader(index)
        return _PreparedPack(source=source, index=index, loader=loader, extract_dir=extract_dir)

    def _resolve_source(self, source: PackSource) -> PackSource:
        """Fills in the archive URL, file name and hash of a Modrinth source"""
        if source.kind != "modrinth":
            if source.kind not in ("url", "upload"):
                raise ParseError(f"unknown pack source kind: {source.kind!r}")
            return source

        if not source.version_id:
            if not source.project_id:
                raise ParseError("modrinth source needs a project_id or a version_id")
            latest = self.modrinth_api.get_latest_version(source.project_id)
            if not latest:
                raise FetchError(f"no versions published for {source.project_id}")
            version_data = latest
        else:
            version_data = self.modrinth_api.get_version(source.version_id)

        archive = self.modrinth_api.pick_mrpack_file(version_data)
        return PackSource(
            kind="modrinth",
            project_id=source.project_id or version_data.get("project_id"),
            version_id=str(version_data.get("id") or source.version_id),
            url=archive["url"],
            file_name=archive["filename"],
            sha1=archive["sha1"],
        )

    def _acquire_archive(self, inst: str, scratch: str, source: PackSource) -> str:
        if source.kind == "upload":
            rel = normalize_rel_path(source.file_name)
            if not rel:
                raise ParseError("upload source needs the archive path (file_name)")
            return join_rel_path(inst, rel)

        if not source.url:
            raise FetchError("pack source has no download url")
        if not source.file_name:
            source.file_name = source.url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1] or "modpack.mrpack"

        archive_name = normalize_rel_path(source.file_name).rsplit("/", 1)[-1] or "modpack.mrpack"
        archive_path = join_rel_path(scratch, archive_name)
        self._log(f"Downloading {archive_name}...")
        try:
            self.fs.download(archive_path, source.url, sha1=source.sha1 if is_hex40(source.sha1) else None)
        except RemoteFSError as e:
            raise FetchError(f"failed to download modpack archive: {e}", path=archive_name) from e
        return archive_path

    def _resolve_jar(self, index: PackageIndex, loader: LoaderSpec) -> Optional[ResolvedServerJar]:
        if not loader.kind.automatable:
            self._log(f"{loader.kind.value} needs a manual server bootstrap; files will be staged only", "warning")
            return None
        return self.loader_manager.resolve_server_jar(index.minecraft, loader)

    def _bootstrap_loader(self, inst: str, index: PackageIndex, loader: LoaderSpec, jar: Optional[ResolvedServerJar]):
        """Returns (jar_path, bootstrap_path); exactly one of them is set"""
        if jar is not None:
            jar_path = self.loader_manager.install_server_jar(
                self.fs, inst, self.config.server_jar_name, jar, self.log_callback)
            self._log(f"{loader.kind.value} server installed ({jar_path})", "success")
            return jar_path, None

        try:
            doc = self.loader_manager.write_bootstrap_instructions(
                self.fs, inst, self.config.bootstrap_file_name, index.minecraft, loader, index.name)
        except RemoteFSError as e:
            raise PersistError(f"failed to write loader setup instructions: {e}") from e
        self._log(f"Manual {loader.kind.value} setup required, see {doc}", "warning")
        return None, doc

    def _cleanup(self, inst: str) -> Optional[str]:
        """Best-effort removal of the scratch workspace; returns the error text if it failed"""
        scratch = self._scratch_root(inst)
        try:
            self.fs.delete(scratch)
        except RemoteNotFoundError:
            return None
        except RemoteFSError as e:
            self._log(f"Could not remove scratch workspace {scratch}: {e}", "warning")
            return str(e)
        return None
