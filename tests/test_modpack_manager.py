import io
import json
import zipfile

import pytest

from packsync.config import EngineConfig
from packsync.core.errors import (
    FetchError,
    InstanceBusyError,
    ParseError,
    PlanError,
    RemoteFSError,
    ResolutionError,
)
from packsync.managers.loader import LoaderManager
from packsync.managers.modpack import PackSource
from packsync.managers.modpack.modpack_manager import ModpackManager, UpdateStatus

FABRIC = {"minecraft": "1.20.1", "fabric-loader": "0.15.0"}


def read_state(servers_root, instance="srv1"):
    return json.loads((servers_root / instance / ".packsync.json").read_text(encoding="utf-8"))


@pytest.fixture()
def installed_v1(manager, pack_server, servers_root):
    """Installs a Fabric pack (v1) with mods, configs, world data and scripts"""
    files = {
        "a": pack_server.host("mods/a.jar", b"A1"),
        "b": pack_server.host("mods/b.jar", b"B1"),
        "same": pack_server.host("mods/same.jar", b"SAME"),
        "config": pack_server.host("config/c.toml", b"C1"),
        "world": pack_server.host("world/datapacks/d.zip", b"D1"),
        "script": pack_server.host("kubejs/s.js", b"S1"),
    }
    pack_server.publish("cobble", "v1", list(files.values()), FABRIC, date="2024-01-01T00:00:00Z")
    manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="cobble"))
    return files


# ==================== INSTALL ====================

def test_install_fabric_pack(manager, pack_server, servers_root, downloader, log_lines):
    mod = pack_server.host("mods/sodium.jar", b"sodium")
    lib = pack_server.host("mods/lithium.jar", b"lithium")
    client_only = pack_server.host("mods/iris.jar", b"iris", env_server="unsupported")
    pack_server.publish(
        "cobble", "v1", [mod, lib, client_only], FABRIC,
        overrides={"config/sodium.json": b"{}", "options.txt": b"a"},
        server_overrides={"server.properties": b"motd=hi"},
    )

    result = manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="cobble"))

    inst = servers_root / "srv1"
    assert (inst / "mods" / "sodium.jar").read_bytes() == b"sodium"
    assert (inst / "mods" / "lithium.jar").read_bytes() == b"lithium"
    assert not (inst / "mods" / "iris.jar").exists()
    assert client_only["downloads"][0] not in downloader.requested
    assert (inst / "config" / "sodium.json").read_bytes() == b"{}"
    assert (inst / "options.txt").read_bytes() == b"a"
    assert (inst / "server.properties").read_bytes() == b"motd=hi"
    assert (inst / "server.jar").read_bytes() == b"fabric-1.20.1-0.15.0"
    assert not (inst / ".packsync_tmp").exists()

    assert result.fetched == 2
    assert result.bootstrap_path is None
    assert result.cleanup_error is None
    assert set(result.overrides) == {"config", "options.txt", "server.properties"}

    state = read_state(servers_root)
    assert state["schema_version"] == 1
    assert state["provider"] == "packsync"
    assert state["source"]["kind"] == "modrinth"
    assert state["source"]["project_id"] == "cobble"
    assert state["source"]["version_id"] == "v1"
    assert state["source"]["file_name"] == "cobble-v1.mrpack"
    assert state["minecraft"] == {"version": "1.20.1"}
    assert state["loader"] == {"kind": "fabric", "version": "0.15.0"}
    assert state["server"] == {"jar_path": "server.jar"}
    assert state["files"] == [
        {"path": "mods/lithium.jar", "sha1": pack_server.sha1(b"lithium")},
        {"path": "mods/sodium.jar", "sha1": pack_server.sha1(b"sodium")},
    ]
    assert any(line.startswith("Step 1/6") for line in log_lines)


def test_install_forge_pack_writes_bootstrap_instructions(manager, pack_server, servers_root, resolver):
    mod = pack_server.host("mods/create.jar", b"create")
    pack_server.publish("forgepack", "f1", [mod], {"minecraft": "1.20.1", "forge": "47.2.0"})

    result = manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="forgepack"))

    inst = servers_root / "srv1"
    assert (inst / "mods" / "create.jar").read_bytes() == b"create"
    assert not (inst / "server.jar").exists()
    assert result.bootstrap_path == "PACKSYNC_LOADER_SETUP.txt"
    notes = (inst / "PACKSYNC_LOADER_SETUP.txt").read_text(encoding="utf-8")
    assert "forge-1.20.1-47.2.0-installer.jar" in notes
    assert "--installServer" in notes
    assert resolver.calls == []

    state = read_state(servers_root)
    assert state["loader"] == {"kind": "forge", "version": "47.2.0"}
    assert state["server"] == {"jar_path": None}


def test_install_prefers_fabric_over_forge(manager, pack_server, servers_root):
    pack_server.publish("mixed", "m1", [], {"minecraft": "1.20.1", "forge": "47.2.0", "fabric-loader": "0.15.0"})

    manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="mixed"))

    assert read_state(servers_root)["loader"]["kind"] == "fabric"


def test_install_from_url(manager, pack_server, servers_root):
    mod = pack_server.host("mods/a.jar", b"A")
    version = pack_server.publish("cobble", "v1", [mod], FABRIC)

    manager.install_modpack("srv1", PackSource(kind="url", url=version["files"][0]["url"]))

    assert (servers_root / "srv1" / "mods" / "a.jar").read_bytes() == b"A"
    state = read_state(servers_root)
    assert state["source"]["kind"] == "url"
    assert state["source"]["file_name"] == "v1.mrpack"
    assert "version_id" not in state["source"]


def test_install_from_uploaded_archive(manager, pack_server, servers_root):
    mod = pack_server.host("mods/a.jar", b"A")
    index = {"formatVersion": 1, "versionId": "local", "name": "Local",
             "files": [mod], "dependencies": {"minecraft": "1.21", "quilt-loader": "0.26.0"}}
    upload = servers_root / "srv1" / "uploads" / "pack.mrpack"
    upload.parent.mkdir(parents=True)
    upload.write_bytes(pack_server.build_archive(index))

    manager.install_modpack("srv1", PackSource(kind="upload", file_name="uploads/pack.mrpack"))

    inst = servers_root / "srv1"
    assert (inst / "mods" / "a.jar").read_bytes() == b"A"
    assert (inst / "server.jar").read_bytes() == b"quilt-1.21-0.26.0"
    assert read_state(servers_root)["loader"] == {"kind": "quilt", "version": "0.26.0"}


def test_install_fails_on_missing_content(manager, pack_server, servers_root):
    good = pack_server.host("mods/good.jar", b"good")
    bad = pack_server.host("mods/bad.jar", b"bad")
    pack_server.content.pop(bad["downloads"][0])
    pack_server.publish("cobble", "v1", [good, bad], FABRIC)

    with pytest.raises(FetchError) as exc_info:
        manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="cobble"))

    assert exc_info.value.path == "mods/bad.jar"
    inst = servers_root / "srv1"
    assert (inst / "mods" / "good.jar").read_bytes() == b"good"
    assert not (inst / ".packsync.json").exists()
    assert not (inst / "server.jar").exists()
    assert not (inst / ".packsync_tmp").exists()


def test_install_fails_on_corrupted_content(manager, pack_server, servers_root):
    mod = pack_server.host("mods/a.jar", b"A")
    pack_server.content[mod["downloads"][0]] = b"tampered"
    pack_server.publish("cobble", "v1", [mod], FABRIC)

    with pytest.raises(FetchError):
        manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="cobble"))

    assert not (servers_root / "srv1" / "mods" / "a.jar").exists()


def test_install_rejects_unsupported_loader_before_fetching(manager, pack_server, servers_root, downloader):
    mod = pack_server.host("mods/a.jar", b"A")
    pack_server.publish("odd", "o1", [mod], {"minecraft": "1.20.1", "liteloader": "1.0"})

    with pytest.raises(ResolutionError, match="unsupported loader"):
        manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="odd"))

    assert mod["downloads"][0] not in downloader.requested
    assert not (servers_root / "srv1" / ".packsync.json").exists()


def test_install_quilt_without_jar_source_fails_before_writing(
        local_fs, modrinth, pack_server, servers_root, downloader):
    mod = pack_server.host("mods/a.jar", b"A")
    pack_server.publish("quiltpack", "q1", [mod], {"minecraft": "1.20.1", "quilt-loader": "0.26.0"},
                        overrides={"config/q.toml": b"q"})
    manager = ModpackManager(EngineConfig(), local_fs, modrinth_api=modrinth)

    with pytest.raises(ResolutionError, match="panel_url"):
        manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="quiltpack"))

    inst = servers_root / "srv1"
    assert mod["downloads"][0] not in downloader.requested
    assert not (inst / "config").exists()
    assert not (inst / ".packsync.json").exists()


def test_install_rejects_archive_without_index(manager, pack_server, servers_root):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("readme.txt", "hello")
    pack_server.content["https://cdn.test/broken.mrpack"] = buffer.getvalue()

    with pytest.raises(ParseError, match="modrinth.index.json"):
        manager.install_modpack("srv1", PackSource(kind="url", url="https://cdn.test/broken.mrpack"))


def test_install_rejects_non_zip_archive(manager, pack_server):
    pack_server.content["https://cdn.test/junk.mrpack"] = b"not a zip"

    with pytest.raises(ParseError, match="invalid modpack archive"):
        manager.install_modpack("srv1", PackSource(kind="url", url="https://cdn.test/junk.mrpack"))


def test_install_on_busy_instance(manager, pack_server):
    pack_server.publish("cobble", "v1", [], FABRIC)

    with manager.locks.hold("srv1"):
        with pytest.raises(InstanceBusyError):
            manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="cobble"))

    manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="cobble"))


def test_managers_share_instance_locks(manager, pack_server, local_fs, modrinth, resolver):
    pack_server.publish("cobble", "v1", [], FABRIC)
    other = ModpackManager(EngineConfig(), local_fs, loader_manager=LoaderManager(resolver), modrinth_api=modrinth)

    with manager.locks.hold("srv1"):
        with pytest.raises(InstanceBusyError):
            other.install_modpack("srv1", PackSource(kind="modrinth", project_id="cobble"))

    assert other.locks is manager.locks


def test_cleanup_failure_is_reported_not_raised(manager, pack_server, local_fs, servers_root, monkeypatch):
    pack_server.publish("cobble", "v1", [pack_server.host("mods/a.jar", b"A")], FABRIC)
    original_delete = local_fs.delete

    def flaky_delete(path):
        if path == "srv1/.packsync_tmp":
            raise RemoteFSError("permission denied", command="delete", path=path)
        original_delete(path)

    monkeypatch.setattr(local_fs, "delete", flaky_delete)

    result = manager.install_modpack("srv1", PackSource(kind="modrinth", project_id="cobble"))

    assert result.cleanup_error == "permission denied"
    assert read_state(servers_root)["source"]["version_id"] == "v1"


# ==================== UPDATE ====================

def test_update_replaces_changed_files_and_protects_user_data(
        manager, pack_server, servers_root, installed_v1, downloader, resolver):
    inst = servers_root / "srv1"
    (inst / "config" / "c.toml").write_bytes(b"user edited")

    new_files = [
        pack_server.host("mods/a.jar", b"A2"),
        pack_server.host("mods/n.jar", b"N1"),
        installed_v1["same"],
        pack_server.host("config/c.toml", b"C2"),
        pack_server.host("config/new.toml", b"NEW"),
        pack_server.host("world/datapacks/d.zip", b"D2"),
    ]
    pack_server.publish("cobble", "v2", new_files, FABRIC, date="2024-02-01T00:00:00Z")

    result = manager.update_modpack("srv1")

    assert result.status == UpdateStatus.UPDATED
    assert (inst / "mods" / "a.jar").read_bytes() == b"A2"
    assert (inst / "mods" / "n.jar").read_bytes() == b"N1"
    assert not (inst / "mods" / "b.jar").exists()
    assert (inst / "config" / "c.toml").read_bytes() == b"user edited"
    assert (inst / "config" / "new.toml").read_bytes() == b"NEW"
    assert (inst / "world" / "datapacks" / "d.zip").read_bytes() == b"D1"
    assert (inst / "kubejs" / "s.js").read_bytes() == b"S1"
    assert downloader.requested.count(installed_v1["same"]["downloads"][0]) == 1

    assert result.fetched == 3
    assert result.deleted == ["mods/b.jar"]
    assert sorted(result.plan.protected) == ["config/c.toml", "world/datapacks/d.zip"]
    assert result.plan.unchanged == ["mods/same.jar"]
    # Same loader and Minecraft version: the jar is kept
    assert len(resolver.calls) == 1

    state = read_state(servers_root)
    hashes = {f["path"]: f["sha1"] for f in state["files"]}
    assert state["source"]["version_id"] == "v2"
    assert hashes["mods/a.jar"] == pack_server.sha1(b"A2")
    assert hashes["config/c.toml"] == pack_server.sha1(b"C1")
    assert hashes["world/datapacks/d.zip"] == pack_server.sha1(b"D1")
    assert hashes["config/new.toml"] == pack_server.sha1(b"NEW")
    assert "mods/b.jar" not in hashes
    assert "kubejs/s.js" not in hashes
    assert not (inst / ".packsync_tmp").exists()


def test_update_leaves_new_protected_files_out_of_state(manager, pack_server, servers_root, installed_v1):
    files = list(installed_v1.values()) + [pack_server.host("world/new.dat", b"NEWWORLD")]
    pack_server.publish("cobble", "v2", files, FABRIC, date="2024-02-01T00:00:00Z")

    result = manager.update_modpack("srv1")

    inst = servers_root / "srv1"
    assert result.plan.protected == ["world/new.dat"]
    assert not (inst / "world" / "new.dat").exists()
    recorded = {f["path"]: f["sha1"] for f in read_state(servers_root)["files"]}
    assert "world/new.dat" not in recorded
    assert recorded["world/datapacks/d.zip"] == pack_server.sha1(b"D1")
    for path in recorded:
        assert (inst / path).exists(), path


def test_update_without_changes_makes_no_fetches(manager, servers_root, installed_v1, downloader, modrinth):
    before = read_state(servers_root)
    downloader.requested.clear()
    modrinth.calls.clear()

    result = manager.update_modpack("srv1")

    assert result.status == UpdateStatus.NO_CHANGES
    assert result.fetched == 0
    assert downloader.requested == []
    assert modrinth.calls == ["versions:cobble"]
    assert read_state(servers_root) == before


def test_update_is_idempotent(manager, pack_server, installed_v1, downloader):
    pack_server.publish("cobble", "v2", [pack_server.host("mods/a.jar", b"A2")], FABRIC,
                        date="2024-02-01T00:00:00Z")
    manager.update_modpack("srv1")
    downloader.requested.clear()

    second = manager.update_modpack("srv1")

    assert second.status == UpdateStatus.NO_CHANGES
    assert downloader.requested == []


def test_update_ignores_versions_for_other_minecraft_versions(manager, pack_server, installed_v1):
    pack_server.publish("cobble", "v9", [], {"minecraft": "1.21", "fabric-loader": "0.16.0"},
                        date="2025-01-01T00:00:00Z")

    assert manager.update_modpack("srv1").status == UpdateStatus.NO_CHANGES


def test_update_redownloads_jar_when_loader_changes(manager, pack_server, servers_root, installed_v1):
    pack_server.publish("cobble", "v2", [installed_v1["a"]], {"minecraft": "1.20.1", "fabric-loader": "0.16.0"},
                        date="2024-02-01T00:00:00Z")

    manager.update_modpack("srv1")

    assert (servers_root / "srv1" / "server.jar").read_bytes() == b"fabric-1.20.1-0.16.0"
    assert read_state(servers_root)["loader"]["version"] == "0.16.0"


def test_update_to_explicit_version(manager, pack_server, servers_root, installed_v1):
    pack_server.publish("cobble", "v2", [pack_server.host("mods/a.jar", b"A2")], FABRIC,
                        date="2024-02-01T00:00:00Z")
    pack_server.publish("cobble", "v3", [pack_server.host("mods/a.jar", b"A3")], FABRIC,
                        date="2024-03-01T00:00:00Z")

    result = manager.update_modpack("srv1", target=PackSource(kind="modrinth", version_id="v2"))

    assert result.status == UpdateStatus.UPDATED
    assert (servers_root / "srv1" / "mods" / "a.jar").read_bytes() == b"A2"
    assert read_state(servers_root)["source"] == {
        "kind": "modrinth", "project_id": "cobble", "version_id": "v2",
        "url": "https://cdn.test/cobble/v2.mrpack", "file_name": "cobble-v2.mrpack",
    }


def test_update_to_installed_version_is_a_no_op(manager, installed_v1, downloader):
    downloader.requested.clear()

    result = manager.update_modpack("srv1", target=PackSource(kind="modrinth", version_id="v1"))

    assert result.status == UpdateStatus.NO_CHANGES
    assert downloader.requested == []


def test_update_without_installed_pack(manager):
    with pytest.raises(PlanError, match="no modpack installed"):
        manager.update_modpack("srv1")


def test_update_of_url_pack_needs_explicit_target(manager, pack_server):
    version = pack_server.publish("cobble", "v1", [], FABRIC)
    manager.install_modpack("srv1", PackSource(kind="url", url=version["files"][0]["url"]))

    with pytest.raises(PlanError):
        manager.update_modpack("srv1")


def test_failed_update_keeps_previous_state(manager, pack_server, servers_root, installed_v1):
    broken = pack_server.host("mods/broken.jar", b"X")
    pack_server.content.pop(broken["downloads"][0])
    pack_server.publish("cobble", "v2", [broken], FABRIC, date="2024-02-01T00:00:00Z")

    with pytest.raises(FetchError):
        manager.update_modpack("srv1")

    assert read_state(servers_root)["source"]["version_id"] == "v1"
    assert (servers_root / "srv1" / "mods" / "b.jar").exists()


def test_preview_update_changes_nothing(manager, pack_server, servers_root, installed_v1):
    pack_server.publish("cobble", "v2", [pack_server.host("mods/a.jar", b"A2")], FABRIC,
                        date="2024-02-01T00:00:00Z")

    update_plan = manager.preview_update("srv1")

    assert [i.path for i in update_plan.fetch_items] == ["mods/a.jar"]
    assert update_plan.deletions == ["mods/b.jar", "mods/same.jar"]
    inst = servers_root / "srv1"
    assert (inst / "mods" / "a.jar").read_bytes() == b"A1"
    assert read_state(servers_root)["source"]["version_id"] == "v1"
    assert not (inst / ".packsync_tmp").exists()


def test_preview_update_when_up_to_date(manager, installed_v1):
    assert manager.preview_update("srv1") is None


def test_get_installed_pack(manager, pack_server, installed_v1):
    record = manager.get_installed_pack("srv1")

    assert record.source.version_id == "v1"
    assert record.file_hashes()["mods/a.jar"] == pack_server.sha1(b"A1")
    assert manager.get_installed_pack("other") is None
