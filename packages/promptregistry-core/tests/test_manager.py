from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest

from promptregistry.core.exception import (
    BundleNotFound,
    FileConflict,
    PlacementNotSupported,
    SourceNotFound,
    SourceUnreachable,
)
from promptregistry.core.lockfile import COMMIT_LOCKFILE, LOCAL_LOCKFILE
from promptregistry.core.manager import RegistryManager
from promptregistry.core.spec import LockfileBundleSpec


@pytest.fixture()
def source_dir(temp_dir, make_bundle):
    make_bundle("kit-1", [("prompt", "review", "v1\n"), ("instructions", "py", "i\n")], collection="kit")
    make_bundle("kit-2", [("prompt", "review", "v2\n")], collection="kit", version="1.1.0")
    make_bundle("docs", [("agent", "writer", "w\n")], version="0.3.0")
    return temp_dir / "bundles"


@pytest.fixture()
def manager(settings, workspace, source_dir):
    m = RegistryManager(settings, workspace_root=workspace, env={})
    m.add_source({"id": "acme", "kind": "filesystem", "url": str(source_dir)})
    m.sync_source("acme")
    return m


def test_sync_source_derives_bundle_ids(manager):
    ids = sorted(r.id for r in manager.search_bundles())
    assert ids == ["acme-docs-v0.3.0", "acme-kit-v1.0.0", "acme-kit-v1.1.0"]
    rec = manager.get_bundle("acme-kit-v1.0.0")
    assert rec.collection_id == "kit" and rec.repo_slug == "acme" and rec.version == "1.0.0"


def test_search_filters_and_priority(manager, temp_dir, make_bundle):
    other = temp_dir / "other"
    make_bundle("zeta", [("prompt", "z", "z\n")])
    (temp_dir / "bundles" / "zeta").rename(other)
    manager.add_source({"id": "first", "kind": "filesystem", "url": str(other), "priority": 10})
    manager.sync_source("first")

    assert manager.search_bundles()[0].id == "first-zeta-v1.0.0"
    assert [r.id for r in manager.search_bundles(collection_id="kit")] == ["acme-kit-v1.0.0", "acme-kit-v1.1.0"]
    assert [r.id for r in manager.search_bundles(text="DOCS")] == ["acme-docs-v0.3.0"]
    assert [r.source_id for r in manager.search_bundles(source_id="first")] == ["first"]

    manager.add_source({"id": "first", "kind": "filesystem", "url": str(other), "priority": 10, "enabled": False})
    assert all(r.source_id == "acme" for r in manager.search_bundles())


def test_manifest_is_fetched_through_adapter(manager):
    m = manager.get_bundle_manifest("acme-kit-v1.0.0")
    assert [(i.kind, i.id) for i in m.items] == [("prompt", "review"), ("instructions", "py")]
    assert manager.get_bundle("acme-kit-v1.0.0").manifest["id"] == "kit"


def test_install_list_uninstall(manager, workspace):
    installed = manager.install_bundle("acme-kit-v1.0.0")
    assert installed.scope == "repository"
    assert installed.commit_mode == "commit"
    assert installed.install_path == str(workspace.resolve())
    assert (workspace / ".github" / "prompts" / "review.prompt.md").read_text(encoding="utf-8") == "v1\n"

    lock = json.loads((workspace / COMMIT_LOCKFILE).read_text(encoding="utf-8"))
    assert lock["sources"]["acme"]["type"] == "filesystem"

    assert [b.bundle_id for b in manager.list_installed_bundles()] == ["acme-kit-v1.0.0"]
    status = manager.bundle_status("acme-kit-v1.0.0")
    assert status["installed"] and status["cache"]["has_active"]

    res = manager.uninstall_bundle("acme-kit-v1.0.0")
    assert res.found
    assert manager.list_installed_bundles() == []
    assert not (workspace / ".github").exists()


def test_install_new_version_replaces_old(manager, workspace):
    manager.install_bundle("acme-kit-v1.0.0", commit_mode="local-only")
    installed = manager.install_bundle("acme-kit-v1.1.0")

    assert installed.commit_mode == "local-only"
    assert [b.bundle_id for b in manager.list_installed_bundles("repository")] == ["acme-kit-v1.1.0"]
    assert (workspace / ".github" / "prompts" / "review.prompt.md").read_text(encoding="utf-8") == "v2\n"
    assert not (workspace / ".github" / "instructions").exists()
    assert not (workspace / COMMIT_LOCKFILE).exists()
    assert list(json.loads((workspace / LOCAL_LOCKFILE).read_text(encoding="utf-8"))["bundles"]) == ["acme-kit-v1.1.0"]
    assert manager.repository().ledger.entries() == [".github/prompts/review.prompt.md", LOCAL_LOCKFILE]


def test_failed_upgrade_keeps_installed_version(manager, workspace, make_bundle):
    make_bundle("kit-3", [("prompt", "review", "v3\n"), ("agent", "writer", "w3\n")], collection="kit", version="1.2.0")
    manager.sync_source("acme")
    manager.install_bundle("acme-kit-v1.0.0", commit_mode="local-only")
    mine = workspace / ".github" / "agents" / "writer.agent.md"
    mine.parent.mkdir(parents=True)
    mine.write_text("my agent\n", encoding="utf-8")

    with pytest.raises(FileConflict):
        manager.install_bundle("acme-kit-v1.2.0")

    listed = manager.list_installed_bundles()
    assert [(b.bundle_id, b.commit_mode) for b in listed] == [("acme-kit-v1.0.0", "local-only")]
    assert manager.repository().store.slot_of("acme-kit-v1.0.0") == "local-only"
    assert (workspace / ".github" / "prompts" / "review.prompt.md").read_text(encoding="utf-8") == "v1\n"
    assert (workspace / ".github" / "instructions" / "py.instructions.md").is_file()
    assert mine.read_text(encoding="utf-8") == "my agent\n"
    assert ".github/prompts/review.prompt.md" in manager.repository().ledger.entries()


def test_upgrade_over_edited_file_is_refused(manager, workspace):
    manager.install_bundle("acme-kit-v1.0.0")
    review = workspace / ".github" / "prompts" / "review.prompt.md"
    review.write_text("tuned\n", encoding="utf-8")

    with pytest.raises(FileConflict):
        manager.install_bundle("acme-kit-v1.1.0")

    assert review.read_text(encoding="utf-8") == "tuned\n"
    assert manager.repository().store.slot_of("acme-kit-v1.0.0") == "commit"
    assert [b.bundle_id for b in manager.list_installed_bundles()] == ["acme-kit-v1.0.0"]


def test_upgrade_keeps_files_the_new_version_shares(manager, workspace, make_bundle):
    make_bundle("kit-3", [("prompt", "review", "v1\n")], collection="kit", version="1.2.0")
    manager.sync_source("acme")
    manager.install_bundle("acme-kit-v1.0.0")

    installed = manager.install_bundle("acme-kit-v1.2.0")
    assert installed.commit_mode == "commit"
    assert (workspace / ".github" / "prompts" / "review.prompt.md").read_text(encoding="utf-8") == "v1\n"
    assert not (workspace / ".github" / "instructions").exists()
    assert list(json.loads((workspace / COMMIT_LOCKFILE).read_text(encoding="utf-8"))["bundles"]) == ["acme-kit-v1.2.0"]
    assert [b.bundle_id for b in manager.list_installed_bundles()] == ["acme-kit-v1.2.0"]


def test_installed_index_is_per_workspace(settings, source_dir, temp_dir):
    wa, wb = temp_dir / "wa", temp_dir / "wb"
    for ws in (wa, wb):
        (ws / ".git" / "info").mkdir(parents=True)
    ma = RegistryManager(settings, workspace_root=wa, env={})
    ma.add_source({"id": "acme", "kind": "filesystem", "url": str(source_dir)})
    ma.sync_source("acme")
    ma.install_bundle("acme-kit-v1.0.0", commit_mode="local-only")

    mb = RegistryManager(settings, workspace_root=wb, env={})
    mb.install_bundle("acme-kit-v1.0.0")
    mb.install_bundle("acme-kit-v1.1.0")

    rows = {(b.bundle_id, b.install_path, b.commit_mode) for b in mb.state.list_installed("repository")}
    assert rows == {
        ("acme-kit-v1.0.0", str(wa.resolve()), "local-only"),
        ("acme-kit-v1.1.0", str(wb.resolve()), "commit"),
    }
    assert [b.bundle_id for b in ma.list_installed_bundles()] == ["acme-kit-v1.0.0"]
    assert (wa / ".github" / "prompts" / "review.prompt.md").read_text(encoding="utf-8") == "v1\n"

    mb.uninstall_bundle("acme-kit-v1.1.0")
    assert ma.state.get_installed("acme-kit-v1.0.0", "repository", str(wa.resolve())) is not None


def test_install_explicit_version(manager):
    installed = manager.install_bundle("acme-kit-v1.0.0", version="1.1.0")
    assert installed.bundle_id == "acme-kit-v1.1.0"
    with pytest.raises(BundleNotFound):
        manager.install_bundle("acme-kit-v1.0.0", version="9.9.9")


def test_switch_mode_updates_index(manager, workspace):
    manager.install_bundle("acme-docs-v0.3.0")
    assert manager.switch_commit_mode("acme-docs-v0.3.0", "local-only") is True
    assert manager.list_installed_bundles()[0].commit_mode == "local-only"
    assert manager.repository().ledger.entries() == [".github/agents/writer.agent.md", LOCAL_LOCKFILE]
    assert manager.switch_commit_mode("acme-docs-v0.3.0", "local-only") is False


def test_lockfile_only_bundles_are_listed(manager, workspace):
    manager.repository().store.upsert(
        "commit",
        "someone-else-v1",
        LockfileBundleSpec(version="1", source_id="x", source_type="github", installed_at="t", files=[]),
    )
    listed = manager.list_installed_bundles()
    assert [(b.bundle_id, b.commit_mode) for b in listed] == [("someone-else-v1", "commit")]
    with pytest.raises(ValueError):
        manager.list_installed_bundles("galaxy")


def test_user_scope_install(settings, workspace, source_dir, temp_dir):
    storage = temp_dir / "Code" / "User" / "globalStorage" / "acme.prompt-registry"
    s = settings.model_copy(update={"user_storage_path": str(storage)})
    m = RegistryManager(s, workspace_root=workspace, env={})
    m.add_source({"id": "acme", "kind": "filesystem", "url": str(source_dir)})
    m.sync_source("acme")

    installed = m.install_bundle("acme-kit-v1.0.0", scope="user", commit_mode="local-only")
    assert installed.commit_mode is None
    assert (temp_dir / "Code" / "User" / "prompts" / "review.prompt.md").is_file()
    assert not (temp_dir / "Code" / "User" / "instructions").exists()
    assert [b.scope for b in m.list_installed_bundles("user")] == ["user"]


def test_user_scope_needs_storage_path(manager):
    with pytest.raises(PlacementNotSupported):
        manager.install_bundle("acme-kit-v1.0.0", scope="user")


def test_source_validation(manager):
    with pytest.raises(ValueError, match="Unknown source keys: bogus"):
        manager.add_source({"id": "x", "kind": "filesystem", "url": "/", "bogus": 1})
    with pytest.raises(ValueError, match="Unsupported source kind"):
        manager.add_source({"id": "x", "kind": "ftp", "url": "/"})
    with pytest.raises(SourceNotFound):
        manager.sync_source("nope")


def test_remove_source_drops_records(manager):
    assert manager.remove_source("acme") is True
    assert manager.search_bundles() == []
    with pytest.raises(BundleNotFound):
        manager.get_bundle("acme-kit-v1.0.0")
    assert manager.remove_source("acme") is False


def test_unreachable_source(manager, temp_dir):
    manager.add_source({"id": "gone", "kind": "filesystem", "url": str(temp_dir / "missing")})
    with pytest.raises(SourceUnreachable):
        manager.sync_source("gone")

    outcomes = {o.item.id: o for o in manager.sync_all_sources()}
    assert outcomes["acme"].ok
    assert isinstance(outcomes["gone"].error, SourceUnreachable)


def test_metrics_sink_receives_installs(settings, workspace, source_dir, tmp_path, monkeypatch):
    (tmp_path / "my_metrics.py").write_text(
        textwrap.dedent(
            """
            from promptregistry.core.observability import MetricsSink

            class Sink(MetricsSink):
                def __init__(self):
                    self.events = []

                def on_install(self, **kw):
                    self.events.append(("install", kw))

                def on_uninstall(self, **kw):
                    self.events.append(("uninstall", kw))

                def on_source_sync(self, **kw):
                    self.events.append(("sync", kw))

            METRICS = Sink()
            """
        ),
        encoding="utf-8",
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    s = settings.model_copy(update={"metrics_module": "my_metrics"})
    m = RegistryManager(s, workspace_root=workspace, env={})
    m.add_source({"id": "acme", "kind": "filesystem", "url": str(source_dir)})
    m.sync_source("acme")
    m.install_bundle("acme-docs-v0.3.0")
    m.uninstall_bundle("acme-docs-v0.3.0")

    kinds = [k for k, _ in m.metrics.events]
    assert kinds == ["sync", "install", "uninstall"]
    assert m.metrics.events[1][1]["files"] == 1
