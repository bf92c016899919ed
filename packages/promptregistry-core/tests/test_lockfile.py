from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from promptregistry.core.checksum import file_checksum
from promptregistry.core.exception import BundleNotFound, LockfileUnavailable
from promptregistry.core.lockfile import (
    COMMIT_LOCKFILE,
    LOCAL_LOCKFILE,
    FILE_MISSING,
    FILE_MODIFIED,
    LockfileStore,
)
from promptregistry.core.spec import LOCKFILE_SCHEMA_URL, LockfileBundleSpec, LockfileFileSpec


def _entry(*paths_and_sums, source_id: str = "acme") -> LockfileBundleSpec:
    return LockfileBundleSpec(
        version="1.0.0",
        source_id=source_id,
        source_type="filesystem",
        installed_at="2026-01-01T00:00:00.000Z",
        files=[LockfileFileSpec(path=p, checksum=c) for p, c in paths_and_sums],
    )


def test_written_format(tmp_path: Path):
    store = LockfileStore(tmp_path, generated_by="prompt-registry@9.9.9")
    store.upsert("commit", "b1", _entry((".github/prompts/a.prompt.md", "ab" * 32)), source_url="https://example/x")

    text = (tmp_path / COMMIT_LOCKFILE).read_text(encoding="utf-8")
    assert text.endswith("}\n")
    assert '\n  "bundles"' in text
    data = json.loads(text)
    assert data["$schema"] == LOCKFILE_SCHEMA_URL
    assert data["version"] == "1.0.0"
    assert data["generatedBy"] == "prompt-registry@9.9.9"
    assert data["generatedAt"].endswith("Z")
    assert data["bundles"]["b1"]["sourceId"] == "acme"
    assert data["bundles"]["b1"]["files"] == [{"path": ".github/prompts/a.prompt.md", "checksum": "ab" * 32}]
    assert data["sources"] == {"acme": {"type": "filesystem", "url": "https://example/x"}}
    assert not (tmp_path / (COMMIT_LOCKFILE + ".tmp")).exists()


def test_unknown_keys_survive_rewrite(tmp_path: Path):
    (tmp_path / COMMIT_LOCKFILE).write_text(
        json.dumps(
            {
                "version": "1.0.0",
                "bundles": {
                    "old": {
                        "version": "0.1.0",
                        "sourceId": "s",
                        "sourceType": "github",
                        "installedAt": "x",
                        "files": [],
                        "commitSha": "deadbeef",
                    }
                },
                "sources": {"s": {"type": "github", "url": "u"}},
                "profiles": {"keep": True},
            }
        ),
        encoding="utf-8",
    )
    store = LockfileStore(tmp_path)
    store.upsert("commit", "b2", _entry(source_id="s"))

    data = json.loads((tmp_path / COMMIT_LOCKFILE).read_text(encoding="utf-8"))
    assert data["profiles"] == {"keep": True}
    assert data["bundles"]["old"]["commitSha"] == "deadbeef"
    assert data["sources"]["s"]["url"] == "u"


def test_last_removal_deletes_file_and_orphan_sources(tmp_path: Path):
    store = LockfileStore(tmp_path)
    store.upsert("commit", "b1", _entry(source_id="one"))
    store.upsert("commit", "b2", _entry(source_id="two"))

    store.remove("b1")
    data = json.loads((tmp_path / COMMIT_LOCKFILE).read_text(encoding="utf-8"))
    assert list(data["sources"]) == ["two"]

    slot, entry = store.remove("b2")
    assert slot == "commit"
    assert entry.source_id == "two"
    assert not (tmp_path / COMMIT_LOCKFILE).exists()
    assert store.remove("b2") is None


@pytest.mark.parametrize("content", ["{not json", "[]", '{"bundles": {"b": {"files": "nope"}}}'])
def test_unreadable_lockfile_raises(tmp_path: Path, content: str):
    (tmp_path / COMMIT_LOCKFILE).write_text(content, encoding="utf-8")
    store = LockfileStore(tmp_path)
    with pytest.raises(LockfileUnavailable):
        store.read("commit")
    with pytest.raises(LockfileUnavailable):
        store.upsert("commit", "b1", _entry())


def test_move_between_slots(tmp_path: Path):
    store = LockfileStore(tmp_path)
    store.upsert("commit", "b1", _entry(("a", "1" * 64)), source_url="u")

    assert store.move("b1", "local-only") == "commit"
    assert not (tmp_path / COMMIT_LOCKFILE).exists()
    local = json.loads((tmp_path / LOCAL_LOCKFILE).read_text(encoding="utf-8"))
    assert local["bundles"]["b1"]["files"][0]["path"] == "a"
    assert local["sources"]["acme"]["url"] == "u"
    assert store.slot_of("b1") == "local-only"

    assert store.move("b1", "local-only") == "local-only"
    with pytest.raises(BundleNotFound):
        store.move("nope", "commit")
    with pytest.raises(KeyError):
        store.move("b1", "elsewhere")


def test_bundle_in_both_slots_is_reported(tmp_path: Path):
    store = LockfileStore(tmp_path)
    store.upsert("commit", "b1", _entry())
    store.upsert("local-only", "b1", _entry())
    store.upsert("local-only", "b2", _entry())

    bundles, conflicts = store.installed_bundles()
    assert conflicts == ["b1"]
    assert [b.bundle_id for b in bundles] == ["b2"]
    # commit is searched first
    assert store.find("b1")[0] == "commit"


def test_detect_modified_files(tmp_path: Path):
    (tmp_path / "a.md").write_text("a", encoding="utf-8")
    (tmp_path / "b.md").write_text("b", encoding="utf-8")
    store = LockfileStore(tmp_path / "locks")
    store.upsert(
        "commit",
        "b1",
        _entry(
            ("a.md", file_checksum(tmp_path / "a.md")),
            ("b.md", file_checksum(tmp_path / "b.md")),
            ("c.md", "0" * 64),
        ),
    )
    (tmp_path / "b.md").write_text("changed", encoding="utf-8")

    changes = {c.path: c.status for c in store.detect_modified_files("b1", tmp_path)}
    assert changes == {"b.md": FILE_MODIFIED, "c.md": FILE_MISSING}
    assert store.detect_modified_files("unknown", tmp_path) == []

    bundles, _ = store.installed_bundles(tmp_path)
    assert bundles[0].files_missing is True


def test_owner_of(tmp_path: Path):
    store = LockfileStore(tmp_path)
    store.upsert("local-only", "b1", _entry((".github/prompts/a.prompt.md", "1" * 64)))
    assert store.owner_of(".github/prompts/a.prompt.md") == ("local-only", "b1")
    assert store.owner_of(".github/prompts/zzz.prompt.md") is None


def test_concurrent_upserts_serialize(tmp_path: Path):
    store = LockfileStore(tmp_path)

    def work(i: int) -> None:
        store.upsert("commit", f"b{i}", _entry())

    threads = [threading.Thread(target=work, args=(i,)) for i in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(store.read("commit").bundles) == sorted(f"b{i}" for i in range(12))
