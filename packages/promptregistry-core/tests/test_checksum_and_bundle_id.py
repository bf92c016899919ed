from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from promptregistry.core.bundles import bundle_id, normalize_repo_slug
from promptregistry.core.checksum import checksum, file_checksum, matches


def test_bundle_id_contract():
    assert bundle_id("owner/repo", "my-collection", "1.0.0") == "owner-repo-my-collection-v1.0.0"


@pytest.mark.parametrize(
    "repo,collection,version",
    [
        ("acme/prompts", "python", "2.3.4"),
        ("org/sub", "x", "0.0.1-beta"),
        ("solo", "c", "10"),
    ],
)
def test_bundle_id_is_pure(repo, collection, version):
    first = bundle_id(repo, collection, version)
    assert first == bundle_id(repo, collection, version)
    assert first == f"{normalize_repo_slug(repo)}-{collection}-v{version}"
    assert "/" not in first


def test_checksum_is_sha256_hex():
    digest = checksum(b"hello\n")
    assert digest == hashlib.sha256(b"hello\n").hexdigest()
    assert len(digest) == 64


def test_file_checksum_matches_bytes(tmp_path: Path):
    p = tmp_path / "a.prompt.md"
    data = b"x" * (3 * 1024 * 1024 + 17)
    p.write_bytes(data)
    assert file_checksum(p) == checksum(data)


def test_matches(tmp_path: Path):
    p = tmp_path / "f.md"
    p.write_text("one", encoding="utf-8")
    digest = file_checksum(p)

    assert matches(p, digest)
    assert matches(p, digest.upper())
    p.write_text("two", encoding="utf-8")
    assert not matches(p, digest)
    assert not matches(tmp_path / "missing.md", digest)
    assert not matches(tmp_path, digest)
