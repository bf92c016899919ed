import tempfile
import shutil
from pathlib import Path

import sys

# Allow running tests without installing the package.
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import pytest
import yaml
from promptregistry.core.runtime.settings import Settings


@pytest.fixture()
def temp_dir():
    d = Path(tempfile.mkdtemp(prefix="promptregistry_test_"))
    try:
        yield d
    finally:
        shutil.rmtree(d, ignore_errors=True)


@pytest.fixture()
def settings(temp_dir):
    return Settings(
        work_root=str(temp_dir / "work"),
        state_root=str(temp_dir / "state"),
        log_level="INFO",
    )


@pytest.fixture()
def workspace(temp_dir):
    """A workspace that looks like a git checkout, with an unrelated exclude line."""
    ws = temp_dir / "workspace"
    (ws / ".git" / "info").mkdir(parents=True)
    (ws / ".git" / "info" / "exclude").write_text("*.log\n", encoding="utf-8")
    return ws


@pytest.fixture()
def make_bundle(temp_dir):
    """Write an extracted bundle and return its content root.

    ``items`` is a list of ``(kind, id, body)``; skill bodies are dicts of
    relative path -> text.
    """

    def _make(name: str, items, *, version: str = "1.0.0", collection: str | None = None) -> Path:
        root = temp_dir / "bundles" / name
        root.mkdir(parents=True, exist_ok=True)
        prompts = []
        for kind, item_id, body in items:
            if kind == "skill":
                rel = f"skills/{item_id}"
                for sub, text in body.items():
                    p = root / rel / sub
                    p.parent.mkdir(parents=True, exist_ok=True)
                    p.write_text(text, encoding="utf-8")
            else:
                rel = f"content/{item_id}.{kind}.md"
                p = root / rel
                p.parent.mkdir(parents=True, exist_ok=True)
                p.write_text(body, encoding="utf-8")
            prompts.append({"id": item_id, "name": item_id.title(), "file": rel, "type": kind})
        manifest = {"id": collection or name, "version": version, "name": name, "prompts": prompts}
        (root / "deployment-manifest.yml").write_text(yaml.safe_dump(manifest, sort_keys=False), encoding="utf-8")
        return root

    return _make
