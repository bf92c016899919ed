from __future__ import annotations

import io
import json
import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml
from pydantic import ValidationError

from promptregistry.core.checksum import checksum
from promptregistry.core.exception import ManifestInvalid, RegistryError
from promptregistry.core.fsutil import atomic_replace_dir, atomic_write_text, rm_rf
from promptregistry.core.lockfile import utc_now_iso
from promptregistry.core.spec import BundleRecord, DeploymentManifestSpec

log = logging.getLogger("promptregistry.core.bundle")

MANIFEST_NAMES = ("deployment-manifest.yml", "deployment-manifest.yaml")


def normalize_repo_slug(repo_slug: str) -> str:
    return str(repo_slug).strip().replace("\\", "-").replace("/", "-")


def bundle_id(repo_slug: str, collection_id: str, version: str) -> str:
    """``<normalized-repo-slug>-<collectionId>-v<version>``.

    Producers and consumers of bundle ids must derive them identically, so this
    function is pure and does no other normalization.
    """
    return f"{normalize_repo_slug(repo_slug)}-{collection_id}-v{version}"


# ---------------------------------------------------------------------------
# Deployment manifest
# ---------------------------------------------------------------------------


def find_manifest(content_root: str | Path) -> Optional[Path]:
    root = Path(content_root)
    for name in MANIFEST_NAMES:
        p = root / name
        if p.is_file():
            return p
    return None


def parse_manifest(data: Any, *, where: str = "<memory>") -> DeploymentManifestSpec:
    """Validate a manifest mapping, turning pydantic errors into one readable ManifestInvalid."""
    if not isinstance(data, dict):
        raise ManifestInvalid(f"Deployment manifest must be a YAML mapping (object): {where}", path=where)
    try:
        return DeploymentManifestSpec.model_validate(data)
    except ValidationError as exc:
        problems = []
        for err in exc.errors():
            loc = ".".join(str(x) for x in err.get("loc", ())) or "<root>"
            problems.append(f"{loc}: {err.get('msg')}")
        raise ManifestInvalid(f"Invalid deployment manifest {where}: " + "; ".join(problems), path=where) from exc


def load_manifest(content_root: str | Path) -> Optional[DeploymentManifestSpec]:
    """Load the deployment manifest of an extracted bundle. ``None`` when there is none."""
    p = find_manifest(content_root)
    if p is None:
        return None
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ManifestInvalid(f"Malformed YAML in {p}: {e}", path=str(p)) from e
    return parse_manifest(data, where=str(p))


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


def zip_directory(root: str | Path) -> bytes:
    """Zip a directory tree in memory (paths relative to ``root``, sorted)."""
    root = Path(root)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for p in sorted(root.rglob("*")):
            if p.is_file():
                zf.write(p, p.relative_to(root).as_posix())
    return buf.getvalue()


def extract_archive(data: bytes, dest: Path) -> None:
    """Extract a zip archive, refusing members that would land outside ``dest``."""
    dest = Path(dest).resolve()
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise RegistryError(f"Bundle archive is not a valid zip file: {e}") from e
    with zf:
        for info in zf.infolist():
            name = info.filename.replace("\\", "/")
            target = (dest / name).resolve()
            if target != dest and dest not in target.parents:
                raise RegistryError(f"Bundle archive member escapes extraction root: {info.filename}", path=info.filename)
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as src, open(target, "wb") as out:
                shutil.copyfileobj(src, out)


def _content_root(extracted: Path) -> Path:
    # Release archives often wrap everything in one top-level directory.
    if find_manifest(extracted) is not None:
        return extracted
    children = [c for c in extracted.iterdir()]
    if len(children) == 1 and children[0].is_dir() and find_manifest(children[0]) is not None:
        return children[0]
    return extracted


# ---------------------------------------------------------------------------
# Local cache
# ---------------------------------------------------------------------------


@dataclass
class CacheStatus:
    bundle_id: str
    bundle_root: Path
    active_dir: Path
    version: Optional[str]
    archive_sha256: Optional[str]
    has_active: bool

    def as_dict(self) -> dict:
        return {
            "bundle_id": self.bundle_id,
            "bundle_root": str(self.bundle_root),
            "active_dir": str(self.active_dir),
            "version": self.version,
            "archive_sha256": self.archive_sha256,
            "has_active": self.has_active,
        }


class BundleCache:
    """Extracted bundle content under ``<work_root>/bundles/<bundle_id>/active``.

    Content for a bundle id is never edited in place: a new extraction is staged
    next to it and swapped in with ``os.replace``.
    """

    def __init__(self, work_root: str | Path):
        self.root = Path(work_root).expanduser().resolve() / "bundles"

    def bundle_root(self, bundle_id: str) -> Path:
        return self.root / bundle_id

    def active_dir(self, bundle_id: str) -> Path:
        return self.bundle_root(bundle_id) / "active"

    def _read_meta(self, bundle_id: str) -> Dict[str, Any]:
        p = self.bundle_root(bundle_id) / "cache.json"
        if not p.exists():
            return {}
        try:
            return json.loads(p.read_text("utf-8")) or {}
        except (OSError, ValueError):
            log.warning("failed reading cache metadata; treating as missing bundle_id=%s", bundle_id, exc_info=True)
            return {}

    def status(self, bundle_id: str) -> CacheStatus:
        meta = self._read_meta(bundle_id)
        active = self.active_dir(bundle_id)
        return CacheStatus(
            bundle_id=bundle_id,
            bundle_root=self.bundle_root(bundle_id),
            active_dir=active,
            version=meta.get("version"),
            archive_sha256=meta.get("archive_sha256"),
            has_active=active.is_dir(),
        )

    def is_cached(self, record: BundleRecord) -> bool:
        st = self.status(record.id)
        return st.has_active and st.version == record.version

    def ensure(self, record: BundleRecord, fetch_archive: Callable[[], bytes], *, force: bool = False) -> Path:
        """Return the active content directory for ``record``, fetching it when needed."""
        bundle_root = self.bundle_root(record.id)
        active_dir = self.active_dir(record.id)
        if not force and self.is_cached(record):
            return active_dir

        staged_parent = bundle_root / "staged"
        staged_parent.mkdir(parents=True, exist_ok=True)
        tmp_dir = Path(tempfile.mkdtemp(prefix="bundle_", dir=str(staged_parent)))
        try:
            data = fetch_archive()
            extract_archive(data, tmp_dir)
            content = _content_root(tmp_dir)

            # atomic swap: replace active dir
            if active_dir.exists():
                old = bundle_root / "active.old"
                rm_rf(old)
                os.replace(str(active_dir), str(old))
                atomic_replace_dir(content, active_dir)
                rm_rf(old)
            else:
                atomic_replace_dir(content, active_dir)

            meta = {
                "bundle_id": record.id,
                "version": record.version,
                "source_id": record.source_id,
                "archive_sha256": checksum(data),
                "cached_at": utc_now_iso(),
            }
            atomic_write_text(bundle_root / "cache.json", json.dumps(meta, ensure_ascii=False, indent=2) + "\n")
            log.debug("bundle cached bundle_id=%s version=%s", record.id, record.version)
            return active_dir
        except Exception as e:
            # Persist a small error report for post-mortem debugging.
            try:
                (bundle_root / "last_error.json").write_text(
                    json.dumps(
                        {
                            "bundle_id": record.id,
                            "version": record.version,
                            "source_id": record.source_id,
                            "error": str(e),
                            "updated_at": utc_now_iso(),
                        },
                        ensure_ascii=False,
                        separators=(",", ":"),
                    ),
                    encoding="utf-8",
                )
            except OSError:
                log.warning("failed writing last_error.json bundle_id=%s", record.id, exc_info=True)
            raise
        finally:
            rm_rf(tmp_dir)

    def evict(self, bundle_id: str) -> None:
        rm_rf(self.bundle_root(bundle_id))
