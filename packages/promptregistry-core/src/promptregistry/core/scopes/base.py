from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Sequence, Tuple

from promptregistry.core.bundles import load_manifest
from promptregistry.core.checksum import file_checksum
from promptregistry.core.exception import (
    FileConflict,
    ManifestInvalid,
    PartialInstallFailure,
    ReferencedFileMissing,
)
from promptregistry.core.fsutil import prune_empty_dirs
from promptregistry.core.lockfile import LockfileStore, utc_now_iso
from promptregistry.core.observability import dur_ms, log_event
from promptregistry.core.placement import PlacementPolicy
from promptregistry.core.runtime.settings import Settings
from promptregistry.core.spec import DeploymentManifestSpec, LockfileBundleSpec, LockfileFileSpec

log = logging.getLogger("promptregistry.core.scopes")


@dataclass
class SyncOptions:
    # Explicit caller intent; wins over whatever mode is currently recorded.
    commit_mode: Optional[str] = None
    version: Optional[str] = None
    source_id: str = "local"
    source_kind: str = "local"
    source_url: str = ""
    # Installed bundles this one supersedes (other versions of its collection).
    # Their unmodified files may be overwritten; they are cleared once the sync succeeds.
    replaces: Sequence[str] = ()


@dataclass
class SyncResult:
    bundle_id: str
    scope: str
    slot: Optional[str] = None
    files: List[str] = field(default_factory=list)
    removed_stale: List[str] = field(default_factory=list)
    skipped_items: List[str] = field(default_factory=list)
    replaced: List[str] = field(default_factory=list)
    skipped: bool = False
    reason: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "bundle_id": self.bundle_id,
            "scope": self.scope,
            "slot": self.slot,
            "files": list(self.files),
            "removed_stale": list(self.removed_stale),
            "skipped_items": list(self.skipped_items),
            "replaced": list(self.replaced),
            "skipped": self.skipped,
            "reason": self.reason,
        }


@dataclass
class UnsyncResult:
    bundle_id: str
    scope: str
    found: bool = False
    slot: Optional[str] = None
    removed: List[str] = field(default_factory=list)
    preserved: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    pruned_dirs: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "bundle_id": self.bundle_id,
            "scope": self.scope,
            "found": self.found,
            "slot": self.slot,
            "removed": list(self.removed),
            "preserved": list(self.preserved),
            "missing": list(self.missing),
            "failed": list(self.failed),
            "pruned_dirs": list(self.pruned_dirs),
        }


@dataclass
class PlannedFile:
    rel: str
    src: Path
    item_id: str


class _InstallTransaction:
    """Tracks what one sync wrote so it can be undone."""

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir
        self.written: List[Path] = []
        self.backups: Dict[Path, bytes] = {}
        self.created_dirs: List[Path] = []

    def _ensure_parent(self, target: Path) -> None:
        missing: List[Path] = []
        cur = target.parent
        while cur != self.base_dir and not cur.exists():
            missing.append(cur)
            cur = cur.parent
        target.parent.mkdir(parents=True, exist_ok=True)
        self.created_dirs.extend(reversed(missing))

    def copy(self, src: Path, target: Path) -> str:
        self._ensure_parent(target)
        if target.exists():
            self.backups[target] = target.read_bytes()
        self.written.append(target)
        shutil.copyfile(src, target)
        return file_checksum(target)

    def rollback(self) -> None:
        for t in reversed(self.written):
            try:
                if t in self.backups:
                    t.write_bytes(self.backups[t])
                else:
                    t.unlink(missing_ok=True)
            except OSError as e:
                log.warning("rollback could not restore %s: %s", t, e)
        for d in reversed(self.created_dirs):
            try:
                d.rmdir()
            except OSError:
                # still holds something we did not write
                log.debug("rollback kept directory %s", d)


class ScopeSynchronizer:
    """Install and uninstall bundles for one scope.

    Subclasses choose the lockfile slot for an install and react to entries
    being recorded or cleared (the repository scope keeps the git-exclude
    ledger in step).
    """

    scope: str = ""

    def __init__(
        self,
        base_dir: str | Path,
        store: LockfileStore,
        *,
        placement: PlacementPolicy | None = None,
        settings: Settings | None = None,
    ):
        self.base_dir = Path(base_dir).expanduser().resolve()
        self.store = store
        self.placement = placement or PlacementPolicy()
        self.settings = settings or Settings()

    # ------------------------------------------------------------------
    # hooks
    # ------------------------------------------------------------------

    def _slot_for(self, options: SyncOptions, previous_slot: Optional[str]) -> str:
        raise NotImplementedError

    def _on_recorded(
        self,
        bundle_id: str,
        slot: str,
        paths: Sequence[str],
        previous_slot: Optional[str],
        previous_paths: Sequence[str],
    ) -> None:
        return None

    def _on_cleared(self, bundle_id: str, slot: str, paths: Sequence[str]) -> None:
        return None

    # ------------------------------------------------------------------
    # planning
    # ------------------------------------------------------------------

    def plan(self, manifest: DeploymentManifestSpec, content_root: Path) -> Tuple[List[PlannedFile], List[str]]:
        """Resolve manifest items to ``(planned files, skipped item ids)``.

        Raises ReferencedFileMissing when an item's source is absent from the bundle.
        """
        content_root = content_root.resolve()
        planned: List[PlannedFile] = []
        skipped: List[str] = []
        targets: set[str] = set()

        for item in manifest.items:
            if not self.placement.supports(self.scope, item.kind):
                log.warning("item kind %s not supported at %s scope; skipping item=%s", item.kind, self.scope, item.id)
                skipped.append(item.id)
                continue
            target = self.placement.target_path(self.scope, item.kind, item.id)
            src = (content_root / item.file).resolve()
            if src != content_root and content_root not in src.parents:
                raise ReferencedFileMissing(
                    f"Manifest item {item.id!r} points outside the bundle: {item.file}", path=item.file
                )

            if self.placement.is_directory(item.kind):
                if not src.is_dir():
                    raise ReferencedFileMissing(f"Skill directory not found for item {item.id!r}: {item.file}", path=item.file)
                pairs = [
                    (target / PurePosixPath(p.relative_to(src).as_posix()), p)
                    for p in sorted(src.rglob("*"))
                    if p.is_file()
                ]
            else:
                if not src.is_file():
                    raise ReferencedFileMissing(f"File not found for item {item.id!r}: {item.file}", path=item.file)
                pairs = [(target, src)]

            for rel, p in pairs:
                key = rel.as_posix()
                if key in targets:
                    raise ManifestInvalid(f"Two manifest items map to the same target: {key}", path=key)
                targets.add(key)
                planned.append(PlannedFile(rel=key, src=p, item_id=item.id))
        return planned, skipped

    def _check_conflicts(
        self,
        bundle_id: str,
        planned: Sequence[PlannedFile],
        previous: Dict[str, str],
        replaces: Sequence[str] = (),
    ) -> None:
        owners = self.store.path_owners()
        allowed = {bundle_id, *replaces}
        conflicts: List[str] = []
        for pf in planned:
            owner = owners.get(pf.rel)
            if owner is not None and owner[1] not in allowed:
                conflicts.append(pf.rel)
                continue
            target = self.base_dir / pf.rel
            if not target.exists():
                continue
            if target.is_dir() or pf.rel not in previous or file_checksum(target) != previous[pf.rel]:
                conflicts.append(pf.rel)
        if conflicts:
            raise FileConflict(
                f"Refusing to overwrite content not owned by bundle {bundle_id}: {', '.join(conflicts)}",
                bundle_id=bundle_id,
                paths=conflicts,
            )

    # ------------------------------------------------------------------
    # file removal (shared by uninstall and re-sync)
    # ------------------------------------------------------------------

    def _remove_recorded(self, files: Sequence[LockfileFileSpec], result: UnsyncResult) -> None:
        touched: set[Path] = set()
        for f in files:
            p = self.base_dir / f.path
            try:
                if not p.exists():
                    result.missing.append(f.path)
                    touched.add(p.parent)
                    continue
                if not p.is_file() or file_checksum(p) != f.checksum:
                    log.info("preserving modified file path=%s", f.path)
                    result.preserved.append(f.path)
                    continue
                p.unlink()
                result.removed.append(f.path)
                touched.add(p.parent)
            except OSError as e:
                log.warning("could not remove %s: %s", p, e)
                result.failed.append(f.path)
        pruned = prune_empty_dirs(touched, stop_at=self.base_dir)
        result.pruned_dirs.extend(d.relative_to(self.base_dir).as_posix() for d in pruned)

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def sync_bundle(self, bundle_id: str, content_root: str | Path, options: SyncOptions | None = None) -> SyncResult:
        """Place a bundle's items and record them in the lockfile of the effective slot."""
        options = options or SyncOptions()
        content_root = Path(content_root)
        t0 = time.time()

        try:
            manifest = load_manifest(content_root)
            if manifest is None:
                raise ManifestInvalid(f"No deployment manifest in {content_root}", bundle_id=bundle_id)
            planned, skipped_items = self.plan(manifest, content_root)
        except ManifestInvalid as e:
            log_event(log, settings=self.settings, level=logging.WARNING, event="bundle_sync_skipped",
                      bundle_id=bundle_id, scope=self.scope, reason=str(e))
            return SyncResult(bundle_id=bundle_id, scope=self.scope, skipped=True, reason=str(e))

        with self.store.mutex:
            previous = self.store.find(bundle_id)
            prev_slot, prev_entry = previous if previous else (None, None)
            replaced: Dict[str, Tuple[str, LockfileBundleSpec]] = {}
            for rid in options.replaces:
                found = self.store.find(rid) if rid != bundle_id else None
                if found is not None:
                    replaced[rid] = found
            # an upgrade keeps the slot of the version it replaces
            inherited = prev_slot or next((s for s, _ in replaced.values()), None)
            slot = self._slot_for(options, inherited)
            prev_files = {f.path: f.checksum for f in prev_entry.files} if prev_entry else {}

            overwritable = {f.path: f.checksum for _, e in replaced.values() for f in e.files}
            overwritable.update(prev_files)
            self._check_conflicts(bundle_id, planned, overwritable, list(replaced))

            tx = _InstallTransaction(self.base_dir)
            recorded: List[LockfileFileSpec] = []
            current = None
            try:
                for pf in planned:
                    current = pf
                    digest = tx.copy(pf.src, self.base_dir / pf.rel)
                    recorded.append(LockfileFileSpec(path=pf.rel, checksum=digest))
            except Exception as e:
                tx.rollback()
                failed = current.rel if current else None
                raise PartialInstallFailure(
                    f"Install of {bundle_id} failed at {failed}: {e}; rolled back {len(tx.written)} file(s)",
                    bundle_id=bundle_id,
                    path=failed,
                ) from e

            entry = LockfileBundleSpec(
                version=options.version or manifest.version,
                source_id=options.source_id,
                source_type=options.source_kind,
                installed_at=utc_now_iso(),
                files=recorded,
            )
            upserted = False
            try:
                self.store.upsert(slot, bundle_id, entry, source_url=options.source_url)
                upserted = True
                if prev_slot and prev_slot != slot:
                    self.store.remove(bundle_id, prev_slot)
            except Exception:
                tx.rollback()
                if upserted:
                    self._restore_entry(bundle_id, slot, prev_slot, prev_entry)
                raise

            new_paths = [f.path for f in recorded]
            kept = set(new_paths)
            stale_result = UnsyncResult(bundle_id=bundle_id, scope=self.scope)
            stale = [LockfileFileSpec(path=p, checksum=c) for p, c in prev_files.items() if p not in kept]
            if stale:
                self._remove_recorded(stale, stale_result)

            try:
                self._on_recorded(bundle_id, slot, new_paths, prev_slot, list(prev_files))
            except OSError as e:
                log.warning("install bookkeeping incomplete bundle_id=%s: %s", bundle_id, e)

            for rid, (rslot, rentry) in replaced.items():
                self._remove_recorded([f for f in rentry.files if f.path not in kept], stale_result)
                self.store.remove(rid, rslot)
                try:
                    self._on_cleared(rid, rslot, [f.path for f in rentry.files])
                except OSError as e:
                    log.warning("uninstall cleanup incomplete bundle_id=%s: %s", rid, e)
                log.info("replaced bundle_id=%s with bundle_id=%s", rid, bundle_id)

        log_event(log, settings=self.settings, level=logging.INFO, event="bundle_synced",
                  bundle_id=bundle_id, scope=self.scope, slot=slot, files=len(new_paths),
                  removed_stale=len(stale_result.removed), replaced=list(replaced),
                  duration_ms=dur_ms(t0, time.time()))
        return SyncResult(
            bundle_id=bundle_id,
            scope=self.scope,
            slot=slot,
            files=new_paths,
            removed_stale=stale_result.removed,
            skipped_items=skipped_items,
            replaced=list(replaced),
        )

    def _restore_entry(self, bundle_id: str, slot: str, prev_slot: Optional[str], prev_entry: Optional[LockfileBundleSpec]) -> None:
        try:
            if prev_entry is not None and prev_slot == slot:
                self.store.upsert(slot, bundle_id, prev_entry)
            else:
                self.store.remove(bundle_id, slot)
        except Exception:
            log.error("could not restore lockfile entry after failed install bundle_id=%s", bundle_id, exc_info=True)

    def unsync_bundle(self, bundle_id: str) -> UnsyncResult:
        """Remove a bundle's unmodified files and clear its lockfile entry.

        Unknown bundles are a no-op. Files whose checksum no longer matches are
        kept, and so are their directories.
        """
        t0 = time.time()
        result = UnsyncResult(bundle_id=bundle_id, scope=self.scope)
        with self.store.mutex:
            found = self.store.find(bundle_id)
            if found is None:
                log.debug("unsync: no lockfile entry bundle_id=%s scope=%s", bundle_id, self.scope)
                return result
            slot, entry = found
            result.found = True
            result.slot = slot

            self._remove_recorded(entry.files, result)
            self.store.remove(bundle_id, slot)
            try:
                self._on_cleared(bundle_id, slot, [f.path for f in entry.files])
            except OSError as e:
                log.warning("uninstall cleanup incomplete bundle_id=%s: %s", bundle_id, e)

        log_event(log, settings=self.settings, level=logging.INFO, event="bundle_unsynced",
                  bundle_id=bundle_id, scope=self.scope, slot=slot, removed=len(result.removed),
                  preserved=len(result.preserved), missing=len(result.missing),
                  duration_ms=dur_ms(t0, time.time()))
        return result

    def get_status(self, bundle_id: str) -> dict:
        found = self.store.find(bundle_id)
        if found is None:
            return {"bundle_id": bundle_id, "scope": self.scope, "installed": False}
        slot, entry = found
        changes = self.store.detect_modified_files(bundle_id, self.base_dir)
        return {
            "bundle_id": bundle_id,
            "scope": self.scope,
            "installed": True,
            "slot": slot,
            "version": entry.version,
            "files": [f.path for f in entry.files],
            "changes": [c.as_dict() for c in changes],
        }
