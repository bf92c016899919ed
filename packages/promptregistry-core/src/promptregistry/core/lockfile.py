from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from promptregistry.core.checksum import file_checksum
from promptregistry.core.exception import BundleNotFound, LockfileUnavailable
from promptregistry.core.fsutil import atomic_write_text
from promptregistry.core.spec import LockfileBundleSpec, LockfileSourceSpec, LockfileSpec

log = logging.getLogger("promptregistry.core.lockfile")

COMMIT_LOCKFILE = "prompt-registry.lock.json"
LOCAL_LOCKFILE = "prompt-registry.local.lock.json"
USER_LOCKFILE = "prompt-registry.user.lock.json"

# Search order matters: the commit lockfile is consulted first.
REPOSITORY_SLOTS: Mapping[str, str] = {"commit": COMMIT_LOCKFILE, "local-only": LOCAL_LOCKFILE}
USER_SLOTS: Mapping[str, str] = {"user": USER_LOCKFILE}

FILE_MISSING = "missing"
FILE_MODIFIED = "modified"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class FileStatus:
    path: str
    status: str
    expected: str
    actual: Optional[str] = None

    def as_dict(self) -> dict:
        return {"path": self.path, "status": self.status, "expected": self.expected, "actual": self.actual}


@dataclass
class LockedBundle:
    bundle_id: str
    slot: str
    entry: LockfileBundleSpec
    files_missing: bool = False


class LockfileStore:
    """JSON lockfiles for one directory.

    A store owns one file per slot (for repository scope: ``commit`` and
    ``local-only``). Each mutation reads the whole file, changes it in memory
    and writes it back through a temp file and ``os.replace`` while holding the
    store lock, so concurrent installs into the same workspace serialize.
    A lockfile without bundles is deleted.
    """

    def __init__(
        self,
        directory: str | Path,
        *,
        slots: Mapping[str, str] = REPOSITORY_SLOTS,
        generated_by: str = "prompt-registry@0.4.0",
    ):
        if not slots:
            raise ValueError("LockfileStore needs at least one slot")
        self.directory = Path(directory)
        self.slots: Dict[str, str] = dict(slots)
        self.generated_by = generated_by
        self.mutex = threading.RLock()

    # ------------------------------------------------------------------
    # file access
    # ------------------------------------------------------------------

    def path(self, slot: str) -> Path:
        try:
            return self.directory / self.slots[slot]
        except KeyError:
            raise KeyError(f"Unknown lockfile slot: {slot}. Known: {sorted(self.slots)}") from None

    def exists(self, slot: str) -> bool:
        return self.path(slot).exists()

    def read(self, slot: str) -> LockfileSpec:
        p = self.path(slot)
        if not p.exists():
            return LockfileSpec(generated_by=self.generated_by)
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise LockfileUnavailable(f"Cannot read lockfile {p}: {e}", path=str(p)) from e
        if not isinstance(data, dict):
            raise LockfileUnavailable(f"Lockfile {p} must contain a JSON object", path=str(p))
        try:
            return LockfileSpec.model_validate(data)
        except ValidationError as e:
            raise LockfileUnavailable(f"Invalid lockfile {p}: {e.error_count()} schema error(s)", path=str(p)) from e

    def _write(self, slot: str, lock: LockfileSpec) -> None:
        p = self.path(slot)
        if not lock.bundles:
            if p.exists():
                p.unlink()
                log.debug("lockfile deleted (no bundles left) path=%s", p)
            return
        lock.generated_at = utc_now_iso()
        lock.generated_by = self.generated_by
        text = json.dumps(lock.to_json_dict(), indent=2, ensure_ascii=False) + "\n"
        atomic_write_text(p, text)

    @contextmanager
    def transaction(self, slot: str) -> Iterator[LockfileSpec]:
        """Read-modify-write critical section. Nothing is written if the body raises."""
        with self.mutex:
            lock = self.read(slot)
            yield lock
            self._write(slot, lock)

    @staticmethod
    def _drop_orphan_sources(lock: LockfileSpec) -> None:
        used = {b.source_id for b in lock.bundles.values()}
        for sid in [s for s in lock.sources if s not in used]:
            del lock.sources[sid]

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def find(self, bundle_id: str) -> Optional[Tuple[str, LockfileBundleSpec]]:
        with self.mutex:
            for slot in self.slots:
                lock = self.read(slot)
                if bundle_id in lock.bundles:
                    return slot, lock.bundles[bundle_id]
        return None

    def slot_of(self, bundle_id: str) -> Optional[str]:
        found = self.find(bundle_id)
        return found[0] if found else None

    def path_owners(self) -> Dict[str, Tuple[str, str]]:
        """Map every recorded file path to ``(slot, bundle_id)``."""
        owners: Dict[str, Tuple[str, str]] = {}
        with self.mutex:
            for slot in self.slots:
                for bid, entry in self.read(slot).bundles.items():
                    for f in entry.files:
                        owners.setdefault(f.path, (slot, bid))
        return owners

    def owner_of(self, path: str) -> Optional[Tuple[str, str]]:
        """Return ``(slot, bundle_id)`` of the bundle recording ``path``."""
        return self.path_owners().get(PurePosixPath(path).as_posix())

    def source_url(self, slot: str, source_id: str) -> str:
        src = self.read(slot).sources.get(source_id)
        return src.url if src else ""

    def detect_modified_files(self, bundle_id: str, base_dir: str | Path) -> List[FileStatus]:
        """Files of ``bundle_id`` that are missing or no longer match their checksum."""
        found = self.find(bundle_id)
        if found is None:
            return []
        base = Path(base_dir)
        out: List[FileStatus] = []
        for f in found[1].files:
            p = base / f.path
            if not p.is_file():
                out.append(FileStatus(path=f.path, status=FILE_MISSING, expected=f.checksum))
                continue
            actual = file_checksum(p)
            if actual != f.checksum:
                out.append(FileStatus(path=f.path, status=FILE_MODIFIED, expected=f.checksum, actual=actual))
        return out

    def installed_bundles(self, base_dir: str | Path | None = None) -> Tuple[List[LockedBundle], List[str]]:
        """All recorded bundles across slots.

        A bundle recorded in more than one slot is reported in the second list
        and left out of the first. With ``base_dir`` set, ``files_missing``
        tells whether any recorded file is absent on disk.
        """
        seen: Dict[str, List[LockedBundle]] = {}
        with self.mutex:
            for slot in self.slots:
                for bid, entry in self.read(slot).bundles.items():
                    seen.setdefault(bid, []).append(LockedBundle(bundle_id=bid, slot=slot, entry=entry))

        bundles: List[LockedBundle] = []
        conflicts: List[str] = []
        for bid, items in seen.items():
            if len(items) > 1:
                log.warning("bundle recorded in several lockfiles bundle_id=%s slots=%s", bid, [i.slot for i in items])
                conflicts.append(bid)
                continue
            lb = items[0]
            if base_dir is not None:
                base = Path(base_dir)
                lb.files_missing = any(not (base / f.path).exists() for f in lb.entry.files)
            bundles.append(lb)
        return bundles, conflicts

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    def upsert(self, slot: str, bundle_id: str, entry: LockfileBundleSpec, *, source_url: str = "") -> None:
        with self.transaction(slot) as lock:
            lock.bundles[bundle_id] = entry
            prev = lock.sources.get(entry.source_id)
            url = source_url or (prev.url if prev else "")
            lock.sources[entry.source_id] = LockfileSourceSpec(type=entry.source_type, url=url)

    def remove(self, bundle_id: str, slot: str | None = None) -> Optional[Tuple[str, LockfileBundleSpec]]:
        with self.mutex:
            for s in ([slot] if slot else list(self.slots)):
                lock = self.read(s)
                if bundle_id not in lock.bundles:
                    continue
                entry = lock.bundles.pop(bundle_id)
                self._drop_orphan_sources(lock)
                self._write(s, lock)
                return s, entry
        return None

    def move(self, bundle_id: str, to_slot: str) -> str:
        """Move an entry to ``to_slot``: write the destination, then remove from the source.

        Returns the slot the entry was in before the call.
        """
        self.path(to_slot)
        with self.mutex:
            found = self.find(bundle_id)
            if found is None:
                raise BundleNotFound(f"Bundle not recorded in any lockfile: {bundle_id}", bundle_id=bundle_id)
            old, entry = found
            if old == to_slot:
                return old
            url = self.source_url(old, entry.source_id)
            self.upsert(to_slot, bundle_id, entry, source_url=url)
            self.remove(bundle_id, old)
            log.debug("lockfile entry moved bundle_id=%s from=%s to=%s", bundle_id, old, to_slot)
            return old
