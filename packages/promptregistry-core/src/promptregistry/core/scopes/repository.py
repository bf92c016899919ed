from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from promptregistry.core.exception import BundleNotFound
from promptregistry.core.git_exclude import GitExcludeLedger
from promptregistry.core.lockfile import REPOSITORY_SLOTS, LockfileStore
from promptregistry.core.observability import log_event
from promptregistry.core.placement import PlacementPolicy
from promptregistry.core.runtime.settings import Settings
from promptregistry.core.scopes.base import ScopeSynchronizer, SyncOptions
from promptregistry.core.spec import COMMIT_MODES

log = logging.getLogger("promptregistry.core.scopes.repository")

LOCAL_ONLY = "local-only"
COMMIT = "commit"


class RepositoryScopeSynchronizer(ScopeSynchronizer):
    """Repository scope: files under the workspace's managed directory.

    Entries live in the commit or the local-only lockfile at the workspace
    root. Local-only files, and the local-only lockfile itself, are hidden
    from git through the exclude ledger.
    """

    scope = "repository"

    def __init__(
        self,
        workspace_root: str | Path,
        *,
        store: LockfileStore | None = None,
        ledger: GitExcludeLedger | None = None,
        placement: PlacementPolicy | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or Settings()
        root = Path(workspace_root).expanduser().resolve()
        store = store or LockfileStore(root, slots=REPOSITORY_SLOTS, generated_by=settings.generated_by)
        placement = placement or PlacementPolicy(managed_dir=settings.managed_dir)
        super().__init__(root, store, placement=placement, settings=settings)
        self.ledger = ledger or GitExcludeLedger(root)

    def _slot_for(self, options: SyncOptions, previous_slot: Optional[str]) -> str:
        mode = options.commit_mode or previous_slot or COMMIT
        if mode not in COMMIT_MODES:
            raise ValueError(f"Unknown commit mode: {mode!r}. Expected one of {list(COMMIT_MODES)}")
        return mode

    def _ledger_paths_in_use(self, exclude_bundle: str) -> set[str]:
        lock = self.store.read(LOCAL_ONLY)
        paths: List[str] = []
        for bid, entry in lock.bundles.items():
            if bid != exclude_bundle:
                paths.extend(f.path for f in entry.files)
        return set(self.placement.consolidate(paths))

    @property
    def local_lockfile_entry(self) -> str:
        return self.store.slots[LOCAL_ONLY]

    def _exclude(self, paths: Sequence[str]) -> None:
        # the local-only lockfile is hidden along with the files it records
        self.ledger.add_entries([*self.placement.consolidate(paths), self.local_lockfile_entry])

    def _release(self, bundle_id: str, paths: Sequence[str], keep: Sequence[str] = ()) -> None:
        entries = set(self.placement.consolidate(paths))
        entries -= set(self.placement.consolidate(keep))
        entries -= self._ledger_paths_in_use(bundle_id)
        if not self.store.exists(LOCAL_ONLY):
            entries.add(self.local_lockfile_entry)
        if entries:
            self.ledger.remove_entries(sorted(entries))

    def _on_recorded(self, bundle_id, slot, paths, previous_slot, previous_paths) -> None:
        if previous_slot == LOCAL_ONLY:
            keep = paths if slot == LOCAL_ONLY else ()
            self._release(bundle_id, previous_paths, keep)
        if slot == LOCAL_ONLY:
            self._exclude(paths)

    def _on_cleared(self, bundle_id, slot, paths) -> None:
        if slot == LOCAL_ONLY:
            self._release(bundle_id, paths)

    def switch_commit_mode(self, bundle_id: str, new_mode: str) -> bool:
        """Move a bundle between the commit and local-only lockfiles.

        Returns False when the bundle already is in ``new_mode``.
        """
        if new_mode not in COMMIT_MODES:
            raise ValueError(f"Unknown commit mode: {new_mode!r}. Expected one of {list(COMMIT_MODES)}")
        with self.store.mutex:
            found = self.store.find(bundle_id)
            if found is None:
                raise BundleNotFound(f"Bundle is not installed at repository scope: {bundle_id}", bundle_id=bundle_id)
            old_mode, entry = found
            if old_mode == new_mode:
                log.debug("switch_commit_mode no-op bundle_id=%s mode=%s", bundle_id, new_mode)
                return False

            self.store.move(bundle_id, new_mode)
            paths = [f.path for f in entry.files]
            if old_mode == LOCAL_ONLY:
                self._release(bundle_id, paths)
            if new_mode == LOCAL_ONLY:
                self._exclude(paths)

        log_event(log, settings=self.settings, level=logging.INFO, event="commit_mode_switched",
                  bundle_id=bundle_id, old_mode=old_mode, new_mode=new_mode)
        return True
