from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from promptregistry.core.lockfile import USER_SLOTS, LockfileStore
from promptregistry.core.placement import PlacementPolicy
from promptregistry.core.runtime.settings import Settings
from promptregistry.core.scopes.base import ScopeSynchronizer, SyncOptions

log = logging.getLogger("promptregistry.core.scopes.user")

USER_SLOT = "user"


class UserScopeSynchronizer(ScopeSynchronizer):
    """User scope: prompts placed flat under ``<user-root>/prompts``.

    The user lockfile is kept apart from the user root (under the registry
    state directory) so the host's own directory only receives content files.
    """

    scope = "user"

    def __init__(
        self,
        user_root: str | Path,
        *,
        store_dir: str | Path | None = None,
        store: LockfileStore | None = None,
        placement: PlacementPolicy | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or Settings()
        if store is None:
            store = LockfileStore(
                Path(store_dir or settings.state_root).expanduser(),
                slots=USER_SLOTS,
                generated_by=settings.generated_by,
            )
        super().__init__(user_root, store, placement=placement, settings=settings)

    def _slot_for(self, options: SyncOptions, previous_slot: Optional[str]) -> str:
        if options.commit_mode:
            log.debug("commit mode %s ignored at user scope", options.commit_mode)
        return USER_SLOT
