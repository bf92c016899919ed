from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

# Ensure built-in source adapters are registered.
from promptregistry.core.builtins import adapters as _builtin_adapters  # noqa: F401

from promptregistry.core.bundles import BundleCache, bundle_id as make_bundle_id, load_manifest, parse_manifest
from promptregistry.core.concurrency import TaskOutcome, run_thread_pool
from promptregistry.core.exception import BundleNotFound, PlacementNotSupported, SourceNotFound
from promptregistry.core.lockfile import utc_now_iso
from promptregistry.core.observability import dur_ms, load_metrics_sink, log_event
from promptregistry.core.placement import detect_active_profile, resolve_user_root, user_dir_of
from promptregistry.core.registry.adapters import REGISTRY
from promptregistry.core.runtime.settings import Settings, load_settings
from promptregistry.core.scopes import (
    RepositoryScopeSynchronizer,
    ScopeSynchronizer,
    SyncOptions,
    UnsyncResult,
    UserScopeSynchronizer,
)
from promptregistry.core.sources.base import SourceAdapter
from promptregistry.core.spec import (
    SCOPES,
    BundleQuery,
    BundleRecord,
    DeploymentManifestSpec,
    InstalledBundle,
    SourceSpec,
)
from promptregistry.core.state import StateStore

log = logging.getLogger("promptregistry.core.manager")


def validate_source(data: Mapping[str, Any]) -> SourceSpec:
    """Parse a source definition, listing unknown keys in a friendly error."""
    try:
        source = SourceSpec.model_validate(dict(data))
    except ValidationError as exc:
        unknowns = sorted(
            ".".join(str(x) for x in err.get("loc", ()))
            for err in exc.errors()
            if err.get("type") == "extra_forbidden"
        )
        if unknowns:
            raise ValueError("Unknown source keys: " + ", ".join(unknowns)) from exc
        raise ValueError(f"Invalid source definition: {exc}") from exc
    if source.kind not in REGISTRY.list():
        raise ValueError(f"Unsupported source kind: {source.kind}. Available: {REGISTRY.list()}")
    return source


class RegistryManager:
    """Top-level orchestrator.

    Owns the registered sources, the cached bundle records and the
    installed-bundle index, and hands installs to the synchronizer of the
    requested scope. One manager serves one workspace.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        workspace_root: str | Path | None = None,
        state: StateStore | None = None,
        env: Mapping[str, str] | None = None,
        adapter_options: Dict[str, Dict[str, Any]] | None = None,
    ):
        self.env = dict(os.environ) if env is None else dict(env)
        self.settings = settings or load_settings(env=self.env)
        root = workspace_root or self.settings.workspace_root or os.getcwd()
        self.workspace_root = Path(root).expanduser().resolve()
        state_root = Path(self.settings.state_root).expanduser()
        self.state = state or StateStore(state_root / "registry.sqlite")
        self.cache = BundleCache(self.settings.work_root)
        self.metrics = load_metrics_sink(self.settings)
        # Per source kind, passed to adapters (e.g. {"http": {"transport": ...}}).
        self.adapter_options = dict(adapter_options or {})
        self._repository: RepositoryScopeSynchronizer | None = None
        self._user: UserScopeSynchronizer | None = None

    # ------------------------------------------------------------------
    # scopes
    # ------------------------------------------------------------------

    def repository(self) -> RepositoryScopeSynchronizer:
        if self._repository is None:
            self._repository = RepositoryScopeSynchronizer(self.workspace_root, settings=self.settings)
        return self._repository

    def user_root(self) -> Path:
        storage = self.settings.user_storage_path
        if not storage:
            raise PlacementNotSupported("User scope needs a user storage path (PROMPTREGISTRY_USER_STORAGE)")
        profile = self.settings.user_profile
        if not profile and self.settings.detect_user_profile:
            user_dir = user_dir_of(storage)
            if user_dir is not None:
                profile = detect_active_profile(user_dir)
                log.debug("detected active profile=%s", profile)
        return resolve_user_root(storage, profile)

    def user(self) -> UserScopeSynchronizer:
        if self._user is None:
            self._user = UserScopeSynchronizer(
                self.user_root(),
                store_dir=Path(self.settings.state_root).expanduser(),
                settings=self.settings,
            )
        return self._user

    def synchronizer(self, scope: str) -> ScopeSynchronizer:
        if scope == "repository":
            return self.repository()
        if scope == "user":
            return self.user()
        raise ValueError(f"Unknown scope: {scope!r}. Expected one of {list(SCOPES)}")

    # ------------------------------------------------------------------
    # sources
    # ------------------------------------------------------------------

    def add_source(self, source: SourceSpec | Mapping[str, Any]) -> SourceSpec:
        """Register (or replace) a source. Idempotent by id."""
        if not isinstance(source, SourceSpec):
            source = validate_source(source)
        elif source.kind not in REGISTRY.list():
            raise ValueError(f"Unsupported source kind: {source.kind}. Available: {REGISTRY.list()}")
        self.state.upsert_source(source)
        log_event(log, settings=self.settings, level=logging.INFO, event="source_added",
                  source_id=source.id, kind=source.kind, url=source.url)
        return source

    def remove_source(self, source_id: str) -> bool:
        """De-register a source and drop its cached bundle records. Installed bundles stay."""
        existed = self.state.delete_source(source_id)
        if existed:
            log_event(log, settings=self.settings, level=logging.INFO, event="source_removed", source_id=source_id)
        return existed

    def get_source(self, source_id: str) -> SourceSpec:
        source = self.state.get_source(source_id)
        if source is None:
            raise SourceNotFound(f"Source not registered: {source_id}")
        return source

    def list_sources(self) -> List[SourceSpec]:
        return self.state.list_sources()

    def adapter(self, source: SourceSpec) -> SourceAdapter:
        return REGISTRY.create(
            source,
            settings=self.settings,
            env=self.env,
            options=self.adapter_options.get(source.kind),
        )

    def sync_source(self, source_id: str) -> List[BundleRecord]:
        """Refresh the cached bundle records of one source. Installed state is untouched."""
        source = self.get_source(source_id)
        t0 = time.time()
        adapter = self.adapter(source)
        try:
            remote = adapter.list_bundles()
        finally:
            adapter.close()

        records: Dict[str, BundleRecord] = {}
        for r in remote:
            bid = make_bundle_id(r.repo_slug, r.collection_id, r.version)
            records[bid] = BundleRecord(
                id=bid,
                version=r.version,
                source_id=source.id,
                collection_id=r.collection_id,
                repo_slug=r.repo_slug,
                name=r.name,
                description=r.description,
                location=dict(r.location),
            )
        self.state.replace_bundles(source.id, records.values())

        duration = dur_ms(t0, time.time())
        self.metrics.on_source_sync(source_id=source.id, bundles=len(records), duration_ms=duration)
        log_event(log, settings=self.settings, level=logging.INFO, event="source_synced",
                  source_id=source.id, bundles=len(records), duration_ms=duration)
        return list(records.values())

    def sync_all_sources(self, *, fail_fast: bool = False) -> List[TaskOutcome]:
        sources = [s for s in self.list_sources() if s.enabled]
        return run_thread_pool(
            sources,
            lambda s: self.sync_source(s.id),
            workers=self.settings.fetch_workers,
            fail_fast=fail_fast,
        )

    # ------------------------------------------------------------------
    # bundle cache
    # ------------------------------------------------------------------

    def search_bundles(self, query: BundleQuery | None = None, **kw: Any) -> List[BundleRecord]:
        """Query cached bundle records of enabled sources, highest source priority first."""
        q = query or BundleQuery(**kw)
        priorities = {s.id: s.priority for s in self.list_sources() if s.enabled}
        text = (q.text or "").strip().lower()
        out: List[BundleRecord] = []
        for r in self.state.list_bundles(q.source_id):
            if r.source_id not in priorities:
                continue
            if q.collection_id and r.collection_id != q.collection_id:
                continue
            if text:
                hay = " ".join(x for x in (r.id, r.collection_id, r.name, r.description) if x).lower()
                if text not in hay:
                    continue
            out.append(r)
        out.sort(key=lambda r: (-priorities.get(r.source_id, 0), r.id))
        return out

    def get_bundle(self, bundle_id: str) -> BundleRecord:
        rec = self.state.get_bundle(bundle_id)
        if rec is None:
            raise BundleNotFound(f"Bundle not in cache (sync its source first): {bundle_id}", bundle_id=bundle_id)
        return rec

    def get_bundle_manifest(self, bundle_id: str) -> DeploymentManifestSpec:
        """The bundle's deployment manifest, fetched through its source adapter once."""
        rec = self.get_bundle(bundle_id)
        if rec.manifest is None:
            adapter = self.adapter(self.get_source(rec.source_id))
            try:
                data = adapter.fetch_manifest(rec)
            finally:
                adapter.close()
            manifest = parse_manifest(data, where=bundle_id)
            rec.manifest = manifest.model_dump(by_alias=True)
            self.state.upsert_bundle(rec)
            return manifest
        return parse_manifest(rec.manifest, where=bundle_id)

    def _resolve(self, bundle_id: str, version: str | None) -> BundleRecord:
        rec = self.get_bundle(bundle_id)
        if version and str(version) != rec.version:
            alts = [
                r for r in self.state.list_bundles(rec.source_id)
                if r.collection_id == rec.collection_id and r.version == str(version)
            ]
            if not alts:
                raise BundleNotFound(
                    f"Version {version} of {rec.collection_id} is not in cache", bundle_id=bundle_id
                )
            rec = alts[0]
        return rec

    def _fetch_archive(self, source: SourceSpec, rec: BundleRecord) -> bytes:
        adapter = self.adapter(source)
        try:
            return adapter.fetch_archive(rec)
        finally:
            adapter.close()

    # ------------------------------------------------------------------
    # install state
    # ------------------------------------------------------------------

    def install_bundle(
        self,
        bundle_id: str,
        *,
        scope: str = "repository",
        commit_mode: str | None = None,
        version: str | None = None,
    ) -> Optional[InstalledBundle]:
        """Resolve, cache and place a bundle; record it as installed.

        Other installed versions of the same collection at that location are
        replaced once the new version is in place, keeping their commit mode
        unless one is given; a failed install leaves them as they were.
        Returns None when the bundle carries no usable manifest (the sync is
        skipped with a warning).
        """
        sync = self.synchronizer(scope)
        rec = self._resolve(bundle_id, version)
        source = self.get_source(rec.source_id)
        t0 = time.time()

        content = self.cache.ensure(rec, lambda: self._fetch_archive(source, rec))

        here = str(sync.base_dir)
        older = self._other_versions(rec, scope, sync)
        options = SyncOptions(
            commit_mode=commit_mode if scope == "repository" else None,
            version=rec.version,
            source_id=source.id,
            source_kind=source.kind,
            source_url=source.url,
            replaces=older,
        )
        # Older versions are only cleared once the new one is in place.
        result = sync.sync_bundle(rec.id, content, options)
        if result.skipped:
            log_event(log, settings=self.settings, level=logging.WARNING, event="bundle_install_skipped",
                      bundle_id=rec.id, scope=scope, reason=result.reason)
            return None

        for old_id in older:
            self.state.delete_installed(old_id, scope, here)
            log_event(log, settings=self.settings, level=logging.INFO, event="bundle_upgrade",
                      from_bundle=old_id, to_bundle=rec.id, scope=scope)

        manifest = load_manifest(content)
        rec.content_root = str(content)
        rec.manifest = manifest.model_dump(by_alias=True) if manifest is not None else rec.manifest
        self.state.upsert_bundle(rec)

        installed = InstalledBundle(
            bundle_id=rec.id,
            version=rec.version,
            scope=scope,
            install_path=here,
            commit_mode=result.slot if scope == "repository" else None,
            installed_at=utc_now_iso(),
            source_id=source.id,
        )
        self.state.put_installed(installed)

        duration = dur_ms(t0, time.time())
        self.metrics.on_install(bundle_id=rec.id, scope=scope, commit_mode=installed.commit_mode,
                                files=len(result.files), duration_ms=duration)
        log_event(log, settings=self.settings, level=logging.INFO, event="bundle_installed",
                  bundle_id=rec.id, scope=scope, commit_mode=installed.commit_mode,
                  files=len(result.files), duration_ms=duration)
        return installed

    def _other_versions(self, rec: BundleRecord, scope: str, sync: ScopeSynchronizer) -> List[str]:
        """Ids of other installed versions of ``rec``'s collection at ``sync``'s location."""
        versions = {
            b.bundle_id: (b.source_id, b.version)
            for b in self.state.list_installed(scope, install_path=str(sync.base_dir))
        }
        locked, _conflicts = sync.store.installed_bundles()
        for lb in locked:
            versions.setdefault(lb.bundle_id, (lb.entry.source_id, lb.entry.version))
        return [
            bid
            for bid, (source_id, version) in sorted(versions.items())
            if bid != rec.id
            and source_id == rec.source_id
            and bid == make_bundle_id(rec.repo_slug, rec.collection_id, version)
        ]

    def uninstall_bundle(self, bundle_id: str, *, scope: str = "repository") -> UnsyncResult:
        t0 = time.time()
        sync = self.synchronizer(scope)
        result = sync.unsync_bundle(bundle_id)
        self.state.delete_installed(bundle_id, scope, str(sync.base_dir))

        duration = dur_ms(t0, time.time())
        self.metrics.on_uninstall(bundle_id=bundle_id, scope=scope, removed=len(result.removed),
                                  preserved=len(result.preserved), duration_ms=duration)
        log_event(log, settings=self.settings, level=logging.INFO, event="bundle_uninstalled",
                  bundle_id=bundle_id, scope=scope, found=result.found, removed=len(result.removed),
                  preserved=len(result.preserved), duration_ms=duration)
        return result

    def list_installed_bundles(self, scope: str | None = None) -> List[InstalledBundle]:
        """Installed bundles of this workspace, plus user-scope installs.

        Repository entries found in this workspace's lockfiles but missing from
        the index (a lockfile committed by someone else) are included too.
        """
        if scope is not None and scope not in SCOPES:
            raise ValueError(f"Unknown scope: {scope!r}. Expected one of {list(SCOPES)}")
        here = str(self.workspace_root)
        out = [b for b in self.state.list_installed(scope) if b.scope != "repository" or b.install_path == here]
        if scope in (None, "repository"):
            known = {b.bundle_id for b in out if b.scope == "repository"}
            locked, _conflicts = self.repository().store.installed_bundles()
            for lb in locked:
                if lb.bundle_id in known:
                    continue
                out.append(
                    InstalledBundle(
                        bundle_id=lb.bundle_id,
                        version=lb.entry.version,
                        scope="repository",
                        install_path=here,
                        commit_mode=lb.slot,
                        installed_at=lb.entry.installed_at,
                        source_id=lb.entry.source_id,
                    )
                )
        return out

    def switch_commit_mode(self, bundle_id: str, mode: str) -> bool:
        repo = self.repository()
        changed = repo.switch_commit_mode(bundle_id, mode)
        rec = self.state.get_installed(bundle_id, "repository", str(repo.base_dir))
        if rec is not None and rec.commit_mode != mode:
            rec.commit_mode = mode  # type: ignore[assignment]
            self.state.put_installed(rec)
        return changed

    def bundle_status(self, bundle_id: str, *, scope: str = "repository") -> dict:
        st = self.synchronizer(scope).get_status(bundle_id)
        st["cache"] = self.cache.status(bundle_id).as_dict()
        return st
