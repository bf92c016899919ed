from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

from promptregistry.core.exception import LockfileUnavailable
from promptregistry.core.git_exclude import GitExcludeLedger
from promptregistry.core.lockfile import LockfileStore
from promptregistry.core.placement import PlacementPolicy

log = logging.getLogger("promptregistry.core.diagnostics")


def doctor_check_workspace(
    workspace_root: str | Path,
    *,
    store: LockfileStore | None = None,
    ledger: GitExcludeLedger | None = None,
    managed_dir: str = ".github",
) -> Dict[str, Any]:
    """Doctor check for a repository workspace.

    Reports, without changing anything:
      - files that were modified or deleted since install (warnings)
      - bundles recorded in both lockfiles (errors)
      - unreadable lockfiles (errors)
      - drift between the local-only lockfile and the git-exclude section (errors)
    """
    root = Path(workspace_root).expanduser().resolve()
    store = store or LockfileStore(root)
    ledger = ledger or GitExcludeLedger(root)
    placement = PlacementPolicy(managed_dir=managed_dir)

    errors: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    bundles: List[Dict[str, Any]] = []

    try:
        locked, conflicts = store.installed_bundles(root)
    except LockfileUnavailable as e:
        errors.append({"code": "lockfile_unavailable", "loc": e.path, "msg": str(e)})
        return {"ok": False, "workspace": str(root), "bundles": [], "errors": errors, "warnings": warnings}

    for bid in conflicts:
        errors.append({"code": "lockfile_conflict", "loc": bid, "msg": "bundle recorded in both commit and local-only lockfiles"})

    expected_exclude: List[str] = []
    for lb in locked:
        changes = store.detect_modified_files(lb.bundle_id, root)
        for c in changes:
            warnings.append({"code": f"file_{c.status}", "loc": c.path, "msg": f"bundle {lb.bundle_id}"})
        bundles.append(
            {
                "bundle_id": lb.bundle_id,
                "slot": lb.slot,
                "version": lb.entry.version,
                "files": len(lb.entry.files),
                "files_missing": lb.files_missing,
                "changes": [c.as_dict() for c in changes],
            }
        )
        if lb.slot == "local-only":
            expected_exclude.extend(f.path for f in lb.entry.files)

    exclude: Dict[str, Any] = {"repository": ledger.git_dir() is not None}
    if exclude["repository"]:
        expected = set(placement.consolidate(expected_exclude))
        if any(lb.slot == "local-only" for lb in locked):
            expected.add(store.slots["local-only"])
        actual = set(ledger.entries())
        exclude["entries"] = sorted(actual)
        exclude["unexpected"] = sorted(actual - expected)
        exclude["absent"] = sorted(expected - actual)
        for p in exclude["unexpected"]:
            errors.append({"code": "exclude_orphan", "loc": p, "msg": "git-exclude entry without a local-only bundle"})
        for p in exclude["absent"]:
            errors.append({"code": "exclude_missing", "loc": p, "msg": "local-only file is not excluded from git"})
    elif expected_exclude:
        warnings.append({"code": "no_repository", "loc": str(root), "msg": "local-only bundles but no git repository"})

    return {
        "ok": not errors,
        "workspace": str(root),
        "bundles": bundles,
        "exclude": exclude,
        "errors": errors,
        "warnings": warnings,
    }
