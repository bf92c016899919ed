from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath
from typing import Dict, Optional, Tuple

from promptregistry.core.exception import ManifestInvalid, PlacementNotSupported
from promptregistry.core.spec import ITEM_KINDS

log = logging.getLogger("promptregistry.core.placement")

# kind -> (subdirectory, filename suffix); a None suffix means the item is a directory.
REPOSITORY_LAYOUT: Dict[str, Tuple[str, Optional[str]]] = {
    "prompt": ("prompts", ".prompt.md"),
    "instructions": ("instructions", ".instructions.md"),
    "agent": ("agents", ".agent.md"),
    "chatmode": ("prompts", ".chatmode.md"),
    "skill": ("skills", None),
}

USER_LAYOUT: Dict[str, Tuple[str, Optional[str]]] = {
    "prompt": ("prompts", ".prompt.md"),
}

GLOBAL_STORAGE_MARKER = "globalStorage"
USER_MARKER = "User"
PROFILES_MARKER = "profiles"
PROFILE_ENTRY_COMMAND = "workbench.profiles.actions.profileEntry."


def validate_item_id(item_id: str) -> str:
    """Item ids become file names; they must be a single, non-relative path segment."""
    s = str(item_id or "").strip()
    if not s or s in {".", ".."} or "/" in s or "\\" in s or "\x00" in s:
        raise ManifestInvalid(f"Invalid item id for placement: {item_id!r}")
    return s


@dataclass(frozen=True)
class PlacementPolicy:
    """Table-driven mapping of content kinds to target paths.

    Paths are relative to the scope base directory: the workspace root for
    repository scope (so they start with the managed directory) and the user
    root for user scope.
    """

    managed_dir: str = ".github"

    def layout(self, scope: str) -> Dict[str, Tuple[str, Optional[str]]]:
        if scope == "repository":
            return REPOSITORY_LAYOUT
        if scope == "user":
            return USER_LAYOUT
        raise PlacementNotSupported(f"Unknown scope: {scope}")

    def root(self, scope: str) -> PurePosixPath:
        if scope == "repository":
            return PurePosixPath(self.managed_dir)
        self.layout(scope)
        return PurePosixPath(".")

    def supports(self, scope: str, kind: str) -> bool:
        return kind in self.layout(scope)

    def is_directory(self, kind: str) -> bool:
        return kind == "skill"

    def target_path(self, scope: str, kind: str, item_id: str) -> PurePosixPath:
        if kind not in ITEM_KINDS:
            raise ManifestInvalid(f"Unknown item kind: {kind!r}")
        table = self.layout(scope)
        if kind not in table:
            raise PlacementNotSupported(f"Kind {kind!r} cannot be installed at {scope} scope")
        item_id = validate_item_id(item_id)
        subdir, suffix = table[kind]
        name = item_id if suffix is None else f"{item_id}{suffix}"
        return self.root(scope) / subdir / name

    def managed_subdirs(self, scope: str) -> list[PurePosixPath]:
        root = self.root(scope)
        return sorted({root / subdir for subdir, _ in self.layout(scope).values()})

    def consolidate(self, paths) -> list[str]:
        """Collapse files below a skill directory into the directory itself.

        Used for git-exclude entries: one line per skill rather than one per file.
        """
        skills = self.root("repository") / REPOSITORY_LAYOUT["skill"][0]
        out: list[str] = []
        seen: set[str] = set()
        for p in paths:
            pp = PurePosixPath(p)
            try:
                rel = pp.relative_to(skills)
            except ValueError:
                key = str(pp)
            else:
                key = str(skills / rel.parts[0]) if rel.parts else str(pp)
            if key not in seen:
                seen.add(key)
                out.append(key)
        return out


# ---------------------------------------------------------------------------
# User root resolution
# ---------------------------------------------------------------------------


def _pure_path(path: str) -> PurePath:
    s = str(path)
    if "\\" in s or (len(s) >= 2 and s[1] == ":" and s[0].isalpha()):
        return PureWindowsPath(s)
    return PurePosixPath(s)


def _last_index(parts: tuple[str, ...], marker: str) -> int:
    for i in range(len(parts) - 1, -1, -1):
        if parts[i] == marker:
            return i
    return -1


def resolve_user_root(storage_path: str, profile: str | None = None) -> Path:
    """Resolve the per-user root from the host's global storage path.

    The path is tokenised into segments and searched for known markers:

    - ``.../User/globalStorage/<ext>``                      -> ``.../User``
    - ``.../User/profiles/<id>/globalStorage/<ext>``        -> ``.../User/profiles/<id>``
    - ``<custom-data-dir>/globalStorage/<ext>`` (no ``User``) -> ``<custom-data-dir>``

    An explicit ``profile`` selects ``.../User/profiles/<profile>``.
    """
    pure = _pure_path(storage_path)
    parts = pure.parts
    idx = _last_index(parts, GLOBAL_STORAGE_MARKER)
    if idx <= 0:
        raise PlacementNotSupported(f"Not a global storage path: {storage_path}")
    base = parts[:idx]

    if profile:
        profile = validate_item_id(profile)
        user_idx = _last_index(base, USER_MARKER)
        if user_idx >= 0:
            base = base[: user_idx + 1] + (PROFILES_MARKER, profile)
        else:
            log.debug("profile=%s ignored: no %s segment in %s", profile, USER_MARKER, storage_path)
    return Path(str(type(pure)(*base)))


def user_dir_of(storage_path: str) -> Optional[Path]:
    """The host's ``User`` directory for a storage path, if it has one."""
    pure = _pure_path(storage_path)
    parts = pure.parts
    idx = _last_index(parts, USER_MARKER)
    if idx < 0:
        return None
    return Path(str(type(pure)(*parts[: idx + 1])))


def _profile_from_storage_json(user_dir: Path) -> Optional[str]:
    p = user_dir / GLOBAL_STORAGE_MARKER / "storage.json"
    if not p.is_file():
        return None
    try:
        data = json.loads(p.read_text(encoding="utf-8")) or {}
    except (OSError, ValueError):
        log.debug("unreadable storage.json at %s", p, exc_info=True)
        return None
    if not isinstance(data, dict):
        return None

    items = (
        ((data.get("lastKnownMenubarData") or {}).get("menus") or {}).get("Preferences") or {}
    ).get("items") or []
    for item in items:
        if not isinstance(item, dict) or item.get("id") != "submenuitem.Profiles":
            continue
        label = str(item.get("label") or "")
        name = None
        if label.startswith("Profile (") and label.endswith(")"):
            name = label[len("Profile ("):-1]
        entries = [
            e for e in ((item.get("submenu") or {}).get("items") or [])
            if isinstance(e, dict) and str(e.get("command") or "").startswith(PROFILE_ENTRY_COMMAND)
        ]
        for e in entries:
            if name is not None and e.get("label") == name:
                return str(e["command"])[len(PROFILE_ENTRY_COMMAND):]
        if len(entries) == 1:
            return str(entries[0]["command"])[len(PROFILE_ENTRY_COMMAND):]
    return None


def _profile_from_recent_activity(user_dir: Path) -> Optional[str]:
    profiles = user_dir / PROFILES_MARKER
    if not profiles.is_dir():
        return None
    best: tuple[float, str] | None = None
    for d in profiles.iterdir():
        gs = d / GLOBAL_STORAGE_MARKER
        if not gs.is_dir():
            continue
        mtime = gs.stat().st_mtime
        if best is None or mtime > best[0]:
            best = (mtime, d.name)
    return best[1] if best else None


def detect_active_profile(user_dir: str | Path) -> Optional[str]:
    """Best-effort detection of the host's active profile id.

    ``storage.json`` menu data is preferred; the most recently touched profile
    ``globalStorage`` directory is the fallback. ``None`` means the default profile.
    """
    user_dir = Path(user_dir)
    found = _profile_from_storage_json(user_dir)
    if found:
        return found
    return _profile_from_recent_activity(user_dir)
