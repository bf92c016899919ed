from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Tuple

from promptregistry.core.fsutil import atomic_write_text

log = logging.getLogger("promptregistry.core.git_exclude")

HEADER = "# Prompt Registry (local)"


def normalize_entry(path: str) -> str:
    s = str(path).replace("\\", "/").strip()
    while s.startswith("./"):
        s = s[2:]
    return PurePosixPath(s).as_posix() if s else s


def _dedupe(paths: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen: set[str] = set()
    for p in paths:
        n = normalize_entry(p)
        if n and n not in seen:
            seen.add(n)
            out.append(n)
    return out


class GitExcludeLedger:
    """Managed section inside ``.git/info/exclude``.

    The section is the header line followed by one path per line; it ends at
    the first blank line, comment line or end of file. Every other line in the
    file is left as it is.
    """

    def __init__(self, workspace_root: str | Path):
        self.workspace_root = Path(workspace_root)

    def git_dir(self) -> Optional[Path]:
        dot = self.workspace_root / ".git"
        if dot.is_dir():
            return dot
        if dot.is_file():
            # worktrees and submodules: ".git" is a file containing "gitdir: <path>"
            text = dot.read_text(encoding="utf-8").strip()
            if text.startswith("gitdir:"):
                target = Path(text[len("gitdir:"):].strip())
                if not target.is_absolute():
                    target = (self.workspace_root / target).resolve()
                if target.is_dir():
                    return target
        return None

    def exclude_path(self) -> Optional[Path]:
        gd = self.git_dir()
        return gd / "info" / "exclude" if gd is not None else None

    @staticmethod
    def _section(lines: List[str]) -> Optional[Tuple[int, int]]:
        for i, line in enumerate(lines):
            if line.strip() == HEADER:
                end = i + 1
                while end < len(lines):
                    s = lines[end].strip()
                    if not s or s.startswith("#"):
                        break
                    end += 1
                return i, end
        return None

    def _read(self, path: Path) -> List[str]:
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()

    @staticmethod
    def _write(path: Path, lines: List[str]) -> None:
        atomic_write_text(path, "\n".join(lines) + "\n" if lines else "")

    def entries(self) -> List[str]:
        path = self.exclude_path()
        if path is None:
            return []
        lines = self._read(path)
        sec = self._section(lines)
        if sec is None:
            return []
        h, e = sec
        return [ln.strip() for ln in lines[h + 1:e]]

    def has_section(self) -> bool:
        path = self.exclude_path()
        return path is not None and self._section(self._read(path)) is not None

    def add_entries(self, paths: Iterable[str]) -> List[str]:
        """Append paths to the managed section, creating file and header as needed."""
        wanted = _dedupe(paths)
        path = self.exclude_path()
        if path is None:
            log.debug("no git repository at %s; skipping exclude add", self.workspace_root)
            return []
        if not wanted:
            return []

        lines = self._read(path)
        sec = self._section(lines)
        if sec is None:
            added = wanted
            if lines and lines[-1].strip():
                lines.append("")
            lines.append(HEADER)
            lines.extend(added)
        else:
            h, e = sec
            existing = {ln.strip() for ln in lines[h + 1:e]}
            added = [p for p in wanted if p not in existing]
            if not added:
                return []
            lines[e:e] = added

        self._write(path, lines)
        log.debug("git exclude add path=%s entries=%s", path, added)
        return added

    def remove_entries(self, paths: Iterable[str]) -> List[str]:
        """Drop matching lines from the managed section; drop the header once it is empty."""
        targets = set(_dedupe(paths))
        path = self.exclude_path()
        if path is None:
            log.debug("no git repository at %s; skipping exclude remove", self.workspace_root)
            return []
        if not targets or not path.exists():
            return []

        lines = self._read(path)
        sec = self._section(lines)
        if sec is None:
            return []
        h, e = sec
        remaining: List[str] = []
        removed: List[str] = []
        for ln in lines[h + 1:e]:
            if ln.strip() in targets:
                removed.append(ln.strip())
            else:
                remaining.append(ln)
        if not removed:
            return []

        if remaining:
            lines = lines[: h + 1] + remaining + lines[e:]
        else:
            head, tail = lines[:h], lines[e:]
            # drop the blank separator written in front of the header
            if head and not head[-1].strip() and (not tail or not tail[0].strip()):
                head = head[:-1]
            lines = head + tail

        self._write(path, lines)
        log.debug("git exclude remove path=%s entries=%s", path, removed)
        return removed
