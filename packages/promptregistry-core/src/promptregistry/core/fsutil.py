from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, List

log = logging.getLogger("promptregistry.core.fsutil")


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``<path>.tmp`` then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8", newline="\n") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(str(tmp), str(path))


def atomic_replace_dir(src: Path, dst: Path) -> None:
    # dst must be on same filesystem to be truly atomic.
    dst.parent.mkdir(parents=True, exist_ok=True)
    os.replace(str(src), str(dst))


def rm_rf(p: Path) -> None:
    if not p.exists() and not p.is_symlink():
        return
    if p.is_symlink() or p.is_file():
        p.unlink(missing_ok=True)
        return
    shutil.rmtree(p, ignore_errors=True)


def prune_empty_dirs(dirs: Iterable[Path], *, stop_at: Path) -> List[Path]:
    """Remove each directory and then its parents while they are empty.

    Never removes ``stop_at`` or anything outside it. ``os.rmdir`` refuses
    non-empty directories, so content that is still present keeps its
    directory alive. Errors are logged and skipped.
    """
    stop_at = Path(stop_at)
    removed: List[Path] = []
    # deepest first so children are gone before their parents are checked
    for d in sorted({Path(x) for x in dirs}, key=lambda x: len(x.parts), reverse=True):
        cur = d
        while cur != stop_at and stop_at in cur.parents:
            if not cur.is_dir():
                cur = cur.parent
                continue
            try:
                next(cur.iterdir())
                break
            except StopIteration:
                pass
            except OSError as e:
                log.warning("cannot inspect directory %s: %s", cur, e)
                break
            try:
                os.rmdir(cur)
            except OSError as e:
                log.warning("cannot remove empty directory %s: %s", cur, e)
                break
            removed.append(cur)
            cur = cur.parent
    return removed
