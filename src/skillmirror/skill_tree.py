from __future__ import annotations

import hashlib
import os
import shutil
from collections.abc import Iterable
from pathlib import Path
from uuid import uuid4

from .frontmatter import SKILL_FILENAME

# Version-control metadata never travels with a skill.
VCS_DIR_NAMES = {".git", ".hg", ".svn"}


def is_skill_dir(path: Path) -> bool:
    return (path / SKILL_FILENAME).is_file()


def copy_skill_tree(src: Path, dest: Path, *, skip_dirs: Iterable[Path] = ()) -> None:
    """Copy `src` to `dest` (which must not exist), leaving out VCS dirs and `skip_dirs`."""
    src = Path(os.path.abspath(src))
    skipped = {os.path.normpath(os.path.abspath(p)) for p in skip_dirs}

    def _ignore(dirpath: str, names: list[str]) -> set[str]:
        out: set[str] = set()
        for name in names:
            if name in VCS_DIR_NAMES:
                out.add(name)
            elif skipped and os.path.normpath(os.path.join(dirpath, name)) in skipped:
                out.add(name)
        return out

    shutil.copytree(src, dest, symlinks=True, ignore=_ignore)


def fingerprint_tree(skill_dir: Path) -> str:
    """Content fingerprint over relative paths and file bytes, VCS dirs excluded."""
    digest = hashlib.sha256()
    root = Path(os.path.abspath(skill_dir))

    files: list[tuple[str, Path]] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = [d for d in dirnames if d not in VCS_DIR_NAMES]
        for name in filenames:
            path = Path(dirpath) / name
            files.append((path.relative_to(root).as_posix(), path))

    for relative, path in sorted(files):
        try:
            data = path.read_bytes()
        except OSError:
            # Broken symlink.
            continue
        digest.update(relative.encode("utf-8"))
        digest.update(b"\0")
        digest.update(data)
        digest.update(b"\0")

    return f"sha256:{digest.hexdigest()}"


def remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def atomic_replace_directory(*, existing_dir: Path, staged_dir: Path) -> None:
    parent = existing_dir.parent
    backup_dir = parent / f".{existing_dir.name}.backup-{uuid4().hex}"

    os.replace(existing_dir, backup_dir)
    try:
        os.replace(staged_dir, existing_dir)
    except Exception:
        os.replace(backup_dir, existing_dir)
        raise
    shutil.rmtree(backup_dir)
