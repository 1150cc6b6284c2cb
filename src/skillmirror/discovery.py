from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from types import TracebackType

from . import git as gitops
from .errors import InvalidSourceError, SubdirNotFoundError
from .frontmatter import SKILL_FILENAME, frontmatter_str, read_frontmatter
from .skill_tree import VCS_DIR_NAMES, is_skill_dir
from .source import SourceDescriptor

logger = logging.getLogger(__name__)

SKILLIGNORE_FILENAME = ".skillignore"


@dataclass(frozen=True)
class SkillInfo:
    name: str
    relative_path: str
    license: str = ""

    @property
    def is_root(self) -> bool:
        return self.relative_path == "."


class DiscoveryResult:
    """
    Skills found under one resolved source.

    For git sources the result owns the temporary clone; call `close()` (or
    use the result as a context manager) once installation is done.
    """

    def __init__(
        self,
        *,
        source: SourceDescriptor,
        root: Path,
        skills: list[SkillInfo],
        owned_temp_root: Path | None = None,
        commit: str | None = None,
        ignored: tuple[str, ...] = (),
    ) -> None:
        self.source = source
        self.root = root
        self.skills = skills
        self.owned_temp_root = owned_temp_root
        self.commit = commit
        self.ignored = ignored

    @property
    def is_multi(self) -> bool:
        return len(self.skills) > 1

    def path_of(self, skill: SkillInfo) -> Path:
        if skill.is_root:
            return self.root
        return self.root / skill.relative_path

    def close(self) -> None:
        if self.owned_temp_root is not None:
            shutil.rmtree(self.owned_temp_root, ignore_errors=True)
            self.owned_temp_root = None

    def __enter__(self) -> "DiscoveryResult":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def _skill_license(skill_dir: Path) -> str:
    return frontmatter_str(read_frontmatter(skill_dir), "license")


def _child_dirs(path: Path) -> list[Path]:
    out: list[Path] = []
    try:
        entries = list(os.scandir(path))
    except OSError:
        return out
    for entry in entries:
        if entry.name in VCS_DIR_NAMES:
            continue
        if entry.is_dir(follow_symlinks=False):
            out.append(Path(entry.path))
    out.sort(key=lambda p: p.name)
    return out


def walk_skills(root: Path, *, root_name: str) -> list[SkillInfo]:
    """
    Find every directory under `root` holding a SKILL.md.

    Hidden directories are searched; VCS metadata and symlinked directories
    are not. A SKILL.md at `root` itself yields a "." entry named `root_name`.
    """
    skills: list[SkillInfo] = []
    if is_skill_dir(root):
        skills.append(SkillInfo(name=root_name, relative_path=".", license=_skill_license(root)))

    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = sorted(
            d for d in dirnames if d not in VCS_DIR_NAMES and not os.path.islink(os.path.join(dirpath, d))
        )
        current = Path(dirpath)
        if current == root or SKILL_FILENAME not in filenames:
            continue
        if not is_skill_dir(current):
            continue
        rel = current.relative_to(root).as_posix()
        skills.append(SkillInfo(name=current.name, relative_path=rel, license=_skill_license(current)))
    return skills


def read_skillignore(root: Path) -> list[str]:
    path = root / SKILLIGNORE_FILENAME
    if not path.is_file():
        return []
    patterns: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        value = line.strip()
        if not value or value.startswith("#"):
            continue
        patterns.append(value.strip("/"))
    return [p for p in patterns if p]


def is_ignored(skill: SkillInfo, patterns: list[str]) -> bool:
    if skill.is_root:
        return False
    rel = skill.relative_path
    for pattern in patterns:
        if fnmatchcase(skill.name, pattern) or fnmatchcase(rel, pattern):
            return True
        # A pattern naming a directory drops everything grouped under it.
        if rel.startswith(pattern + "/"):
            return True
    return False


def resolve_subdir(repo_root: Path, subdir: str) -> str:
    """
    Map a requested subdirectory onto the checkout.

    An exact path wins. Otherwise the tree is scanned breadth-first for a
    skill directory with the same basename: the shallowest match is taken,
    ties broken by lexical order of the relative path.
    """
    wanted = subdir.strip("/")
    literal = repo_root / wanted
    if literal.is_dir():
        return wanted
    if literal.exists():
        raise SubdirNotFoundError(f"Subdirectory is not a directory: {wanted}")

    basename = wanted.rsplit("/", 1)[-1]
    level = [repo_root]
    while level:
        matches: list[str] = []
        next_level: list[Path] = []
        for parent in level:
            for child in _child_dirs(parent):
                if child.name == basename and is_skill_dir(child):
                    matches.append(child.relative_to(repo_root).as_posix())
                next_level.append(child)
        if matches:
            found = sorted(matches)[0]
            logger.info("Resolved subdirectory %r to %r", wanted, found)
            return found
        level = next_level

    raise SubdirNotFoundError(f"Subdirectory not found in repository: {wanted}")


class Discoverer:
    def __init__(self, *, git_env: Mapping[str, str] | None = None) -> None:
        self.git_env = git_env

    def discover(self, source: SourceDescriptor) -> DiscoveryResult:
        if not source.is_git:
            return self._discover_local(source)

        assert source.clone_url is not None
        temp_root = Path(tempfile.mkdtemp(prefix="skillmirror-"))
        try:
            checkout = temp_root / "repo"
            logger.info("Cloning %s", source.clone_url)
            gitops.clone_shallow(source.clone_url, checkout, env=self.git_env)
            commit = gitops.head_commit(checkout, env=self.git_env)

            resolved = source
            root = checkout
            if source.subdir:
                rel = resolve_subdir(checkout, source.subdir)
                resolved = source.with_subdir(rel)
                root = checkout / rel

            skills, ignored = self._collect(root, resolved)
        except BaseException:
            shutil.rmtree(temp_root, ignore_errors=True)
            raise

        return DiscoveryResult(
            source=resolved,
            root=root,
            skills=skills,
            owned_temp_root=temp_root,
            commit=commit,
            ignored=ignored,
        )

    def _discover_local(self, source: SourceDescriptor) -> DiscoveryResult:
        root = source.local_path
        if root is None or not root.exists():
            raise InvalidSourceError(f"Path does not exist: {root}")
        if not root.is_dir():
            raise InvalidSourceError(f"Not a directory: {root}")
        skills, ignored = self._collect(root, source)
        return DiscoveryResult(
            source=source,
            root=root,
            skills=skills,
            commit=gitops.head_commit(root, env=self.git_env),
            ignored=ignored,
        )

    def _collect(self, root: Path, source: SourceDescriptor) -> tuple[list[SkillInfo], tuple[str, ...]]:
        found = walk_skills(root, root_name=source.resolved_name)
        patterns = read_skillignore(root)
        if not patterns:
            return found, ()
        kept = [s for s in found if not is_ignored(s, patterns)]
        ignored = tuple(s.relative_path for s in found if is_ignored(s, patterns))
        for rel in ignored:
            logger.debug("Ignored by %s: %s", SKILLIGNORE_FILENAME, rel)
        return kept, ignored
