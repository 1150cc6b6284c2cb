from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .frontmatter import SKILL_FILENAME, frontmatter_str, frontmatter_targets, read_frontmatter
from .metadata import SkillMeta, SkillMetadataStore
from .naming import flatten
from .skill_tree import VCS_DIR_NAMES


@dataclass(frozen=True)
class Skill:
    rel_path: str
    source_path: Path
    flat_name: str
    frontmatter_name: str = ""
    license: str = ""
    targets: tuple[str, ...] | None = None
    provenance: SkillMeta | None = None

    def routes_to(self, target_name: str) -> bool:
        return self.targets is None or target_name in self.targets


def scan_skills(source_root: Path, *, metadata: SkillMetadataStore | None = None) -> list[Skill]:
    """List every skill in the managed tree, nested ones included, in path order."""
    store = metadata or SkillMetadataStore()
    root = Path(os.path.abspath(source_root.expanduser()))
    if not root.is_dir():
        return []

    skills: list[Skill] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = sorted(
            d
            for d in dirnames
            if d not in VCS_DIR_NAMES
            and not os.path.islink(os.path.join(dirpath, d))
            # Staging and backup dirs left by an interrupted install.
            and not (d.startswith(".") and (".staging-" in d or ".backup-" in d))
        )
        current = Path(dirpath)
        if current == root or SKILL_FILENAME not in filenames:
            continue
        rel = current.relative_to(root).as_posix()
        fm = read_frontmatter(current)
        skills.append(
            Skill(
                rel_path=rel,
                source_path=current,
                flat_name=flatten(rel),
                frontmatter_name=frontmatter_str(fm, "name"),
                license=frontmatter_str(fm, "license"),
                targets=frontmatter_targets(fm),
                provenance=store.read(current),
            )
        )
    return skills
