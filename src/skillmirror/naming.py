from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

from .errors import FlatNameCollisionError, InvalidNameError, InvalidSubgroupSegmentError

FLAT_SEPARATOR = "__"


@dataclass(frozen=True)
class NameNotice:
    """Two skills share a frontmatter name and land in the same target."""

    name: str
    flat_names: tuple[str, ...]
    targets: tuple[str, ...]

    def message(self) -> str:
        where = ", ".join(self.targets) if self.targets else "all targets"
        return f"frontmatter name {self.name!r} is shared by {', '.join(self.flat_names)} ({where})"


def _segments(rel_path: str | Sequence[str]) -> list[str]:
    if isinstance(rel_path, str):
        raw = rel_path.replace("\\", "/").split("/")
    else:
        raw = list(rel_path)
    return [s for s in raw if s and s != "."]


def flatten(rel_path: str | Sequence[str]) -> str:
    """
    Turn a managed-tree relative path into a single target entry name.

    `flatten("acme/formatter") == "acme__formatter"`.
    """
    return FLAT_SEPARATOR.join(_segments(rel_path))


def validate_skill_name(name: str) -> str:
    value = (name or "").strip()
    if not value:
        raise InvalidNameError("Skill name must not be empty.")
    if value.startswith("-"):
        raise InvalidNameError(f"Skill name must not start with '-': {value!r}")
    if "/" in value or "\\" in value:
        raise InvalidNameError(f"Skill name must not contain path separators: {value!r}")
    if value in {".", ".."} or "\0" in value:
        raise InvalidNameError(f"Invalid skill name: {value!r}")
    return value


def validate_subgroup(into: str | None) -> tuple[str, ...]:
    """Split an `--into` value into safe path segments."""
    if into is None:
        return ()
    raw = into.strip()
    if not raw:
        return ()
    if raw.startswith(("/", "\\")) or PurePosixPath(raw).is_absolute() or (len(raw) > 1 and raw[1] == ":"):
        raise InvalidSubgroupSegmentError(f"Subgroup must be a relative path: {into!r}")

    parts = raw.replace("\\", "/").rstrip("/").split("/")
    for part in parts:
        if part == "":
            raise InvalidSubgroupSegmentError(f"Subgroup contains an empty segment: {into!r}")
        if part in {".", ".."}:
            raise InvalidSubgroupSegmentError(f"Subgroup must not contain '.' or '..': {into!r}")
    return tuple(parts)


def check_flat_collisions(skills: Iterable[Any]) -> None:
    """Raise when two skills would occupy the same target entry."""
    seen: dict[str, str] = {}
    for skill in skills:
        previous = seen.get(skill.flat_name)
        if previous is not None and previous != skill.rel_path:
            raise FlatNameCollisionError(
                f"Skills {previous!r} and {skill.rel_path!r} both flatten to {skill.flat_name!r}; rename one of them."
            )
        seen[skill.flat_name] = skill.rel_path


def frontmatter_notices(
    skills: Iterable[Any],
    routes: Mapping[str, Iterable[str]] | None = None,
) -> list[NameNotice]:
    """
    Report frontmatter names shared by more than one skill.

    `routes` maps a target name to the flat names it receives. A shared name is
    only reported when at least one target receives two of the skills carrying
    it; without routes every skill is assumed to reach every target.
    """
    by_name: dict[str, list[str]] = {}
    for skill in skills:
        name = (skill.frontmatter_name or "").strip()
        if name:
            by_name.setdefault(name, []).append(skill.flat_name)

    notices: list[NameNotice] = []
    for name in sorted(by_name):
        flat_names = sorted(by_name[name])
        if len(flat_names) < 2:
            continue
        if routes is None:
            notices.append(NameNotice(name=name, flat_names=tuple(flat_names), targets=()))
            continue
        hit = sorted(t for t, members in routes.items() if len(set(members) & set(flat_names)) >= 2)
        if hit:
            notices.append(NameNotice(name=name, flat_names=tuple(flat_names), targets=tuple(hit)))
    return notices
