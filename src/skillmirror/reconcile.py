from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from uuid import uuid4

from .config import DEFAULT_MODE, SyncMode, TargetConfig
from .errors import InvalidFilterPatternError, LinkConflictError
from .inventory import Skill, scan_skills
from .manifest import Manifest, ManifestStore
from .naming import check_flat_collisions
from .skill_tree import atomic_replace_directory, copy_skill_tree, fingerprint_tree, remove_path

logger = logging.getLogger(__name__)

WHOLE_TREE = "."

# Plan entry kinds that write to the filesystem.
_MUTATING = {"link", "relink", "copy", "recopy", "prune-link", "prune-copy"}


@dataclass(frozen=True)
class PlannedAction:
    kind: str
    flat_name: str
    path: Path
    source: Path | None = None
    fingerprint: str | None = None
    detail: str = ""


@dataclass
class SyncPlan:
    target: TargetConfig
    mode: SyncMode
    path: Path
    prepare: list[PlannedAction] = field(default_factory=list)
    actions: list[PlannedAction] = field(default_factory=list)
    manifest: Manifest | None = None
    manifest_exists: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SyncReport:
    target: str
    mode: SyncMode
    path: Path
    prepared: tuple[str, ...]
    linked: tuple[str, ...]
    copied: tuple[str, ...]
    updated: tuple[str, ...]
    up_to_date: tuple[str, ...]
    pruned: tuple[str, ...]
    kept: tuple[str, ...]
    failures: dict[str, str]
    warnings: tuple[str, ...]
    dry_run: bool = False

    @property
    def changed(self) -> int:
        return len(self.prepared) + len(self.linked) + len(self.copied) + len(self.updated) + len(self.pruned)


def validate_pattern(pattern: str) -> str:
    if not pattern or not pattern.strip():
        raise InvalidFilterPatternError("Filter pattern must not be empty.")
    i, n = 0, len(pattern)
    while i < n:
        if pattern[i] != "[":
            i += 1
            continue
        j = i + 1
        if j < n and pattern[j] in "!^":
            j += 1
        if j < n and pattern[j] == "]":
            j += 1
        while j < n and pattern[j] != "]":
            j += 1
        if j >= n:
            raise InvalidFilterPatternError(f"Unterminated '[' in filter pattern: {pattern!r}")
        i = j + 1
    return pattern


def _matches(skill: Skill, pattern: str) -> bool:
    if fnmatchcase(skill.flat_name, pattern):
        return True
    return "/" in pattern and fnmatchcase(skill.rel_path, pattern)


def filter_skills(skills: Iterable[Skill], include: Sequence[str] = (), exclude: Sequence[str] = ()) -> list[Skill]:
    """Include patterns narrow first, then exclude patterns remove."""
    for pattern in (*include, *exclude):
        validate_pattern(pattern)
    out = list(skills)
    if include:
        out = [s for s in out if any(_matches(s, p) for p in include)]
    if exclude:
        out = [s for s in out if not any(_matches(s, p) for p in exclude)]
    return out


def _link_target(link: Path) -> Path:
    return Path(os.path.normpath(os.path.join(link.parent, os.readlink(link))))


def _same_path(a: Path, b: Path) -> bool:
    if os.path.normpath(a) == os.path.normpath(b):
        return True
    return os.path.realpath(a) == os.path.realpath(b)


def _is_within(path: Path, root: Path) -> bool:
    pairs = [
        (os.path.normpath(path), os.path.normpath(root)),
        (os.path.realpath(path), os.path.realpath(root)),
    ]
    for candidate, base in pairs:
        if candidate == base or candidate.startswith(base.rstrip(os.sep) + os.sep):
            return True
    return False


def _entries(path: Path) -> list[Path]:
    if path.is_symlink() or not path.is_dir():
        return []
    return sorted(path.iterdir(), key=lambda p: p.name)


class Reconciler:
    """
    Converge target directories onto the managed skill tree.

    Each target is planned in full before anything is written; filter and
    collision errors therefore leave the target untouched.
    """

    def __init__(
        self,
        source_root: Path,
        *,
        manifests: ManifestStore | None = None,
        default_mode: str = DEFAULT_MODE,
    ) -> None:
        self.source_root = Path(os.path.abspath(source_root.expanduser()))
        self.manifests = manifests or ManifestStore()
        self.default_mode = default_mode

    def skills(self) -> list[Skill]:
        return scan_skills(self.source_root)

    def eligible(self, target: TargetConfig, skills: Iterable[Skill]) -> list[Skill]:
        routed = [s for s in skills if s.routes_to(target.name)]
        return filter_skills(routed, target.include, target.exclude)

    def reconcile(
        self,
        target: TargetConfig,
        skills: Sequence[Skill] | None = None,
        *,
        dry_run: bool = False,
        force: bool = False,
    ) -> SyncReport:
        plan = self.plan(target, skills, force=force)
        return self.apply(plan, dry_run=dry_run)

    def plan(self, target: TargetConfig, skills: Sequence[Skill] | None = None, *, force: bool = False) -> SyncPlan:
        mode = target.sync_mode(self.default_mode)
        all_skills = list(skills) if skills is not None else self.skills()
        eligible = self.eligible(target, all_skills)
        check_flat_collisions(eligible)

        plan = SyncPlan(target=target, mode=mode, path=target.target_path)
        if mode is SyncMode.SYMLINK:
            if target.include or target.exclude:
                plan.warnings.append("include/exclude filters do not apply in symlink mode")
            self._plan_symlink(plan, force=force)
        elif mode is SyncMode.MERGE:
            self._plan_merge(plan, eligible, force=force)
        else:
            self._plan_copy(plan, eligible, force=force)
        return plan

    def _plan_symlink(self, plan: SyncPlan, *, force: bool) -> None:
        p = plan.path
        if p.is_symlink():
            current = _link_target(p)
            if _same_path(current, self.source_root):
                plan.actions.append(PlannedAction("noop", WHOLE_TREE, p))
            elif not p.exists() or force:
                plan.actions.append(PlannedAction("relink", WHOLE_TREE, p, source=self.source_root))
            else:
                raise LinkConflictError(f"{p} links to {current}, not {self.source_root} (use --force to replace)")
            return
        if p.exists():
            if p.is_dir() and not any(p.iterdir()):
                plan.actions.append(PlannedAction("relink", WHOLE_TREE, p, source=self.source_root))
            elif force:
                plan.actions.append(PlannedAction("relink", WHOLE_TREE, p, source=self.source_root))
            else:
                raise LinkConflictError(f"{p} already exists and is not a link to the skill source (use --force)")
            return
        plan.actions.append(PlannedAction("link", WHOLE_TREE, p, source=self.source_root))

    def _plan_target_dir(self, plan: SyncPlan, *, force: bool) -> list[Path]:
        p = plan.path
        if p.is_symlink() or (p.exists() and not p.is_dir()):
            if not force:
                raise LinkConflictError(
                    f"{p} is not a directory; {plan.mode.value} mode needs one (use --force to replace it)"
                )
            plan.prepare.append(PlannedAction("replace-target", "", p))
            return []
        if not p.exists():
            plan.prepare.append(PlannedAction("create-target", "", p))
            return []
        plan.manifest_exists = self.manifests.exists(p)
        plan.manifest = self.manifests.load(p) if plan.manifest_exists else None
        return _entries(p)

    def _plan_stale_links(self, plan: SyncPlan, existing: list[Path], desired: set[str]) -> None:
        for entry in existing:
            if entry.name in desired:
                continue
            if entry.is_symlink() and _is_within(_link_target(entry), self.source_root):
                plan.actions.append(PlannedAction("prune-link", entry.name, entry))

    def _plan_merge(self, plan: SyncPlan, eligible: list[Skill], *, force: bool) -> None:
        existing = self._plan_target_dir(plan, force=force)
        fresh = bool(plan.prepare)
        desired = {s.flat_name: s for s in eligible}

        for flat in sorted(desired):
            skill = desired[flat]
            entry = plan.path / flat
            if fresh or not (entry.exists() or entry.is_symlink()):
                plan.actions.append(PlannedAction("link", flat, entry, source=skill.source_path))
            elif entry.is_symlink():
                current = _link_target(entry)
                if _same_path(current, skill.source_path):
                    plan.actions.append(PlannedAction("noop", flat, entry))
                elif _is_within(current, self.source_root) or force:
                    plan.actions.append(PlannedAction("relink", flat, entry, source=skill.source_path))
                else:
                    plan.actions.append(
                        PlannedAction("conflict", flat, entry, detail=f"{entry} links to {current} (use --force)")
                    )
            elif force:
                plan.actions.append(PlannedAction("relink", flat, entry, source=skill.source_path))
            else:
                plan.actions.append(
                    PlannedAction("keep", flat, entry, detail=f"{entry} is a local directory; left in place")
                )

        self._plan_stale_links(plan, existing, set(desired))

    def _plan_copy(self, plan: SyncPlan, eligible: list[Skill], *, force: bool) -> None:
        existing = self._plan_target_dir(plan, force=force)
        fresh = bool(plan.prepare)
        if plan.manifest is None:
            plan.manifest = Manifest()
        manifest = plan.manifest
        desired = {s.flat_name: s for s in eligible}

        for flat in sorted(desired):
            skill = desired[flat]
            entry = plan.path / flat
            fingerprint = fingerprint_tree(skill.source_path)
            if fresh or not (entry.exists() or entry.is_symlink()):
                plan.actions.append(
                    PlannedAction("copy", flat, entry, source=skill.source_path, fingerprint=fingerprint)
                )
            elif entry.is_symlink() or not entry.is_dir():
                if force:
                    plan.actions.append(
                        PlannedAction("recopy", flat, entry, source=skill.source_path, fingerprint=fingerprint)
                    )
                else:
                    plan.actions.append(
                        PlannedAction("conflict", flat, entry, detail=f"{entry} is not a directory (use --force)")
                    )
            else:
                record = manifest.get(flat)
                if record is not None:
                    kind = "noop" if record.fingerprint == fingerprint and not force else "recopy"
                elif fingerprint_tree(entry) == fingerprint:
                    kind = "adopt"
                elif force:
                    kind = "recopy"
                else:
                    plan.actions.append(
                        PlannedAction("keep", flat, entry, detail=f"{entry} is not managed by skillmirror; left in place")
                    )
                    continue
                plan.actions.append(PlannedAction(kind, flat, entry, source=skill.source_path, fingerprint=fingerprint))

        for flat in sorted(set(manifest.entries) - set(desired)):
            entry = plan.path / flat
            if entry.is_dir() and not entry.is_symlink():
                plan.actions.append(PlannedAction("prune-copy", flat, entry))
            else:
                plan.actions.append(PlannedAction("forget", flat, entry))

        self._plan_stale_links(plan, existing, set(desired))

    def apply(self, plan: SyncPlan, *, dry_run: bool = False) -> SyncReport:
        buckets: dict[str, list[str]] = {
            "linked": [],
            "copied": [],
            "updated": [],
            "up_to_date": [],
            "pruned": [],
            "kept": [],
        }
        prepared: list[str] = []
        failures: dict[str, str] = {}
        warnings = list(plan.warnings)
        manifest = plan.manifest
        manifest_dirty = False

        for action in plan.prepare:
            if not dry_run:
                self._execute(action)
            prepared.append(f"{action.kind} {action.path}")

        for action in plan.actions:
            label = action.flat_name
            if action.kind == "conflict":
                failures[label] = action.detail
                continue
            if action.kind == "keep":
                buckets["kept"].append(label)
                warnings.append(action.detail)
                continue

            if not dry_run and action.kind in _MUTATING:
                try:
                    self._execute(action)
                except OSError as e:
                    logger.info("%s %s failed: %s", action.kind, action.path, e)
                    failures[label] = str(e)
                    continue

            if action.kind == "link":
                buckets["linked"].append(label)
            elif action.kind == "copy":
                buckets["copied"].append(label)
            elif action.kind in ("relink", "recopy"):
                buckets["updated"].append(label)
            elif action.kind in ("prune-link", "prune-copy"):
                buckets["pruned"].append(label)
            elif action.kind in ("noop", "adopt"):
                buckets["up_to_date"].append(label)

            if manifest is None:
                continue
            if plan.mode is SyncMode.COPY:
                if action.kind in ("copy", "recopy", "adopt"):
                    assert action.fingerprint is not None
                    manifest.record(label, action.fingerprint)
                    manifest_dirty = True
                elif action.kind in ("prune-copy", "forget"):
                    manifest.drop(label)
                    manifest_dirty = True
            elif action.kind == "relink" and manifest.get(label) is not None:
                manifest.drop(label)
                manifest_dirty = True

        if manifest is not None:
            manifest_dirty = self._settle_manifest(plan, manifest, dirty=manifest_dirty, warnings=warnings)
            if manifest_dirty and not dry_run:
                self._write_manifest(plan, manifest)
            if manifest_dirty and plan.mode is not SyncMode.COPY and not manifest.entries:
                prepared.append(f"remove-manifest {self.manifests.path_for(plan.path)}")

        for warning in warnings:
            logger.info("%s: %s", plan.target.name, warning)

        return SyncReport(
            target=plan.target.name,
            mode=plan.mode,
            path=plan.path,
            prepared=tuple(prepared),
            linked=tuple(buckets["linked"]),
            copied=tuple(buckets["copied"]),
            updated=tuple(buckets["updated"]),
            up_to_date=tuple(buckets["up_to_date"]),
            pruned=tuple(buckets["pruned"]),
            kept=tuple(buckets["kept"]),
            failures=failures,
            warnings=tuple(warnings),
            dry_run=dry_run,
        )

    def _settle_manifest(self, plan: SyncPlan, manifest: Manifest, *, dirty: bool, warnings: list[str]) -> bool:
        if plan.mode is SyncMode.COPY:
            return dirty or not plan.manifest_exists
        # Leaving copy mode: entries whose directory is gone no longer need tracking.
        for flat in sorted(manifest.entries):
            entry = plan.path / flat
            if entry.is_symlink() or not entry.is_dir():
                manifest.drop(flat)
                dirty = True
        if manifest.entries:
            warnings.append(
                f"{len(manifest.entries)} copied skill(s) from copy mode remain; use --force to convert them"
            )
        return dirty or not manifest.entries

    def _write_manifest(self, plan: SyncPlan, manifest: Manifest) -> None:
        if plan.mode is not SyncMode.COPY and not manifest.entries:
            self.manifests.remove(plan.path)
        else:
            self.manifests.save(plan.path, manifest)

    def _execute(self, action: PlannedAction) -> None:
        path = action.path
        kind = action.kind
        if kind == "create-target":
            path.mkdir(parents=True, exist_ok=True)
        elif kind == "replace-target":
            remove_path(path)
            path.mkdir(parents=True, exist_ok=True)
        elif kind in ("link", "relink"):
            assert action.source is not None
            if kind == "relink":
                remove_path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            os.symlink(action.source, path, target_is_directory=True)
        elif kind in ("copy", "recopy"):
            assert action.source is not None
            self._copy_into(action.source, path)
        elif kind == "prune-link":
            path.unlink()
        elif kind == "prune-copy":
            shutil.rmtree(path)
        else:
            raise AssertionError(f"unexpected action: {kind}")
        logger.info("%s %s", kind, path)

    @staticmethod
    def _copy_into(src: Path, dest: Path) -> None:
        staging = dest.parent / f".{dest.name}.staging-{uuid4().hex}"
        try:
            copy_skill_tree(src, staging)
            if dest.is_dir() and not dest.is_symlink():
                atomic_replace_directory(existing_dir=dest, staged_dir=staging)
            else:
                if dest.exists() or dest.is_symlink():
                    remove_path(dest)
                os.replace(staging, dest)
        except Exception:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
            raise

    def status(self, target: TargetConfig) -> str:
        """One-word state of a target directory, for listings."""
        p = target.target_path
        if p.is_symlink():
            if not p.exists():
                return "broken"
            return "linked" if _same_path(_link_target(p), self.source_root) else "conflict"
        if not p.exists():
            return "not exist"
        if not p.is_dir():
            return "conflict"
        if self.manifests.exists(p):
            return "copied"
        entries = _entries(p)
        if any(e.is_symlink() and _is_within(_link_target(e), self.source_root) for e in entries):
            return "merged"
        return "has files" if entries else "empty"


def target_routes(reconciler: Reconciler, targets: Iterable[TargetConfig], skills: Sequence[Skill]) -> dict[str, list[str]]:
    """Flat names each target would receive; symlink targets receive everything."""
    routes: dict[str, list[str]] = {}
    for target in targets:
        if target.sync_mode(reconciler.default_mode) is SyncMode.SYMLINK:
            routes[target.name] = [s.flat_name for s in skills]
        else:
            routes[target.name] = [s.flat_name for s in reconciler.eligible(target, skills)]
    return routes
