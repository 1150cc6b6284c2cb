from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from fnmatch import fnmatchcase
from pathlib import Path
from uuid import uuid4

from . import git as gitops
from .discovery import Discoverer, DiscoveryResult, SkillInfo, walk_skills
from .errors import (
    AlreadyExistsError,
    InvalidSourceError,
    NameNotApplicableError,
    NoProvenanceForUpdateError,
    NotAGitRepositoryError,
    SkillmirrorError,
)
from .gitignore import add_gitignore_entry
from .metadata import SkillMeta, SkillMetadataStore, utc_now
from .naming import validate_skill_name, validate_subgroup
from .skill_tree import atomic_replace_directory, copy_skill_tree, remove_path
from .source import SourceDescriptor, parse_source

logger = logging.getLogger(__name__)

TRACKED_PREFIX = "_"


@dataclass(frozen=True)
class InstallOptions:
    name: str | None = None
    into: str | None = None
    force: bool = False
    update: bool = False
    dry_run: bool = False
    exclude: tuple[str, ...] = ()


@dataclass(frozen=True)
class InstallOutcome:
    name: str
    path: Path
    action: str
    source: str


@dataclass(frozen=True)
class InstallReport:
    outcomes: tuple[InstallOutcome, ...]
    failures: dict[str, str] = field(default_factory=dict)
    excluded: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    dry_run: bool = False


@dataclass(frozen=True)
class TrackedRepoReport:
    name: str
    path: Path
    action: str
    skills: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    dry_run: bool = False


@dataclass(frozen=True)
class _Placement:
    skill: SkillInfo
    dest: Path
    skip_dirs: tuple[Path, ...]
    keep_git: bool = False


def _is_beneath(child: Path, parent: Path) -> bool:
    try:
        rel = child.relative_to(parent)
    except ValueError:
        return False
    return str(rel) not in ("", ".")


def _install_method(discovery: DiscoveryResult, skill: SkillInfo) -> str:
    if not discovery.source.is_git:
        return "local-copy"
    if skill.is_root and not discovery.source.subdir:
        return "git-clone"
    return "git-clone-and-extract-subdir"


def _track_name(source: SourceDescriptor) -> str:
    if source.owner and source.repo:
        return f"{source.owner}-{source.repo}"
    return source.repo or source.resolved_name


def _swap_in(staging: Path, dest: Path) -> None:
    if dest.is_dir() and not dest.is_symlink():
        atomic_replace_directory(existing_dir=dest, staged_dir=staging)
        return
    if dest.exists() or dest.is_symlink():
        remove_path(dest)
    os.replace(staging, dest)


class Installer:
    def __init__(
        self,
        source_root: Path,
        *,
        metadata: SkillMetadataStore | None = None,
        discoverer: Discoverer | None = None,
        git_env: Mapping[str, str] | None = None,
    ) -> None:
        self.source_root = source_root.expanduser()
        self.metadata = metadata or SkillMetadataStore()
        self.git_env = git_env
        self.discoverer = discoverer or Discoverer(git_env=git_env)

    def install_source(
        self,
        source: str,
        opts: InstallOptions = InstallOptions(),
        *,
        names: Sequence[str] | None = None,
    ) -> InstallReport:
        descriptor = parse_source(source)
        with self.discoverer.discover(descriptor) as discovery:
            selected: list[SkillInfo] | None = None
            if names:
                selected = []
                for wanted in names:
                    match = next(
                        (s for s in discovery.skills if wanted in (s.name, s.relative_path)),
                        None,
                    )
                    if match is None:
                        raise SkillmirrorError(f"Skill not found in source: {wanted}")
                    if match not in selected:
                        selected.append(match)
            return self.install(discovery, selected, opts)

    def install(
        self,
        discovery: DiscoveryResult,
        selected: Sequence[SkillInfo] | None = None,
        opts: InstallOptions = InstallOptions(),
    ) -> InstallReport:
        if not discovery.skills:
            raise SkillmirrorError(f"No SKILL.md found in source: {discovery.source.raw_input}")

        candidates = list(discovery.skills if selected is None else selected)
        warnings: list[str] = []
        excluded: list[SkillInfo] = []
        if opts.exclude:
            if discovery.is_multi:
                excluded = [s for s in candidates if any(fnmatchcase(s.name, p) for p in opts.exclude)]
                candidates = [s for s in candidates if s not in excluded]
            else:
                warnings.append("--exclude only applies to sources with several skills; ignored.")

        if opts.name is not None and len(discovery.skills) != 1:
            raise NameNotApplicableError(
                f"--name needs a source with exactly one skill; found {len(discovery.skills)}."
            )

        placements = self._plan(discovery, candidates, excluded, opts)

        outcomes: list[InstallOutcome] = []
        errors: dict[str, SkillmirrorError | OSError] = {}
        seen: set[Path] = set()
        for placement in placements:
            label = self._label(placement.dest)
            if placement.dest in seen:
                errors[f"{label} ({placement.skill.relative_path})"] = AlreadyExistsError(
                    f"Two skills map to the same destination: {placement.dest}"
                )
                continue
            seen.add(placement.dest)
            try:
                action = self._apply(discovery, placement, opts)
            except (SkillmirrorError, OSError) as e:
                logger.info("Install of %s failed: %s", label, e)
                errors[label] = e
                continue
            outcomes.append(
                InstallOutcome(
                    name=placement.dest.name,
                    path=placement.dest,
                    action=action,
                    source=discovery.source.source_for(placement.skill.relative_path),
                )
            )

        if len(placements) == 1 and errors:
            raise next(iter(errors.values()))

        return InstallReport(
            outcomes=tuple(outcomes),
            failures={k: str(v) for k, v in errors.items()},
            excluded=tuple(s.name for s in excluded),
            warnings=tuple(warnings),
            dry_run=opts.dry_run,
        )

    def _label(self, dest: Path) -> str:
        try:
            return dest.relative_to(self.source_root).as_posix()
        except ValueError:
            return str(dest)

    def _plan(
        self,
        discovery: DiscoveryResult,
        candidates: list[SkillInfo],
        excluded: list[SkillInfo],
        opts: InstallOptions,
    ) -> list[_Placement]:
        roots = [s for s in candidates if s.is_root]
        if len(roots) > 1:
            raise SkillmirrorError("At most one root skill may be installed at a time.")

        base = self.source_root.joinpath(*validate_subgroup(opts.into))
        # Selected children get their own install; excluded ones are dropped.
        detached = [discovery.path_of(s) for s in candidates if not s.is_root]
        detached += [discovery.path_of(s) for s in excluded]

        placements: list[_Placement] = []
        parent = base
        if roots:
            root = roots[0]
            root_dest = base / validate_skill_name(opts.name or root.name)
            # A whole, untrimmed checkout keeps its history so it can be pulled.
            keep_git = (
                discovery.source.is_git
                and not discovery.source.subdir
                and not detached
                and gitops.is_git_repo(discovery.root)
            )
            placements.append(_Placement(skill=root, dest=root_dest, skip_dirs=tuple(detached), keep_git=keep_git))
            parent = root_dest

        for skill in candidates:
            if skill.is_root:
                continue
            name = opts.name if (opts.name and not roots) else skill.name
            src = discovery.path_of(skill)
            skip = tuple(p for p in detached if _is_beneath(p, src))
            placements.append(_Placement(skill=skill, dest=parent / validate_skill_name(name), skip_dirs=skip))
        return placements

    def _apply(self, discovery: DiscoveryResult, placement: _Placement, opts: InstallOptions) -> str:
        dest = placement.dest
        exists = dest.exists() or dest.is_symlink()
        if exists and opts.update:
            return self.update_skill(dest, dry_run=opts.dry_run, discovery=discovery)
        if exists and not opts.force:
            raise AlreadyExistsError(f"Skill already exists: {dest} (use --force to replace or --update to refresh)")
        if opts.dry_run:
            return "would replace" if exists else "would install"

        meta = SkillMeta(
            source=discovery.source.source_for(placement.skill.relative_path),
            type=_install_method(discovery, placement.skill),
            installed_at=utc_now(),
            version=discovery.commit,
        )
        self._materialize(
            discovery.path_of(placement.skill),
            dest,
            skip_dirs=placement.skip_dirs,
            meta=meta,
            git_dir=discovery.root / ".git" if placement.keep_git else None,
        )
        logger.info("Installed %s -> %s", meta.source, dest)
        return "replaced" if exists else "installed"

    def _materialize(
        self,
        src: Path,
        dest: Path,
        *,
        skip_dirs: Iterable[Path],
        meta: SkillMeta,
        carry: Iterable[str] = (),
        git_dir: Path | None = None,
    ) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        staging = dest.parent / f".{dest.name}.staging-{uuid4().hex}"
        try:
            copy_skill_tree(src, staging, skip_dirs=skip_dirs)
            if git_dir is not None:
                shutil.copytree(git_dir, staging / ".git", symlinks=True)
            for name in carry:
                nested = dest / name
                if nested.is_dir() and not (staging / name).exists():
                    shutil.copytree(nested, staging / name, symlinks=True)
            self.metadata.write(staging, meta)
            _swap_in(staging, dest)
        except Exception:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
            raise

    def update_skill(
        self,
        dest: Path,
        *,
        dry_run: bool = False,
        discovery: DiscoveryResult | None = None,
    ) -> str:
        """
        Refresh an installed skill.

        A git checkout is pulled in place. Anything else is re-fetched from the
        provenance recorded at install time, reusing `discovery` when it
        already holds that source.
        """
        if gitops.is_git_repo(dest):
            if dry_run:
                return "would pull"
            gitops.pull(dest, env=self.git_env)
            meta = self.metadata.read(dest)
            if meta is not None:
                commit = gitops.head_commit(dest, env=self.git_env)
                self.metadata.write(dest, replace(meta, installed_at=utc_now(), version=commit or meta.version))
            logger.info("Pulled %s", dest)
            return "pulled"

        meta = self.metadata.read(dest)
        if meta is None:
            raise NoProvenanceForUpdateError(f"No install metadata in {dest}; reinstall it with --force instead.")
        if dry_run:
            return "would update"

        skill = self._recorded_skill(discovery, meta.source) if discovery is not None else None
        if discovery is not None and skill is not None:
            self._refresh(dest, meta, discovery, skill)
        else:
            with self.discoverer.discover(parse_source(meta.source)) as fresh:
                self._refresh(dest, meta, fresh, self._pick_update_skill(fresh, meta.source))
        logger.info("Updated %s from %s", dest, meta.source)
        return "updated"

    def _refresh(self, dest: Path, meta: SkillMeta, discovery: DiscoveryResult, skill: SkillInfo) -> None:
        src = discovery.path_of(skill)
        # Children installed separately inside this skill stay where they are.
        nested = [
            s
            for s in discovery.skills
            if _is_beneath(discovery.path_of(s), src) and self.metadata.read(dest / s.name) is not None
        ]
        new_meta = SkillMeta(
            source=meta.source,
            type=_install_method(discovery, skill),
            installed_at=utc_now(),
            version=discovery.commit,
        )
        self._materialize(
            src,
            dest,
            skip_dirs=[discovery.path_of(s) for s in nested],
            meta=new_meta,
            carry=[s.name for s in nested],
        )

    @staticmethod
    def _recorded_skill(discovery: DiscoveryResult, source: str) -> SkillInfo | None:
        for skill in discovery.skills:
            if discovery.source.source_for(skill.relative_path) == source:
                return skill
        return None

    @staticmethod
    def _pick_update_skill(discovery: DiscoveryResult, source: str) -> SkillInfo:
        for skill in discovery.skills:
            if skill.is_root:
                return skill
        if len(discovery.skills) == 1:
            return discovery.skills[0]
        raise SkillmirrorError(f"Source no longer resolves to a single skill: {source}")

    def track_source(self, source: str, opts: InstallOptions = InstallOptions()) -> TrackedRepoReport:
        """
        Clone a whole repository into the managed tree as a tracked repo.

        The checkout lands in `_<name>` with full history, is listed in the
        managed tree's .gitignore, and is refreshed later with `git pull`.
        """
        descriptor = parse_source(source)
        if not descriptor.is_git:
            raise InvalidSourceError("--track requires a git repository source.")
        assert descriptor.clone_url is not None

        name = opts.name or _track_name(descriptor)
        if not name.startswith(TRACKED_PREFIX):
            name = TRACKED_PREFIX + name
        validate_skill_name(name)
        into = validate_subgroup(opts.into)
        dest = self.source_root.joinpath(*into, name)

        warnings: list[str] = []
        if descriptor.subdir:
            warnings.append(f"--track clones the whole repository; subdirectory {descriptor.subdir!r} ignored.")

        exists = dest.exists() or dest.is_symlink()
        if exists and opts.update:
            return self._update_tracked(dest, name, dry_run=opts.dry_run, warnings=warnings)
        if exists and not opts.force:
            raise AlreadyExistsError(f"Tracked repo already exists: {dest} (use --force to replace or --update to pull)")
        if opts.dry_run:
            return TrackedRepoReport(
                name=name,
                path=dest,
                action="would replace" if exists else "would clone",
                warnings=tuple(warnings),
                dry_run=True,
            )

        dest.parent.mkdir(parents=True, exist_ok=True)
        staging = dest.parent / f".{name}.staging-{uuid4().hex}"
        try:
            gitops.clone_full(descriptor.clone_url, staging, env=self.git_env)
            _swap_in(staging, dest)
        except Exception:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
            raise
        logger.info("Cloned tracked repo %s -> %s", descriptor.clone_url, dest)

        skills = self._tracked_skills(dest, name)
        if not skills:
            warnings.append("No SKILL.md files found in repository.")
        try:
            add_gitignore_entry(self.source_root, "/".join((*into, name)))
        except OSError as e:
            warnings.append(f"Could not update .gitignore: {e}")

        return TrackedRepoReport(
            name=name,
            path=dest,
            action="replaced" if exists else "cloned",
            skills=skills,
            warnings=tuple(warnings),
        )

    def _update_tracked(self, dest: Path, name: str, *, dry_run: bool, warnings: list[str]) -> TrackedRepoReport:
        if not gitops.is_git_repo(dest):
            raise NotAGitRepositoryError(f"Tracked repo is not a git repository: {dest}")
        if dry_run:
            return TrackedRepoReport(name=name, path=dest, action="would pull", warnings=tuple(warnings), dry_run=True)
        gitops.pull(dest, env=self.git_env)
        logger.info("Pulled tracked repo %s", dest)
        return TrackedRepoReport(
            name=name,
            path=dest,
            action="pulled",
            skills=self._tracked_skills(dest, name),
            warnings=tuple(warnings),
        )

    @staticmethod
    def _tracked_skills(repo_dir: Path, name: str) -> tuple[str, ...]:
        return tuple(s.relative_path for s in walk_skills(repo_dir, root_name=name) if not s.is_root)
