from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import Any

from ._version import __version__
from .config import Config, SyncMode, TargetConfig, config_path, config_to_json, load_config, save_config
from .errors import SkillmirrorError
from .installer import InstallOptions, Installer, InstallReport, TrackedRepoReport
from .inventory import scan_skills
from .naming import frontmatter_notices, validate_subgroup
from .reconcile import Reconciler, SyncReport, target_routes

logger = logging.getLogger(__name__)


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _split_patterns(values: list[str] | None) -> tuple[str, ...]:
    out: list[str] = []
    for value in values or []:
        out.extend(p.strip() for p in value.split(",") if p.strip())
    return tuple(out)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillmirror",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install skills into one managed tree and mirror it into tool-specific skill directories.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLMIRROR_CONFIG_PATH, SKILLMIRROR_SOURCE_DIR
            """
        ),
    )
    p.add_argument("--config", help="Config file path (default: platform config dir)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    p.add_argument("--version", action="version", version=f"skillmirror {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--source-dir", help="Managed skill tree")
    cfg_set.add_argument("--mode", choices=[m.value for m in SyncMode], help="Default sync mode for targets")

    # targets
    target = sub.add_parser("target", help="Manage sync targets")
    target_sub = target.add_subparsers(dest="subcmd", required=True)
    target_add = target_sub.add_parser("add", help="Add or replace a target")
    target_add.add_argument("name")
    target_add.add_argument("path", help="Target skills directory, e.g. ~/.claude/skills")
    target_add.add_argument("--mode", choices=[m.value for m in SyncMode], help="Sync mode (default: config mode)")
    target_add.add_argument("--include", action="append", help="Glob on flat names; repeat or comma-separate")
    target_add.add_argument("--exclude", action="append", help="Glob on flat names; repeat or comma-separate")
    target_remove = target_sub.add_parser("remove", aliases=["rm"], help="Forget a target (files are left alone)")
    target_remove.add_argument("name")
    target_list = target_sub.add_parser("list", help="List targets and their state")
    target_list.add_argument("--json", action="store_true", help="Output JSON")

    # install / update
    install = sub.add_parser("install", aliases=["i"], help="Install skills from a path, git URL or owner/repo")
    install.add_argument("source", help="Local path, file:// URL, git URL, or owner/repo[/subdir]")
    install.add_argument("--name", help="Install under this name (single-skill sources only)")
    install.add_argument("--into", help="Install beneath this subgroup of the managed tree, e.g. team/tools")
    install.add_argument("--skill", action="append", help="Only install these discovered skills (repeatable)")
    install.add_argument("--exclude", action="append", help="Skip discovered skills matching these globs")
    install.add_argument("--force", action="store_true", help="Replace existing skills")
    install.add_argument("--update", action="store_true", help="Refresh existing skills from their recorded source")
    install.add_argument(
        "--track", action="store_true", help="Clone the whole repo as _<name> with history and update it with git pull"
    )
    install.add_argument("--dry-run", action="store_true", help="Show what would happen")
    install.add_argument("--json", action="store_true", help="Output JSON")

    update = sub.add_parser("update", help="Refresh an installed skill or tracked repo (git pull when it is a checkout)")
    update.add_argument("skill", help="Skill path relative to the managed tree, e.g. acme/formatter")
    update.add_argument("--dry-run", action="store_true", help="Show what would happen")
    update.add_argument("--json", action="store_true", help="Output JSON")

    # inventory / sync
    lst = sub.add_parser("list", aliases=["ls"], help="List skills in the managed tree")
    lst.add_argument("--json", action="store_true", help="Output JSON")

    sync = sub.add_parser("sync", help="Mirror the managed tree into targets")
    sync.add_argument("--target", action="append", help="Only sync these targets (repeatable)")
    sync.add_argument("--force", action="store_true", help="Replace conflicting links and directories")
    sync.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    sync.add_argument("--json", action="store_true", help="Output JSON")

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path(args.config)))
        return 0

    if args.subcmd == "show":
        cfg = load_config(args.config)
        d = config_to_json(cfg)
        d["resolved_source_dir"] = str(cfg.resolved_source_dir())
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config(args.config)
        new_cfg = Config(
            source_dir=args.source_dir if args.source_dir is not None else cfg.source_dir,
            mode=args.mode or cfg.mode,
            targets=cfg.targets,
        )
        path = save_config(new_cfg, args.config)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_target(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)

    if args.subcmd == "add":
        target = TargetConfig(
            name=args.name,
            path=args.path,
            mode=args.mode,
            include=_split_patterns(args.include),
            exclude=_split_patterns(args.exclude),
        )
        path = save_config(cfg.with_target(target), args.config)
        print(f"Saved: {path}")
        return 0

    if args.subcmd in ("remove", "rm"):
        path = save_config(cfg.without_target(args.name), args.config)
        print(f"Saved: {path}")
        return 0

    if args.subcmd == "list":
        reconciler = Reconciler(cfg.resolved_source_dir(), default_mode=cfg.mode)
        items: list[dict[str, Any]] = []
        for name in sorted(cfg.targets):
            t = cfg.targets[name]
            items.append(
                {
                    "name": name,
                    "path": str(t.target_path),
                    "mode": t.sync_mode(cfg.mode).value,
                    "status": reconciler.status(t),
                    "include": list(t.include),
                    "exclude": list(t.exclude),
                }
            )
        if args.json:
            print(json.dumps(items, indent=2, sort_keys=True))
            return 0
        if not items:
            print("No targets configured. Add one with: skillmirror target add NAME PATH")
            return 0
        rows = [["NAME", "MODE", "STATUS", "PATH"]]
        for item in items:
            rows.append([item["name"], item["mode"], item["status"], item["path"]])
        _print_table(rows)
        return 0

    raise AssertionError("unreachable")


def _install_payload(report: InstallReport) -> dict[str, Any]:
    return {
        "dry_run": report.dry_run,
        "skills": [
            {"name": o.name, "path": str(o.path), "action": o.action, "source": o.source} for o in report.outcomes
        ],
        "failures": dict(sorted(report.failures.items())),
        "excluded": list(report.excluded),
        "warnings": list(report.warnings),
    }


def _print_install_report(report: InstallReport, *, source_dir: Path) -> None:
    print(f"source_dir: {source_dir}")
    if report.outcomes:
        rows = [["SKILL", "ACTION", "PATH"]]
        for o in report.outcomes:
            rows.append([o.name, o.action, str(o.path)])
        _print_table(rows)
    if report.excluded:
        print(f"excluded: {len(report.excluded)} ({', '.join(report.excluded)})")
    for name, message in sorted(report.failures.items()):
        print(f"failed: {name}: {message}")
    for warning in report.warnings:
        print(f"warning: {warning}")


def _print_tracked_report(report: TrackedRepoReport) -> None:
    suffix = " (dry run)" if report.dry_run else ""
    print(f"{report.action}: {report.name} -> {report.path}{suffix}")
    if report.skills:
        print(f"skills: {len(report.skills)} ({', '.join(report.skills)})")
    for warning in report.warnings:
        print(f"warning: {warning}")


def cmd_install(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    source_dir = cfg.resolved_source_dir()
    opts = InstallOptions(
        name=args.name,
        into=args.into,
        force=args.force,
        update=args.update,
        dry_run=args.dry_run,
        exclude=_split_patterns(args.exclude),
    )

    if args.track:
        if args.skill or opts.exclude:
            raise SkillmirrorError("--skill and --exclude do not apply to --track; the whole repo is cloned.")
        tracked = Installer(source_dir).track_source(args.source, opts)
        if args.json:
            payload = {
                "name": tracked.name,
                "path": str(tracked.path),
                "action": tracked.action,
                "skills": list(tracked.skills),
                "warnings": list(tracked.warnings),
                "dry_run": tracked.dry_run,
            }
            print(json.dumps(payload, indent=2, sort_keys=True))
        else:
            _print_tracked_report(tracked)
        return 0

    report = Installer(source_dir).install_source(args.source, opts, names=args.skill)

    if args.json:
        print(json.dumps(_install_payload(report), indent=2, sort_keys=True))
    else:
        _print_install_report(report, source_dir=source_dir)
    return 1 if report.failures else 0


def cmd_update(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    source_dir = cfg.resolved_source_dir()
    parts = validate_subgroup(args.skill)
    if not parts:
        raise SkillmirrorError("Skill path must not be empty.")
    dest = source_dir.joinpath(*parts)
    if not dest.is_dir():
        raise SkillmirrorError(f"Not an installed skill: {dest}")

    action = Installer(source_dir).update_skill(dest, dry_run=args.dry_run)
    if args.json:
        print(json.dumps({"skill": args.skill, "path": str(dest), "action": action}, indent=2, sort_keys=True))
    else:
        print(f"{action}: {args.skill}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    source_dir = cfg.resolved_source_dir()
    skills = scan_skills(source_dir)

    if args.json:
        items = [
            {
                "path": s.rel_path,
                "flat_name": s.flat_name,
                "name": s.frontmatter_name or None,
                "license": s.license or None,
                "source": s.provenance.source if s.provenance else None,
                "installed_at": s.provenance.installed_at if s.provenance else None,
            }
            for s in skills
        ]
        print(json.dumps(items, indent=2, sort_keys=True))
        return 0

    print(f"source_dir: {source_dir}")
    if not skills:
        print("No skills installed.")
        return 0
    rows = [["SKILL", "FLAT NAME", "SOURCE"]]
    for s in skills:
        rows.append([s.rel_path, s.flat_name, s.provenance.source if s.provenance else "(local)"])
    _print_table(rows)
    return 0


def _sync_payload(report: SyncReport) -> dict[str, Any]:
    return {
        "target": report.target,
        "mode": report.mode.value,
        "path": str(report.path),
        "dry_run": report.dry_run,
        "prepared": list(report.prepared),
        "linked": list(report.linked),
        "copied": list(report.copied),
        "updated": list(report.updated),
        "up_to_date": list(report.up_to_date),
        "pruned": list(report.pruned),
        "kept": list(report.kept),
        "failures": dict(sorted(report.failures.items())),
        "warnings": list(report.warnings),
    }


def _print_sync_report(report: SyncReport) -> None:
    suffix = " (dry run)" if report.dry_run else ""
    print(f"target: {report.target} [{report.mode.value}] -> {report.path}{suffix}")
    _print_table(
        [
            ["ACTION", "COUNT"],
            ["linked", str(len(report.linked))],
            ["copied", str(len(report.copied))],
            ["updated", str(len(report.updated))],
            ["up to date", str(len(report.up_to_date))],
            ["pruned", str(len(report.pruned))],
            ["kept", str(len(report.kept))],
        ]
    )
    for key in report.linked:
        print(f"linked: {key}")
    for key in report.copied:
        print(f"copied: {key}")
    for key in report.updated:
        print(f"updated: {key}")
    for key in report.pruned:
        print(f"pruned: {key}")
    for name, message in sorted(report.failures.items()):
        print(f"failed: {name}: {message}")
    for warning in report.warnings:
        print(f"warning: {warning}")


def cmd_sync(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    if not cfg.targets:
        raise SkillmirrorError("No targets configured. Add one with: skillmirror target add NAME PATH")

    names = args.target or sorted(cfg.targets)
    unknown = [n for n in names if n not in cfg.targets]
    if unknown:
        raise SkillmirrorError(f"Unknown target(s): {', '.join(unknown)}")
    targets = [cfg.targets[n] for n in names]

    reconciler = Reconciler(cfg.resolved_source_dir(), default_mode=cfg.mode)
    skills = reconciler.skills()

    notices: list[str] = []
    try:
        routes = target_routes(reconciler, targets, skills)
    except SkillmirrorError:
        # The failing target reports the same error below.
        routes = None
    if routes is not None:
        notices = [n.message() for n in frontmatter_notices(skills, routes)]
    for notice in notices:
        logger.info("%s", notice)

    payloads: list[dict[str, Any]] = []
    errors: dict[str, str] = {}
    rc = 0
    for target in targets:
        try:
            report = reconciler.reconcile(target, skills, dry_run=args.dry_run, force=args.force)
        except SkillmirrorError as e:
            errors[target.name] = str(e)
            rc = 1
            continue
        if report.failures:
            rc = 1
        if args.json:
            payloads.append(_sync_payload(report))
        else:
            _print_sync_report(report)

    if args.json:
        print(json.dumps({"targets": payloads, "errors": errors, "notices": notices}, indent=2, sort_keys=True))
    else:
        for notice in notices:
            print(f"notice: {notice}")
        for name, message in errors.items():
            print(f"error: target {name}: {message}", file=sys.stderr)
    return rc


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "target":
            return cmd_target(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "sync":
            return cmd_sync(args)
        raise AssertionError("unreachable")
    except SkillmirrorError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
