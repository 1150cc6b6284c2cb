from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import SkillmirrorError

APP_NAME = "skillmirror"


class SyncMode(str, Enum):
    SYMLINK = "symlink"
    MERGE = "merge"
    COPY = "copy"

    @classmethod
    def parse(cls, value: str) -> "SyncMode":
        try:
            return cls(value.strip().lower())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise SkillmirrorError(f"Unknown sync mode {value!r} (expected one of: {allowed})") from None


DEFAULT_MODE = SyncMode.MERGE.value


@dataclass(frozen=True)
class TargetConfig:
    name: str
    path: str
    mode: str | None = None  # falls back to Config.mode
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()

    @property
    def target_path(self) -> Path:
        return Path(self.path).expanduser()

    def sync_mode(self, default: str = DEFAULT_MODE) -> SyncMode:
        return SyncMode.parse(self.mode or default)


@dataclass(frozen=True)
class Config:
    source_dir: str | None = None
    mode: str = DEFAULT_MODE
    targets: dict[str, TargetConfig] = field(default_factory=dict)

    def resolved_source_dir(self) -> Path:
        if env := os.getenv("SKILLMIRROR_SOURCE_DIR"):
            return Path(env).expanduser()
        if self.source_dir:
            return Path(self.source_dir).expanduser()
        return user_config_path(APP_NAME) / "skills"

    def with_target(self, target: TargetConfig) -> "Config":
        targets = dict(self.targets)
        targets[target.name] = target
        return replace(self, targets=targets)

    def without_target(self, name: str) -> "Config":
        if name not in self.targets:
            raise SkillmirrorError(f"Unknown target: {name}")
        targets = {k: v for k, v in self.targets.items() if k != name}
        return replace(self, targets=targets)


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLMIRROR_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def _str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return ()
    return tuple(str(v) for v in value if isinstance(v, str) and v.strip())


def _parse_targets(raw: Any) -> dict[str, TargetConfig]:
    if not isinstance(raw, dict):
        return {}
    out: dict[str, TargetConfig] = {}
    for name, value in raw.items():
        if not isinstance(name, str):
            continue
        if isinstance(value, str):
            value = {"path": value}
        if not isinstance(value, dict) or not isinstance(value.get("path"), str):
            continue
        mode = value.get("mode")
        out[name] = TargetConfig(
            name=name,
            path=value["path"],
            mode=mode if isinstance(mode, str) and mode else None,
            include=_str_tuple(value.get("include")),
            exclude=_str_tuple(value.get("exclude")),
        )
    return out


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    source_dir = raw.get("source_dir")
    mode = raw.get("mode")
    return Config(
        source_dir=source_dir if isinstance(source_dir, str) and source_dir else None,
        mode=mode if isinstance(mode, str) and mode else DEFAULT_MODE,
        targets=_parse_targets(raw.get("targets")),
    )


def config_to_json(cfg: Config) -> dict[str, Any]:
    targets: dict[str, Any] = {}
    for name in sorted(cfg.targets):
        t = cfg.targets[name]
        item: dict[str, Any] = {"path": t.path}
        if t.mode:
            item["mode"] = t.mode
        if t.include:
            item["include"] = list(t.include)
        if t.exclude:
            item["exclude"] = list(t.exclude)
        targets[name] = item
    return {"source_dir": cfg.source_dir, "mode": cfg.mode, "targets": targets}


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(config_to_json(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path
