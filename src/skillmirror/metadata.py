from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

META_FILENAME = ".skillmirror-meta.json"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


@dataclass(frozen=True)
class SkillMeta:
    source: str
    type: str
    installed_at: str
    version: str | None = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "source": self.source,
            "type": self.type,
            "installed_at": self.installed_at,
        }
        if self.version:
            out["version"] = self.version
        return out


class SkillMetadataStore:
    """Provenance records kept inside each installed skill directory."""

    filename = META_FILENAME

    def path_for(self, skill_dir: Path) -> Path:
        return skill_dir / self.filename

    def read(self, skill_dir: Path) -> SkillMeta | None:
        meta_path = self.path_for(skill_dir)
        if not meta_path.is_file():
            return None
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        source = data.get("source")
        if not isinstance(source, str) or not source.strip():
            return None
        version = data.get("version")
        return SkillMeta(
            source=source.strip(),
            type=str(data.get("type") or ""),
            installed_at=str(data.get("installed_at") or ""),
            version=version if isinstance(version, str) and version else None,
        )

    def write(self, skill_dir: Path, meta: SkillMeta) -> None:
        write_json_atomic(self.path_for(skill_dir), meta.to_json())
