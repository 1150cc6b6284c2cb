from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .metadata import utc_now, write_json_atomic

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = ".skillmirror-manifest.json"


@dataclass(frozen=True)
class ManifestEntry:
    flat_name: str
    fingerprint: str
    last_synced_at: str


@dataclass
class Manifest:
    entries: dict[str, ManifestEntry] = field(default_factory=dict)

    def get(self, flat_name: str) -> ManifestEntry | None:
        return self.entries.get(flat_name)

    def record(self, flat_name: str, fingerprint: str, *, synced_at: str | None = None) -> None:
        self.entries[flat_name] = ManifestEntry(
            flat_name=flat_name,
            fingerprint=fingerprint,
            last_synced_at=synced_at or utc_now(),
        )

    def drop(self, flat_name: str) -> None:
        self.entries.pop(flat_name, None)


class ManifestStore:
    """Copy-mode bookkeeping: which target directories were created by us, and from what."""

    filename = MANIFEST_FILENAME

    def path_for(self, target_dir: Path) -> Path:
        return target_dir / self.filename

    def exists(self, target_dir: Path) -> bool:
        return self.path_for(target_dir).is_file()

    def load(self, target_dir: Path) -> Manifest:
        path = self.path_for(target_dir)
        if not path.is_file():
            return Manifest()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable manifest %s: %s", path, e)
            return Manifest()
        if not isinstance(raw, dict):
            return Manifest()
        managed = raw.get("managed")
        if not isinstance(managed, dict):
            return Manifest()

        entries: dict[str, ManifestEntry] = {}
        for key, value in managed.items():
            if not isinstance(key, str) or not isinstance(value, dict):
                continue
            fingerprint = value.get("fingerprint")
            if not isinstance(fingerprint, str):
                continue
            entries[key] = ManifestEntry(
                flat_name=key,
                fingerprint=fingerprint,
                last_synced_at=str(value.get("last_synced_at") or ""),
            )
        return Manifest(entries=entries)

    def save(self, target_dir: Path, manifest: Manifest) -> Path:
        payload: dict[str, Any] = {
            "schema_version": 1,
            "updated_at": utc_now(),
            "managed": {
                k: {"fingerprint": e.fingerprint, "last_synced_at": e.last_synced_at}
                for k, e in sorted(manifest.entries.items())
            },
        }
        path = self.path_for(target_dir)
        write_json_atomic(path, payload)
        return path

    def remove(self, target_dir: Path) -> None:
        path = self.path_for(target_dir)
        if path.is_file():
            path.unlink()
