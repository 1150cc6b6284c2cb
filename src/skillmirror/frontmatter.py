from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

SKILL_FILENAME = "SKILL.md"


def parse_frontmatter(text: str) -> dict[str, Any]:
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}
    for idx in range(1, len(lines)):
        if lines[idx].strip() == "---":
            block = "\n".join(lines[1:idx])
            break
    else:
        return {}

    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError as e:
        logger.debug("Unparseable frontmatter: %s", e)
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def read_frontmatter(skill_dir: Path) -> dict[str, Any]:
    path = skill_dir / SKILL_FILENAME
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return {}
    return parse_frontmatter(text)


def frontmatter_str(meta: dict[str, Any], key: str) -> str:
    value = meta.get(key)
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def frontmatter_targets(meta: dict[str, Any]) -> tuple[str, ...] | None:
    """`targets:` restricts a skill to the named targets; absent means all."""
    value = meta.get("targets")
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return None
    names = [str(v).strip() for v in value if str(v).strip()]
    return tuple(names) if names else None
