from __future__ import annotations

from pathlib import Path

GITIGNORE_FILENAME = ".gitignore"
MARKER_START = "# BEGIN SKILLMIRROR MANAGED - DO NOT EDIT"
MARKER_END = "# END SKILLMIRROR MANAGED"


def _read_lines(path: Path) -> list[str]:
    if not path.is_file():
        return []
    lines = path.read_text(encoding="utf-8").replace("\r\n", "\n").split("\n")
    while lines and lines[-1] == "":
        lines.pop()
    return lines


def _marker_block(lines: list[str]) -> tuple[int, int] | None:
    start = next((i for i, line in enumerate(lines) if line.strip() == MARKER_START), None)
    if start is None:
        return None
    end = next((i for i in range(start + 1, len(lines)) if lines[i].strip() == MARKER_END), None)
    if end is None:
        return None
    return start, end


def add_gitignore_entry(directory: Path, entry: str) -> bool:
    """
    Add a directory entry inside the managed block of `directory/.gitignore`.

    The file and block are created when missing. Returns False when the entry
    was already listed.
    """
    entry = entry.replace("\\", "/").rstrip("/") + "/"
    path = directory / GITIGNORE_FILENAME
    lines = _read_lines(path)

    block = _marker_block(lines)
    if block is None:
        if lines:
            lines.append("")
        lines += [MARKER_START, MARKER_END]
        block = (len(lines) - 2, len(lines) - 1)
    start, end = block

    if any(line.strip() in (entry, entry.rstrip("/")) for line in lines[start + 1 : end]):
        return False
    lines.insert(end, entry)
    directory.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return True
