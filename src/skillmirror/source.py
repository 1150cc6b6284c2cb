from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from urllib.parse import urlsplit

from .errors import InvalidSourceError

DEFAULT_FORGE = "github.com"

_WINDOWS_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")
_SCP_LIKE_RE = re.compile(r"^(?P<user>[^@/\s]+)@(?P<host>[^:/\s]+):(?P<path>.+)$")


class SourceKind(str, Enum):
    LOCAL_PATH = "local"
    GIT_HTTPS = "git-https"
    GIT_SSH = "git-ssh"
    GIT_SHORTHAND = "git-shorthand"


@dataclass(frozen=True)
class SourceDescriptor:
    kind: SourceKind
    raw_input: str
    resolved_name: str
    clone_url: str | None = None
    subdir: str | None = None
    local_path: Path | None = None
    owner: str | None = None
    repo: str | None = None

    @property
    def is_git(self) -> bool:
        return self.kind is not SourceKind.LOCAL_PATH

    @property
    def install_method(self) -> str:
        if not self.is_git:
            return "local-copy"
        if self.subdir:
            return "git-clone-and-extract-subdir"
        return "git-clone"

    def with_subdir(self, subdir: str | None) -> "SourceDescriptor":
        value = (subdir or "").strip("/") or None
        name = value.rsplit("/", 1)[-1] if value else (self.repo or self.resolved_name)
        return replace(self, subdir=value, resolved_name=name)

    def source_for(self, rel_path: str = ".") -> str:
        """
        Source string that re-resolves to the skill at `rel_path`.

        `rel_path` is relative to the resolution root (the subdir, when set).
        """
        rel = "" if rel_path in ("", ".") else rel_path.strip("/")
        if not self.is_git:
            assert self.local_path is not None
            return str(self.local_path / rel) if rel else str(self.local_path)

        combined = "/".join(p for p in (self.subdir or "", rel) if p)
        if self.kind is SourceKind.GIT_SHORTHAND:
            base = f"{self.owner}/{self.repo}"
        else:
            base = self.clone_url or self.raw_input
        return f"{base}/{combined}" if combined else base


def _looks_local(value: str) -> bool:
    if value in (".", "..") or value.startswith(("/", "./", "../", "~", ".\\", "..\\")):
        return True
    if _WINDOWS_DRIVE_RE.match(value):
        return True
    return os.path.exists(os.path.expanduser(value))


def _local(raw: str, path_value: str) -> SourceDescriptor:
    if not path_value:
        raise InvalidSourceError(f"Empty local path in source: {raw!r}")
    # normpath also drops trailing "." segments.
    path = Path(os.path.normpath(os.path.abspath(os.path.expanduser(path_value))))
    if not path.name:
        raise InvalidSourceError(f"Cannot derive a skill name from: {raw!r}")
    return SourceDescriptor(
        kind=SourceKind.LOCAL_PATH,
        raw_input=raw,
        resolved_name=path.name,
        local_path=path,
    )


def _split_repo_path(path: str, raw: str) -> tuple[str, str, str, str | None]:
    """Return (owner, repo, repo segment as typed, subdir)."""
    parts = [p for p in path.strip("/").split("/") if p]
    if len(parts) < 2:
        raise InvalidSourceError(f"Expected owner/repo in source: {raw!r}")

    owner, repo_segment = parts[0], parts[1]
    repo = repo_segment[:-4] if repo_segment.endswith(".git") else repo_segment
    for value in (owner, repo):
        if not value or value in {".", ".."}:
            raise InvalidSourceError(f"Invalid owner/repo in source: {raw!r}")

    rest = parts[2:]
    # GitLab web URLs put "-" before tree/blob.
    if rest and rest[0] == "-":
        rest = rest[1:]
    if len(rest) >= 2 and rest[0] in ("tree", "blob"):
        rest = rest[2:]

    segments: list[str] = []
    for seg in rest:
        if seg == ".":
            continue
        if seg == "..":
            raise InvalidSourceError(f"Subdirectory must not contain '..': {raw!r}")
        segments.append(seg)
    return owner, repo, repo_segment, "/".join(segments) or None


def _git_descriptor(
    kind: SourceKind,
    raw: str,
    *,
    clone_url: str,
    owner: str,
    repo: str,
    subdir: str | None,
) -> SourceDescriptor:
    name = subdir.rsplit("/", 1)[-1] if subdir else repo
    return SourceDescriptor(
        kind=kind,
        raw_input=raw,
        resolved_name=name,
        clone_url=clone_url,
        subdir=subdir,
        owner=owner,
        repo=repo,
    )


def _parse_ssh(raw: str, value: str) -> SourceDescriptor:
    if value.startswith("ssh://"):
        u = urlsplit(value)
        if not u.netloc:
            raise InvalidSourceError(f"Missing host in source: {raw!r}")
        owner, repo, repo_segment, subdir = _split_repo_path(u.path, raw)
        clone_url = f"ssh://{u.netloc}/{owner}/{repo_segment}"
        return _git_descriptor(SourceKind.GIT_SSH, raw, clone_url=clone_url, owner=owner, repo=repo, subdir=subdir)

    m = _SCP_LIKE_RE.match(value)
    if not m:
        raise InvalidSourceError(f"Unrecognized SSH source: {raw!r}")
    owner, repo, repo_segment, subdir = _split_repo_path(m.group("path"), raw)
    clone_url = f"{m.group('user')}@{m.group('host')}:{owner}/{repo_segment}"
    return _git_descriptor(SourceKind.GIT_SSH, raw, clone_url=clone_url, owner=owner, repo=repo, subdir=subdir)


def _parse_https(raw: str, value: str) -> SourceDescriptor:
    u = urlsplit(value)
    if not u.netloc:
        raise InvalidSourceError(f"Missing host in source: {raw!r}")
    owner, repo, repo_segment, subdir = _split_repo_path(u.path, raw)
    clone_url = f"{u.scheme}://{u.netloc}/{owner}/{repo_segment}"
    return _git_descriptor(SourceKind.GIT_HTTPS, raw, clone_url=clone_url, owner=owner, repo=repo, subdir=subdir)


def parse_source(raw: str, *, forge: str = DEFAULT_FORGE) -> SourceDescriptor:
    """
    Classify a user-supplied source string.

    Local filesystem paths always win over git interpretations, so an existing
    `owner/repo` directory in the working directory is treated as a local path.
    Missing subdirectories are not an error here; discovery resolves them.
    """
    value = (raw or "").strip()
    if not value:
        raise InvalidSourceError("Source must not be empty.")

    if value.startswith("file://"):
        return _local(value, value[len("file://"):])
    if _looks_local(value):
        return _local(value, value)
    if value.startswith("ssh://") or _SCP_LIKE_RE.match(value):
        return _parse_ssh(value, value)
    if value.startswith(("https://", "http://")):
        return _parse_https(value, value)
    if "://" in value:
        raise InvalidSourceError(f"Unsupported source scheme: {raw!r}")

    first = value.split("/", 1)[0]
    if "." in first and "/" in value:
        return _parse_https(value, "https://" + value)

    owner, repo, _, subdir = _split_repo_path(value, value)
    return _git_descriptor(
        SourceKind.GIT_SHORTHAND,
        value,
        clone_url=f"https://{forge}/{owner}/{repo}.git",
        owner=owner,
        repo=repo,
        subdir=subdir,
    )
