from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from pathlib import Path

from .errors import GitCommandError, NotAGitRepositoryError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_S = 180.0

_AUTH_HINTS = (
    "Authentication failed",
    "could not read Username",
    "terminal prompts disabled",
    "Permission denied (publickey)",
)


def git_environment(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ)
    # Never block on an interactive credential prompt.
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_ASKPASS", "")
    env.setdefault("SSH_ASKPASS", "")
    if extra:
        env.update(extra)
    return env


def _describe_failure(stderr: str) -> str:
    if any(hint in stderr for hint in _AUTH_HINTS):
        return f"authentication required or refused; configure git credentials for this remote.\n{stderr}"
    return stderr


def run_git(
    args: list[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout_s: float = GIT_TIMEOUT_S,
) -> str:
    cmd = ["git", *args]
    logger.debug("Running %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            env=git_environment(env),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout_s,
        )
    except FileNotFoundError as e:
        raise GitCommandError(command=args[0], stderr="git executable not found on PATH") from e
    except subprocess.TimeoutExpired as e:
        raise GitCommandError(command=args[0], stderr=f"timed out after {timeout_s:.0f}s") from e

    if result.returncode != 0:
        stderr = result.stderr.strip() or result.stdout.strip()
        raise GitCommandError(command=args[0], stderr=_describe_failure(stderr))
    return result.stdout


def clone_shallow(url: str, dest: Path, *, env: Mapping[str, str] | None = None) -> None:
    run_git(["clone", "--quiet", "--depth", "1", "--single-branch", url, str(dest)], env=env)


def clone_full(url: str, dest: Path, *, env: Mapping[str, str] | None = None) -> None:
    """Clone with full history so the checkout can be pulled later."""
    run_git(["clone", "--quiet", url, str(dest)], env=env)


def is_git_repo(path: Path) -> bool:
    return (path / ".git").exists()


def pull(repo_dir: Path, *, env: Mapping[str, str] | None = None) -> None:
    if not is_git_repo(repo_dir):
        raise NotAGitRepositoryError(f"Not a git repository: {repo_dir}")
    run_git(["pull", "--quiet"], cwd=repo_dir, env=env)


def head_commit(repo_dir: Path, *, env: Mapping[str, str] | None = None) -> str | None:
    if not is_git_repo(repo_dir):
        return None
    try:
        out = run_git(["rev-parse", "--short", "HEAD"], cwd=repo_dir, env=env)
    except GitCommandError:
        return None
    return out.strip() or None
