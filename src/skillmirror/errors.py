from __future__ import annotations

from dataclasses import dataclass


class SkillmirrorError(RuntimeError):
    pass


class InvalidSourceError(SkillmirrorError):
    pass


class SubdirNotFoundError(SkillmirrorError):
    pass


class InvalidNameError(SkillmirrorError):
    pass


class InvalidSubgroupSegmentError(SkillmirrorError):
    pass


class AlreadyExistsError(SkillmirrorError):
    pass


class LinkConflictError(SkillmirrorError):
    pass


class NameNotApplicableError(SkillmirrorError):
    pass


class NoProvenanceForUpdateError(SkillmirrorError):
    pass


class InvalidFilterPatternError(SkillmirrorError):
    pass


class NotAGitRepositoryError(SkillmirrorError):
    pass


class FlatNameCollisionError(SkillmirrorError):
    pass


@dataclass(eq=False)
class GitCommandError(SkillmirrorError):
    command: str
    stderr: str

    def __str__(self) -> str:
        if self.stderr:
            return f"git {self.command} failed: {self.stderr}"
        return f"git {self.command} failed"
