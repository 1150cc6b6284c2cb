import json
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillmirror import git as gitops
from skillmirror.errors import (
    AlreadyExistsError,
    InvalidNameError,
    InvalidSourceError,
    InvalidSubgroupSegmentError,
    NameNotApplicableError,
    NoProvenanceForUpdateError,
    NotAGitRepositoryError,
)
from skillmirror.gitignore import GITIGNORE_FILENAME, MARKER_END, MARKER_START
from skillmirror.installer import InstallOptions, Installer
from skillmirror.metadata import META_FILENAME, SkillMeta, SkillMetadataStore


def _write_skill(root: Path, rel: str, body: str = "") -> Path:
    d = root if rel == "." else root / rel
    d.mkdir(parents=True, exist_ok=True)
    (d / "SKILL.md").write_text(f"---\nname: {d.name}\n---\n\n{body or d.name}\n", encoding="utf-8")
    return d


class InstallerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name)
        self.managed = self.tmp / "managed"
        self.installer = Installer(self.managed)

    def tearDown(self) -> None:
        self._td.cleanup()


class TestOrchestratorAndStandalone(InstallerTestCase):
    def test_root_skill_nests_every_other_entry_beneath_it(self) -> None:
        repo = self.tmp / "orch"
        _write_skill(repo, ".")
        _write_skill(repo, "child-a")
        _write_skill(repo, "child-b")
        _write_skill(repo, "skills/deep/child-c")
        (repo / "README.md").write_text("orchestrator\n", encoding="utf-8")

        report = self.installer.install_source(str(repo))

        paths = sorted(o.path.relative_to(self.managed).as_posix() for o in report.outcomes)
        self.assertEqual(paths, ["orch", "orch/child-a", "orch/child-b", "orch/child-c"])
        self.assertTrue((self.managed / "orch" / "README.md").is_file())
        self.assertTrue((self.managed / "orch" / "child-c" / "SKILL.md").is_file())
        self.assertFalse((self.managed / "orch" / "skills" / "deep" / "child-c").exists())
        self.assertEqual({o.action for o in report.outcomes}, {"installed"})

        meta = SkillMetadataStore().read(self.managed / "orch" / "child-a")
        assert meta is not None
        self.assertEqual(meta.source, str(repo / "child-a"))
        self.assertEqual(meta.type, "local-copy")

    def test_without_root_entries_install_side_by_side(self) -> None:
        repo = self.tmp / "pack"
        _write_skill(repo, "skill-x")
        _write_skill(repo, "nested/skill-y")

        report = self.installer.install_source(str(repo))

        self.assertEqual(sorted(o.name for o in report.outcomes), ["skill-x", "skill-y"])
        self.assertTrue((self.managed / "skill-x" / "SKILL.md").is_file())
        self.assertTrue((self.managed / "skill-y" / "SKILL.md").is_file())
        self.assertFalse((self.managed / "pack").exists())

    def test_into_places_skills_under_a_subgroup(self) -> None:
        repo = self.tmp / "pack"
        _write_skill(repo, "skill-x")
        _write_skill(repo, "skill-y")

        self.installer.install_source(str(repo), InstallOptions(into="team/tools"))

        self.assertTrue((self.managed / "team" / "tools" / "skill-x" / "SKILL.md").is_file())
        self.assertTrue((self.managed / "team" / "tools" / "skill-y" / "SKILL.md").is_file())

    def test_invalid_subgroup_aborts_before_writing(self) -> None:
        repo = _write_skill(self.tmp / "single", ".")
        for bad in ("/abs", "team/../x", "a//b"):
            with self.subTest(bad=bad):
                with self.assertRaises(InvalidSubgroupSegmentError):
                    self.installer.install_source(str(repo), InstallOptions(into=bad))
        self.assertFalse(self.managed.exists())

    def test_selecting_skills_by_name(self) -> None:
        repo = self.tmp / "pack"
        _write_skill(repo, "skill-x")
        _write_skill(repo, "skill-y")

        report = self.installer.install_source(str(repo), names=["skill-y"])

        self.assertEqual([o.name for o in report.outcomes], ["skill-y"])
        self.assertFalse((self.managed / "skill-x").exists())


class TestConflictsAndNames(InstallerTestCase):
    def test_existing_skill_requires_force(self) -> None:
        repo = _write_skill(self.tmp / "single", ".", body="v1")
        self.installer.install_source(str(repo))

        with self.assertRaises(AlreadyExistsError):
            self.installer.install_source(str(repo))

        (repo / "SKILL.md").write_text("---\nname: single\n---\n\nv2\n", encoding="utf-8")
        report = self.installer.install_source(str(repo), InstallOptions(force=True))

        self.assertEqual([o.action for o in report.outcomes], ["replaced"])
        self.assertIn("v2", (self.managed / "single" / "SKILL.md").read_text(encoding="utf-8"))

    def test_batch_install_collects_per_skill_failures(self) -> None:
        repo = self.tmp / "pack"
        _write_skill(repo, "skill-x")
        _write_skill(repo, "skill-y")
        _write_skill(self.managed, "skill-x")

        report = self.installer.install_source(str(repo))

        self.assertEqual([o.name for o in report.outcomes], ["skill-y"])
        self.assertIn("skill-x", report.failures)

    def test_custom_name_only_for_single_skill_sources(self) -> None:
        repo = self.tmp / "pack"
        _write_skill(repo, "skill-x")
        _write_skill(repo, "skill-y")
        with self.assertRaises(NameNotApplicableError):
            self.installer.install_source(str(repo), InstallOptions(name="renamed"))

        single = _write_skill(self.tmp / "single", ".")
        report = self.installer.install_source(str(single), InstallOptions(name="renamed"))
        self.assertEqual([o.name for o in report.outcomes], ["renamed"])
        self.assertTrue((self.managed / "renamed" / "SKILL.md").is_file())

        with self.assertRaises(InvalidNameError):
            self.installer.install_source(str(single), InstallOptions(name="-rf"))

    def test_exclude_filters_multi_skill_sources_only(self) -> None:
        repo = self.tmp / "pack"
        _write_skill(repo, "skill-x")
        _write_skill(repo, "skill-y")
        _write_skill(repo, "skill-z")

        report = self.installer.install_source(str(repo), InstallOptions(exclude=("skill-y", "*-z")))
        self.assertEqual([o.name for o in report.outcomes], ["skill-x"])
        self.assertEqual(report.excluded, ("skill-y", "skill-z"))

        single = _write_skill(self.tmp / "single", ".")
        report = self.installer.install_source(str(single), InstallOptions(exclude=("single",)))
        self.assertEqual([o.name for o in report.outcomes], ["single"])
        self.assertEqual(report.excluded, ())
        self.assertEqual(len(report.warnings), 1)

    def test_dry_run_writes_nothing(self) -> None:
        repo = self.tmp / "pack"
        _write_skill(repo, "skill-x")
        _write_skill(repo, "skill-y")

        report = self.installer.install_source(str(repo), InstallOptions(dry_run=True))

        self.assertTrue(report.dry_run)
        self.assertEqual({o.action for o in report.outcomes}, {"would install"})
        self.assertFalse(self.managed.exists())


class TestUpdate(InstallerTestCase):
    def test_update_reinstalls_from_recorded_source(self) -> None:
        repo = _write_skill(self.tmp / "single", ".", body="v1")
        (repo / "old.txt").write_text("stale\n", encoding="utf-8")
        self.installer.install_source(str(repo))

        (repo / "old.txt").unlink()
        (repo / "SKILL.md").write_text("---\nname: single\n---\n\nv2\n", encoding="utf-8")
        report = self.installer.install_source(str(repo), InstallOptions(update=True))

        dest = self.managed / "single"
        self.assertEqual([o.action for o in report.outcomes], ["updated"])
        self.assertIn("v2", (dest / "SKILL.md").read_text(encoding="utf-8"))
        self.assertFalse((dest / "old.txt").exists())
        meta = json.loads((dest / META_FILENAME).read_text(encoding="utf-8"))
        self.assertEqual(meta["source"], str(repo))
        self.assertEqual(meta["type"], "local-copy")
        self.assertTrue(meta["installed_at"].endswith("Z"))

    def test_update_of_orchestrator_keeps_nested_installs(self) -> None:
        repo = self.tmp / "orch"
        _write_skill(repo, ".", body="v1")
        _write_skill(repo, "skills/child-a")
        self.installer.install_source(str(repo))

        (repo / "SKILL.md").write_text("---\nname: orch\n---\n\nv2\n", encoding="utf-8")
        action = self.installer.update_skill(self.managed / "orch")

        self.assertEqual(action, "updated")
        self.assertIn("v2", (self.managed / "orch" / "SKILL.md").read_text(encoding="utf-8"))
        self.assertTrue((self.managed / "orch" / "child-a" / "SKILL.md").is_file())
        self.assertFalse((self.managed / "orch" / "skills" / "child-a").exists())

    def test_update_without_metadata_fails(self) -> None:
        dest = _write_skill(self.managed, "handmade")
        with self.assertRaises(NoProvenanceForUpdateError):
            self.installer.update_skill(dest)

    def test_update_pulls_when_install_is_a_git_checkout(self) -> None:
        dest = _write_skill(self.managed, "tracked")
        (dest / ".git").mkdir()
        SkillMetadataStore().write(
            dest, SkillMeta(source="acme/tracked", type="git-clone", installed_at="2026-01-01T00:00:00Z")
        )

        with patch("skillmirror.git.run_git", return_value="abc1234\n") as run_git:
            action = self.installer.update_skill(dest)

        self.assertEqual(action, "pulled")
        pull = run_git.call_args_list[0]
        self.assertEqual(pull.args[0], ["pull", "--quiet"])
        self.assertEqual(pull.kwargs["cwd"], dest)
        meta = SkillMetadataStore().read(dest)
        assert meta is not None
        self.assertEqual(meta.version, "abc1234")

    def test_pull_outside_a_repository_fails(self) -> None:
        with self.assertRaises(NotAGitRepositoryError):
            gitops.pull(self.tmp)


class GitSourceTestCase(InstallerTestCase):
    """Git sources served from local fixture directories instead of a network clone."""

    def setUp(self) -> None:
        super().setUp()
        self.remote = self.tmp / "remote"
        self.clones: list[str] = []

        def fake_clone(url: str, dest: Path, *, env=None) -> None:
            self.clones.append(url)
            repo = url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git")
            shutil.copytree(self.remote / repo, dest, symlinks=True)

        self.fake_clone = fake_clone
        for target, kwargs in (
            ("skillmirror.git.clone_shallow", {"side_effect": fake_clone}),
            ("skillmirror.git.head_commit", {"return_value": "abc1234"}),
        ):
            patcher = patch(target, **kwargs)
            patcher.start()
            self.addCleanup(patcher.stop)

    def make_checkout(self, repo: str) -> Path:
        root = self.remote / repo
        (root / ".git").mkdir(parents=True)
        (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
        return root


class TestGitInstall(GitSourceTestCase):
    def test_fuzzy_subdir_resolves_and_installs(self) -> None:
        _write_skill(self.remote / "skills", "skills/pdf")
        _write_skill(self.remote / "skills", "skills/docx")

        report = self.installer.install_source("acme/skills/pdf")

        dest = self.managed / "pdf"
        self.assertEqual([o.path for o in report.outcomes], [dest])
        self.assertTrue((dest / "SKILL.md").is_file())
        self.assertFalse((self.managed / "docx").exists())
        meta = SkillMetadataStore().read(dest)
        assert meta is not None
        self.assertEqual(meta.type, "git-clone-and-extract-subdir")
        self.assertEqual(meta.source, "acme/skills/skills/pdf")
        self.assertEqual(meta.version, "abc1234")

    def test_whole_repo_install_keeps_history_and_updates_by_pull(self) -> None:
        root = self.make_checkout("tool")
        _write_skill(root, ".", body="v1")

        self.installer.install_source("acme/tool")

        dest = self.managed / "tool"
        self.assertTrue((dest / ".git" / "HEAD").is_file())
        meta = SkillMetadataStore().read(dest)
        assert meta is not None
        self.assertEqual((meta.type, meta.source), ("git-clone", "acme/tool"))

        with patch("skillmirror.git.run_git", return_value="") as run_git:
            report = self.installer.install_source("acme/tool", InstallOptions(update=True))

        self.assertEqual([o.action for o in report.outcomes], ["pulled"])
        self.assertEqual(run_git.call_args_list[0].args[0], ["pull", "--quiet"])
        self.assertEqual(run_git.call_args_list[0].kwargs["cwd"], dest)
        # One clone per discovery; the update itself does not clone again.
        self.assertEqual(len(self.clones), 2)

    def test_trimmed_orchestrator_checkout_drops_history(self) -> None:
        root = self.make_checkout("orch")
        _write_skill(root, ".")
        _write_skill(root, "child-a")

        self.installer.install_source("acme/orch")

        self.assertFalse((self.managed / "orch" / ".git").exists())
        self.assertTrue((self.managed / "orch" / "child-a" / "SKILL.md").is_file())

    def test_update_reuses_the_open_clone(self) -> None:
        pack = self.remote / "pack"
        _write_skill(pack, "skill-x", body="v1")
        _write_skill(pack, "skill-y", body="v1")
        self.installer.install_source("acme/pack")

        _write_skill(pack, "skill-x", body="v2")
        report = self.installer.install_source("acme/pack", InstallOptions(update=True))

        self.assertEqual([o.action for o in report.outcomes], ["updated", "updated"])
        self.assertIn("v2", (self.managed / "skill-x" / "SKILL.md").read_text(encoding="utf-8"))
        self.assertEqual(len(self.clones), 2)


class TestFailureLabels(InstallerTestCase):
    def test_failures_are_keyed_by_managed_path(self) -> None:
        repo = self.tmp / "tool"
        _write_skill(repo, ".")
        _write_skill(repo, "skills/tool")
        _write_skill(self.managed, "tool/tool")

        report = self.installer.install_source(str(repo))

        self.assertEqual(report.outcomes, ())
        self.assertEqual(sorted(report.failures), ["tool", "tool/tool"])


class TestTrackedRepos(GitSourceTestCase):
    def setUp(self) -> None:
        super().setUp()
        patcher = patch("skillmirror.git.clone_full", side_effect=self.fake_clone)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_clone_lists_skills_and_ignores_the_checkout(self) -> None:
        root = self.make_checkout("team-skills")
        _write_skill(root, "frontend/ui")
        _write_skill(root, "backend")

        report = self.installer.track_source("acme/team-skills", InstallOptions(into="org"))

        dest = self.managed / "org" / "_acme-team-skills"
        self.assertEqual((report.name, report.path, report.action), ("_acme-team-skills", dest, "cloned"))
        self.assertEqual(report.skills, ("backend", "frontend/ui"))
        self.assertTrue((dest / ".git" / "HEAD").is_file())
        lines = (self.managed / GITIGNORE_FILENAME).read_text(encoding="utf-8").splitlines()
        self.assertEqual(lines, [MARKER_START, "org/_acme-team-skills/", MARKER_END])

        with self.assertRaises(AlreadyExistsError):
            self.installer.track_source("acme/team-skills", InstallOptions(into="org"))

        with patch("skillmirror.git.run_git", return_value="") as run_git:
            pulled = self.installer.track_source("acme/team-skills", InstallOptions(into="org", update=True))
        self.assertEqual(pulled.action, "pulled")
        self.assertEqual(run_git.call_args.args[0], ["pull", "--quiet"])

    def test_update_of_plain_directory_is_refused(self) -> None:
        (self.managed / "_tools").mkdir(parents=True)
        with self.assertRaises(NotAGitRepositoryError):
            self.installer.track_source("acme/tools", InstallOptions(name="tools", update=True))

    def test_local_sources_cannot_be_tracked(self) -> None:
        repo = _write_skill(self.tmp / "single", ".")
        with self.assertRaises(InvalidSourceError):
            self.installer.track_source(str(repo))
        self.assertEqual(self.clones, [])
