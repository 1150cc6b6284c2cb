import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillmirror.cli import build_parser, main


def _write_skill(root: Path, rel: str) -> Path:
    d = root if rel == "." else root / rel
    d.mkdir(parents=True, exist_ok=True)
    (d / "SKILL.md").write_text(f"---\nname: {d.name}\nlicense: MIT\n---\n\n# {d.name}\n", encoding="utf-8")
    return d


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name)
        self.cfg = str(self.tmp / "config.json")
        self.managed = self.tmp / "managed"
        env = patch.dict(os.environ)
        env.start()
        self.addCleanup(env.stop)
        os.environ.pop("SKILLMIRROR_SOURCE_DIR", None)

    def tearDown(self) -> None:
        self._td.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with patch("sys.stdout", new=out), patch("sys.stderr", new=err):
            rc = main(["--config", self.cfg, *argv])
        return rc, out.getvalue(), err.getvalue()

    def test_parser_accepts_install_flags(self) -> None:
        args = build_parser().parse_args(
            ["install", "acme/toolbox", "--into", "team", "--exclude", "a,b", "--exclude", "c", "--update", "--json"]
        )
        self.assertEqual(args.cmd, "install")
        self.assertEqual(args.into, "team")
        self.assertEqual(args.exclude, ["a,b", "c"])
        self.assertTrue(args.update)

    def test_install_list_and_sync_end_to_end(self) -> None:
        repo = self.tmp / "pack"
        _write_skill(repo, "acme/formatter")
        _write_skill(repo, "pdf")
        target_dir = self.tmp / "claude-skills"

        self.assertEqual(self.run_cli("config", "set", "--source-dir", str(self.managed))[0], 0)
        self.assertEqual(self.run_cli("target", "add", "claude", str(target_dir), "--mode", "copy")[0], 0)

        rc, out, _ = self.run_cli("install", str(repo), "--into", "acme", "--json")
        self.assertEqual(rc, 0)
        payload = json.loads(out)
        self.assertEqual(sorted(s["name"] for s in payload["skills"]), ["formatter", "pdf"])

        rc, out, _ = self.run_cli("list", "--json")
        self.assertEqual(rc, 0)
        self.assertEqual([s["flat_name"] for s in json.loads(out)], ["acme__formatter", "acme__pdf"])

        rc, out, _ = self.run_cli("sync", "--json")
        self.assertEqual(rc, 0)
        result = json.loads(out)["targets"][0]
        self.assertEqual(result["copied"], ["acme__formatter", "acme__pdf"])
        self.assertTrue((target_dir / "acme__pdf" / "SKILL.md").is_file())

        rc, out, _ = self.run_cli("sync")
        self.assertEqual(rc, 0)
        self.assertIn("target: claude [copy]", out)
        self.assertNotIn("copied: ", out)

        rc, out, _ = self.run_cli("target", "list")
        self.assertIn("copied", out)

    def test_errors_are_reported_with_exit_code_one(self) -> None:
        rc, _, err = self.run_cli("install", "   ")
        self.assertEqual(rc, 1)
        self.assertIn("error:", err)

        rc, _, err = self.run_cli("sync")
        self.assertEqual(rc, 1)
        self.assertIn("No targets configured", err)

    def test_existing_skill_without_force_fails(self) -> None:
        repo = _write_skill(self.tmp / "single", ".")
        self.run_cli("config", "set", "--source-dir", str(self.managed))
        self.assertEqual(self.run_cli("install", str(repo))[0], 0)

        rc, _, err = self.run_cli("install", str(repo))
        self.assertEqual(rc, 1)
        self.assertIn("already exists", err)

    def test_update_refuses_paths_outside_the_managed_tree(self) -> None:
        outside = _write_skill(self.tmp / "elsewhere", ".")
        self.run_cli("config", "set", "--source-dir", str(self.managed))
        self.managed.mkdir()

        rc, _, err = self.run_cli("update", "../elsewhere")

        self.assertEqual(rc, 1)
        self.assertIn("must not contain '.' or '..'", err)
        self.assertFalse((outside / ".skillmirror-meta.json").exists())

    def test_track_rejects_skill_selection(self) -> None:
        self.assertTrue(build_parser().parse_args(["install", "acme/team", "--track"]).track)

        rc, _, err = self.run_cli("install", "acme/team", "--track", "--skill", "ui")
        self.assertEqual(rc, 1)
        self.assertIn("--track", err)
