import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from agentskills.cli import build_parser, cmd_install, cmd_list, cmd_validate, main
from agentskills.config import Config


def _write_skill(root: Path, name: str, description: str = "A test skill") -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "SKILL.md").write_text(f"---\nname: {name}\ndescription: {description}\n---\n# {name}\n", encoding="utf-8")
    return root


class _Project:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.sources = root / "vendor"
        self.skills_dir = root / ".agentskills" / "skills"

    def declare(self, skills: dict[str, str]) -> None:
        (self.root / "package.json").write_text(
            json.dumps({"name": "demo", "agentskills": skills}), encoding="utf-8"
        )


class TestParser(unittest.TestCase):
    def test_aliases(self) -> None:
        args = build_parser().parse_args(["i", "--json"])
        self.assertEqual(args.cmd, "i")
        self.assertTrue(args.json)
        self.assertEqual(args.project_dir, ".")

        args = build_parser().parse_args(["ls", "--no-global"])
        self.assertEqual(args.cmd, "ls")
        self.assertTrue(args.no_global)


class TestInstall(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.project = _Project(Path(self._td.name).resolve())
        _write_skill(self.project.sources / "pptx", "pptx", "Build decks")
        _write_skill(self.project.sources / "pdf", "pdf", "Read PDFs")

    def tearDown(self) -> None:
        self._td.cleanup()

    def _run(self, *argv: str) -> tuple[int, str, str]:
        args = build_parser().parse_args(["install", "--project-dir", str(self.project.root), *argv])
        with (
            patch("agentskills.cli.load_config", return_value=Config()),
            patch("sys.stdout", new=io.StringIO()) as stdout,
            patch("sys.stderr", new=io.StringIO()) as stderr,
        ):
            rc = cmd_install(args)
        return rc, stdout.getvalue(), stderr.getvalue()

    def test_installs_declared_skills_and_writes_lock(self) -> None:
        self.project.declare(
            {"ppt": f"file:{self.project.sources / 'pptx'}", "pdf": f"file:{self.project.sources / 'pdf'}"}
        )
        rc, out, _ = self._run("--json")

        self.assertEqual(rc, 0)
        payload = json.loads(out)
        by_name = {r["name"]: r for r in payload["results"]}
        self.assertTrue(by_name["ppt"]["success"])
        self.assertEqual(by_name["ppt"]["skill"], "pptx")
        self.assertTrue((self.project.skills_dir / "ppt" / "SKILL.md").is_file())

        lock = json.loads((self.project.root / ".agentskills" / "skills-lock.json").read_text(encoding="utf-8"))
        self.assertEqual(sorted(lock["skills"]), ["pdf", "ppt"])
        self.assertEqual(lock["skills"]["ppt"]["spec"], f"file:{self.project.sources / 'pptx'}")

    def test_failures_are_reported_and_left_out_of_lock(self) -> None:
        self.project.declare({"pdf": f"file:{self.project.sources / 'pdf'}", "bad": "github:acme"})

        rc, out, _ = self._run()

        self.assertEqual(rc, 1)
        self.assertIn("installed: pdf", out)
        self.assertIn("failed: bad [INVALID_SPECIFIER]", out)
        self.assertIn("1 installed, 1 failed", out)
        lock = json.loads((self.project.root / ".agentskills" / "skills-lock.json").read_text(encoding="utf-8"))
        self.assertEqual(list(lock["skills"]), ["pdf"])

    def test_nothing_declared(self) -> None:
        rc, out, _ = self._run()

        self.assertEqual(rc, 0)
        self.assertIn("No skills declared", out)
        self.assertFalse(self.project.skills_dir.exists())


class TestList(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name).resolve()
        self.project = _Project(self.tmp / "project")
        self.global_dir = self.tmp / "home" / ".agentskills" / "skills"
        self.cfg = Config(global_skills_dir=str(self.global_dir))

    def tearDown(self) -> None:
        self._td.cleanup()

    def _run(self, *argv: str) -> tuple[int, str, str]:
        args = build_parser().parse_args(["list", "--project-dir", str(self.project.root), *argv])
        with (
            patch("agentskills.cli.load_config", return_value=self.cfg),
            patch("sys.stdout", new=io.StringIO()) as stdout,
            patch("sys.stderr", new=io.StringIO()) as stderr,
        ):
            rc = cmd_list(args)
        return rc, stdout.getvalue(), stderr.getvalue()

    def test_local_shadows_global(self) -> None:
        _write_skill(self.project.skills_dir / "pdf", "pdf", "local pdf")
        _write_skill(self.global_dir / "pdf", "pdf", "global pdf")
        _write_skill(self.global_dir / "docx", "docx", "global docx")

        rc, out, err = self._run("--json")

        self.assertEqual(rc, 0)
        payload = json.loads(out)
        skills = {s["name"]: s for s in payload["skills"]}
        self.assertEqual(set(skills), {"pdf", "docx"})
        self.assertEqual(skills["pdf"]["description"], "local pdf")
        self.assertEqual(payload["collisions"][0]["name"], "pdf")
        self.assertEqual(err, "")

    def test_lock_file_limits_listing(self) -> None:
        for name in ("a", "b", "c"):
            _write_skill(self.project.skills_dir / name, name)
        lock = {"version": "1.0", "skills": {n: {"spec": f"file:./{n}", "resolvedVersion": "1", "integrity": "x"} for n in ("a", "b")}}
        (self.project.root / ".agentskills" / "skills-lock.json").write_text(json.dumps(lock), encoding="utf-8")

        rc, out, _ = self._run("--no-global")

        self.assertEqual(rc, 0)
        lines = out.splitlines()
        self.assertTrue(lines[0].startswith("NAME"))
        self.assertEqual(sorted(line.split()[0] for line in lines[1:]), ["a", "b"])

    def test_missing_directories(self) -> None:
        rc, _, err = self._run("--no-global")

        self.assertEqual(rc, 1)
        self.assertIn("Skills directory not found", err)


class TestValidate(unittest.TestCase):
    def test_valid_skill_with_warnings(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _write_skill(Path(td) / "pdf-tool", "pdf")
            args = build_parser().parse_args(["validate", str(root / "SKILL.md")])
            with patch("sys.stdout", new=io.StringIO()) as stdout:
                rc = cmd_validate(args)

        self.assertEqual(rc, 0)
        self.assertIn("valid: pdf", stdout.getvalue())
        self.assertIn("does not match", stdout.getvalue())

    def test_invalid_skill_reports_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "SKILL.md").write_text("# no frontmatter\n", encoding="utf-8")
            with patch("sys.stderr", new=io.StringIO()) as stderr:
                rc = main(["validate", td])

        self.assertEqual(rc, 1)
        self.assertIn("error:", stderr.getvalue())
        self.assertIn("frontmatter", stderr.getvalue())


class TestMain(unittest.TestCase):
    def test_bad_package_json_is_an_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "package.json").write_text("{oops", encoding="utf-8")
            with (
                patch("agentskills.cli.load_config", return_value=Config()),
                patch("sys.stderr", new=io.StringIO()) as stderr,
            ):
                rc = main(["install", "--project-dir", td])

        self.assertEqual(rc, 1)
        self.assertIn("error: Invalid JSON", stderr.getvalue())

    def test_bad_timeout_environment_is_an_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with (
                patch.dict(os.environ, {"AGENTSKILLS_TIMEOUT_S": "1m"}, clear=True),
                patch("sys.stderr", new=io.StringIO()) as stderr,
            ):
                rc = main(["--config", str(Path(td) / "config.json"), "install", "--project-dir", td])

        self.assertEqual(rc, 1)
        self.assertIn("error: AGENTSKILLS_TIMEOUT_S must be a number", stderr.getvalue())


if __name__ == "__main__":
    unittest.main()
