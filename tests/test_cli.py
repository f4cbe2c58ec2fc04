import contextlib
import io
import json
import os
import pathlib
import re
import shutil
import subprocess
import sys
import tempfile
import unittest
from unittest import mock


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ralph_autonomy import actions, cli
from ralph_autonomy.loop import LoopConfig


def _clean_env(root: pathlib.Path) -> dict:
    env = {key: value for key, value in os.environ.items() if not key.startswith("RALPH_AUTONOMY_")}
    env["RALPH_AUTONOMY_ENV_FILE"] = str(root / ".env.autonomy")
    return env


class CliTestCase(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = pathlib.Path(tmp.name)
        patcher = mock.patch.dict(os.environ, _clean_env(self.root), clear=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _main(self, *argv):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = cli.main(["--root", str(self.root), *argv])
        return code, out.getvalue()

    def _json(self, *argv):
        code, text = self._main(*argv)
        return code, json.loads(text)


class SpecCommandTests(CliTestCase):
    def test_spec_lifecycle(self):
        code, payload = self._json("spec-new", "--description", "Add validation", "--content", "# Add validation\n")
        self.assertEqual(code, 0)
        created = pathlib.Path(payload["path"])
        self.assertEqual(created.name, "001-add-validation.md")

        code, payload = self._json("spec-next-number")
        self.assertEqual(payload, {"formatted": "002", "next_number": 2})

        self.assertEqual(self._json("spec-claim", "1")[0], 0)
        code, payload = self._json("spec-list")
        self.assertEqual([item["claimed"] for item in payload["specs"]], [True])

        self.assertEqual(self._json("spec-release", "001-add-validation.md")[0], 0)
        self.assertEqual(created.read_text(encoding="utf-8"), "# Add validation\n")

        code, payload = self._json("spec-done", "1")
        self.assertEqual(code, 0)
        self.assertFalse(created.exists())
        self.assertEqual(self._json("spec-next-number")[1]["next_number"], 2)

    def test_spec_new_from_file(self):
        source = self.root / "draft.md"
        source.write_text("# Draft\n", encoding="utf-8")
        code, payload = self._json("spec-new", "--description", "draft", "--content-file", str(source))
        self.assertEqual(code, 0)
        self.assertEqual(pathlib.Path(payload["path"]).read_text(encoding="utf-8"), "# Draft\n")

    def test_unknown_spec_is_reported(self):
        code, payload = self._json("spec-claim", "42")
        self.assertEqual(code, 1)
        self.assertFalse(payload["ok"])
        self.assertEqual(payload["error_type"], "FileNotFoundError")
        self.assertEqual(payload["command"], "spec-claim")


class ModelsCommandTests(CliTestCase):
    def test_models_lists_credential_status(self):
        os.environ["ANTHROPIC_API_KEY"] = "sk-ant"
        code, payload = self._json("models")
        self.assertEqual(code, 0)
        by_ref = {row["ref"]: row["credentials"] for row in payload["models"]}
        self.assertTrue(by_ref["anthropic/claude-sonnet-4-5"])
        self.assertFalse(by_ref["openai/gpt-5.2"])


class LoopCommandTests(CliTestCase):
    def test_not_a_repository(self):
        code, text = self._main("loop", "--dry-run")
        self.assertEqual(code, 1)
        self.assertIn('"status": "not_a_repository"', text)

    def test_invalid_timeout_is_reported(self):
        code, text = self._main("loop", "--timeout", "whenever")
        self.assertEqual(code, 1)
        self.assertIn('"error_type": "ValueError"', text)


@unittest.skipUnless(shutil.which("git"), "git not installed")
class LoopCommandGitTests(CliTestCase):
    def setUp(self):
        super().setUp()
        subprocess.run(["git", "init", "-q", str(self.root)], check=True)

    def test_dry_run_prints_generate_prompt(self):
        code, text = self._main("loop", "--dry-run", "-c", "harden the parser")
        self.assertEqual(code, 0)
        self.assertIn("(dry-run) Prompt:", text)
        self.assertIn("harden the parser", text)
        self.assertIn('"status": "dry_run"', text)
        self.assertTrue((self.root / ".ralph" / "TODO.md").exists())

    def test_spec_loop_dry_run_does_not_claim(self):
        spec_dir = self.root / ".ralph" / "SPECS"
        spec_dir.mkdir(parents=True)
        (spec_dir / "001-a.md").write_text("# A\n", encoding="utf-8")
        code, text = self._main("spec-loop", "--dry-run", "--model", "gpt-5.2")
        self.assertEqual(code, 0)
        self.assertIn("SPEC FILE:", text)
        self.assertEqual((spec_dir / "001-a.md").read_text(encoding="utf-8"), "# A\n")

    def test_unknown_model_is_resolver_error(self):
        (self.root / ".ralph").mkdir()
        (self.root / ".ralph" / "TODO.md").write_text("- [ ] a\n", encoding="utf-8")
        code, text = self._main("loop", "--model", "nonexistent-zzz")
        self.assertEqual(code, 1)
        self.assertIn('"error_type": "ResolverError"', text)

    def test_run_loop_for_user_scripts(self):
        config = LoopConfig(
            name="script",
            task_file=pathlib.Path(".ralph/TODO.md"),
            decide=lambda state: actions.halt("nothing planned"),
        )
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = cli.run_loop(config, ["--root", str(self.root)])
        self.assertEqual(code, 0)
        self.assertIn("halted: nothing planned", out.getvalue())
        self.assertRegex(out.getvalue(), re.compile(r"^\[\d{4}-\d\d-\d\dT[^\]]+\] \[script\] halted: nothing planned$", re.MULTILINE))


if __name__ == "__main__":
    unittest.main()
