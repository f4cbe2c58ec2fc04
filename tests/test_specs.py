import pathlib
import sys
import tempfile
import unittest


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ralph_autonomy import specs
from ralph_autonomy.actions import ActionKind


def _write(directory: pathlib.Path, name: str, text: str) -> pathlib.Path:
    path = directory / name
    path.write_text(text, encoding="utf-8")
    return path


class SpecHelpersTests(unittest.TestCase):
    def test_filename_formatting(self):
        self.assertEqual(specs.create_spec_filename(1, "Add Validation!"), "001-add-validation.md")
        self.assertEqual(specs.create_spec_filename(12, "  --  "), "012-spec.md")
        self.assertEqual(specs.create_spec_filename(1234, "x"), "1234-x.md")
        long_name = specs.create_spec_filename(3, "a" * 80)
        self.assertEqual(long_name, "003-" + "a" * 50 + ".md")

    def test_parse_spec_number(self):
        self.assertEqual(specs.parse_spec_number("007-thing.md"), 7)
        self.assertIsNone(specs.parse_spec_number("notes.md"))

    def test_claim_marker_detection_is_whitespace_tolerant(self):
        self.assertTrue(specs.is_claimed("<!--WIP:   IN PROGRESS-->\n\nbody"))
        self.assertFalse(specs.is_claimed("body\n<!-- WIP: IN PROGRESS -->"))


class SpecDirectoryTests(unittest.TestCase):
    def test_items_sorted_and_partitioned(self):
        with tempfile.TemporaryDirectory() as tmp:
            directory = pathlib.Path(tmp)
            _write(directory, "010-late.md", "late\n")
            _write(directory, "002-early.md", "<!-- WIP: IN PROGRESS -->\n\nearly\n")
            _write(directory, "005-middle.md", "middle\n")
            _write(directory, "README.md", "ignored\n")
            _write(directory, "003-notes.txt", "ignored\n")
            state = specs.SpecBackend(directory).snapshot(iteration=1, commits=0, context=None, dirty=False)
            self.assertEqual([item.number for item in state.specs], [2, 5, 10])
            self.assertEqual([item.name for item in state.claimed_specs], ["002-early.md"])
            self.assertEqual(state.next_spec.name, "005-middle.md")
            self.assertEqual(state.specs[0].content, "early")
            self.assertTrue(state.specs[0].raw_content.startswith("<!-- WIP"))
            self.assertEqual(state.todos, ("005-middle.md", "010-late.md"))
            self.assertTrue(state.has_todos)

    def test_missing_directory_is_created(self):
        with tempfile.TemporaryDirectory() as tmp:
            directory = pathlib.Path(tmp) / ".ralph" / "SPECS"
            backend = specs.SpecBackend(directory)
            state = backend.snapshot(iteration=1, commits=0, context=None, dirty=False)
            self.assertTrue(directory.is_dir())
            self.assertIsNone(state.next_spec)
            self.assertTrue(backend.is_exhausted(state))

    def test_claim_and_release_are_idempotent_inverses(self):
        with tempfile.TemporaryDirectory() as tmp:
            directory = specs.SpecDirectory(pathlib.Path(tmp))
            path = _write(directory.path, "001-task.md", "# Task\n\nDo it.\n")
            directory.claim(path)
            directory.claim(path)
            claimed = path.read_text(encoding="utf-8")
            self.assertEqual(claimed, "<!-- WIP: IN PROGRESS -->\n\n# Task\n\nDo it.\n")
            directory.release(path)
            directory.release(path)
            self.assertEqual(path.read_text(encoding="utf-8"), "# Task\n\nDo it.\n")

    def test_release_of_unclaimed_item_is_noop(self):
        with tempfile.TemporaryDirectory() as tmp:
            directory = specs.SpecDirectory(pathlib.Path(tmp))
            path = _write(directory.path, "001-task.md", "untouched")
            directory.release(path)
            self.assertEqual(path.read_text(encoding="utf-8"), "untouched")

    def test_numbering_is_monotonic_across_deletion(self):
        with tempfile.TemporaryDirectory() as tmp:
            directory = specs.SpecDirectory(pathlib.Path(tmp))
            for name in ("001-a.md", "002-b.md", "005-c.md"):
                _write(directory.path, name, "x\n")
            self.assertEqual(directory.next_number(), 6)
            directory.complete(directory.find("005-c.md"))
            self.assertFalse((directory.path / "005-c.md").exists())
            self.assertEqual(directory.next_number(), 6)

    def test_snapshot_records_high_water_for_agent_deletions(self):
        with tempfile.TemporaryDirectory() as tmp:
            backend = specs.SpecBackend(pathlib.Path(tmp))
            path = _write(backend.location, "004-d.md", "x\n")
            backend.snapshot(iteration=1, commits=0, context=None, dirty=False)
            path.unlink()
            self.assertEqual(backend.directory.next_number(), 5)

    def test_empty_directory_starts_at_one(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(specs.SpecDirectory(pathlib.Path(tmp)).next_number(), 1)

    def test_complete_tolerates_missing_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            directory = specs.SpecDirectory(pathlib.Path(tmp))
            directory.complete(directory.path / "003-gone.md")
            self.assertEqual(directory.next_number(), 4)

    def test_create_allocates_next_number(self):
        with tempfile.TemporaryDirectory() as tmp:
            directory = specs.SpecDirectory(pathlib.Path(tmp) / "SPECS")
            first = directory.create("Add validation", "# One\n")
            second = directory.create("Fix: the parser", "# Two\n")
            self.assertEqual(first.name, "001-add-validation.md")
            self.assertEqual(second.name, "002-fix-the-parser.md")
            self.assertEqual(second.read_text(encoding="utf-8"), "# Two\n")

    def test_find_by_number(self):
        with tempfile.TemporaryDirectory() as tmp:
            directory = specs.SpecDirectory(pathlib.Path(tmp))
            _write(directory.path, "003-thing.md", "x")
            self.assertEqual(directory.find("3").name, "003-thing.md")
            with self.assertRaises(FileNotFoundError):
                directory.find("9")


class SpecBackendWorkTests(unittest.TestCase):
    def test_begin_and_successful_finish_deletes_item(self):
        with tempfile.TemporaryDirectory() as tmp:
            backend = specs.SpecBackend(pathlib.Path(tmp))
            path = _write(backend.location, "001-a.md", "body\n")
            state = backend.snapshot(iteration=1, commits=0, context=None, dirty=False)
            token = backend.begin_work(state)
            self.assertTrue(specs.is_claimed(path.read_text(encoding="utf-8")))
            backend.finish_work(token, ok=True)
            self.assertFalse(path.exists())

    def test_failed_finish_releases_claim(self):
        with tempfile.TemporaryDirectory() as tmp:
            backend = specs.SpecBackend(pathlib.Path(tmp))
            path = _write(backend.location, "001-a.md", "body\n")
            state = backend.snapshot(iteration=1, commits=0, context=None, dirty=False)
            token = backend.begin_work(state)
            backend.finish_work(token, ok=False)
            self.assertEqual(path.read_text(encoding="utf-8"), "body\n")

    def test_commit_messages(self):
        backend = specs.SpecBackend(pathlib.Path("SPECS"))
        self.assertEqual(backend.commit_message(ActionKind.WORK, 4), "chore: implement spec (iteration 4)")
        self.assertEqual(backend.commit_message(ActionKind.GENERATE, 4), "spec: add new spec")


if __name__ == "__main__":
    unittest.main()
