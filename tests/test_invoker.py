import pathlib
import subprocess
import sys
import tempfile
import textwrap
import time
import unittest


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ralph_autonomy.exceptions import AgentRunError, AgentTimeoutError
from ralph_autonomy.invoker import AgentClient, AgentInvoker, run_command
from ralph_autonomy.run_options import ModelInfo, ResolvedRunOptions, ScopedModel


def _agent(body: str, cwd: pathlib.Path | None = None) -> AgentClient:
    script = "import json, sys, time\n" + textwrap.dedent(body)
    return AgentClient(command=(sys.executable, "-c", script), cwd=cwd)


def _emit(record: str) -> str:
    return f"print(json.dumps({record}), flush=True)\n"


SUCCESS_AGENT = (
    _emit('{"type": "tool_execution_start", "toolName": "read", "args": {"path": "README.md"}}')
    + _emit('{"type": "tool_execution_start", "toolName": "bash", "args": {"command": "pytest"}}')
    + "print('not json')\n"
    + _emit('{"type": "message_end", "message": {"role": "assistant", "stopReason": "stop", '
            '"usage": {"input": 1500, "output": 500}}}')
)


class AgentClientTests(unittest.TestCase):
    def test_argv_includes_resolved_flags(self):
        client = AgentClient(command=("pi",))
        resolved = ResolvedRunOptions(
            model=ModelInfo("openai", "gpt-5.2"),
            thinking="high",
            scoped_models=(ScopedModel(ModelInfo("openai", "gpt-5.2"), "high"),),
            tools=("read", "bash"),
        )
        argv = client.build_argv("do work", resolved)
        self.assertEqual(
            argv,
            [
                "pi", "--mode", "json", "--print", "--no-session",
                "--provider", "openai", "--model", "gpt-5.2",
                "--thinking", "high",
                "--models", "openai/gpt-5.2:high",
                "--tools", "read,bash",
                "do work",
            ],
        )

    def test_argv_defers_to_runtime_defaults(self):
        argv = AgentClient(command=("pi",)).build_argv("p", ResolvedRunOptions())
        self.assertEqual(argv, ["pi", "--mode", "json", "--print", "--no-session", "p"])


class AgentInvokerTests(unittest.TestCase):
    def setUp(self):
        self.lines = []

    def _invoker(self, body: str, cwd=None) -> AgentInvoker:
        return AgentInvoker(_agent(body, cwd), emit=self.lines.append)

    def test_successful_run_collects_stats(self):
        result = self._invoker(SUCCESS_AGENT).invoke("prompt", ResolvedRunOptions(timeout_sec=30))
        self.assertTrue(result.ok)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.stop_reason, "stop")
        self.assertEqual(dict(result.stats.tools), {"read": 1, "bash": 1})
        self.assertEqual(result.stats.total_tokens, 2000)
        self.assertEqual(result.event_count, 3)
        self.assertIn("[WORKER] read README.md", self.lines)
        self.assertIn("[WORKER] 2.0k tokens, read:1 bash:1", self.lines)

    def test_prompt_is_last_argument(self):
        body = _emit('{"type": "echo", "prompt": sys.argv[-1]}')
        with tempfile.TemporaryDirectory() as tmp:
            out = pathlib.Path(tmp) / "seen.txt"
            body += f"open({str(out)!r}, 'w').write(sys.argv[-1])\n"
            self._invoker(body).invoke("hello agent", ResolvedRunOptions(timeout_sec=30))
            self.assertEqual(out.read_text(), "hello agent")

    def test_error_stop_reason_raises_with_message(self):
        body = _emit('{"type": "message_end", "message": {"role": "assistant", "stopReason": "error", '
                     '"errorMessage": "rate limited"}}')
        with self.assertRaises(AgentRunError) as ctx:
            self._invoker(body).invoke("p", ResolvedRunOptions(timeout_sec=30))
        self.assertEqual(str(ctx.exception), "rate limited")
        self.assertEqual(ctx.exception.result.stop_reason, "error")
        self.assertNotIsInstance(ctx.exception, AgentTimeoutError)

    def test_aborted_stop_reason_raises(self):
        body = _emit('{"type": "message_end", "message": {"role": "assistant", "stopReason": "aborted"}}')
        with self.assertRaises(AgentRunError) as ctx:
            self._invoker(body).invoke("p", ResolvedRunOptions(timeout_sec=30))
        self.assertIn("aborted", str(ctx.exception))

    def test_nonzero_exit_raises(self):
        with self.assertRaises(AgentRunError) as ctx:
            self._invoker("sys.exit(3)\n").invoke("p", ResolvedRunOptions(timeout_sec=30))
        self.assertEqual(ctx.exception.result.exit_code, 3)

    def test_timeout_kills_process(self):
        body = _emit('{"type": "tool_execution_start", "toolName": "bash"}') + "time.sleep(30)\n"
        started = time.monotonic()
        with self.assertRaises(AgentTimeoutError) as ctx:
            self._invoker(body).invoke("p", ResolvedRunOptions(timeout_sec=2))
        self.assertLess(time.monotonic() - started, 20)
        self.assertTrue(ctx.exception.result.timed_out)
        self.assertEqual(ctx.exception.result.stats.tools["bash"], 1)
        self.assertIn("Timed out after 2s", str(ctx.exception))

    def test_missing_binary(self):
        invoker = AgentInvoker(AgentClient(command=("/nonexistent/agent-binary",)), emit=self.lines.append)
        with self.assertRaises(AgentRunError) as ctx:
            invoker.invoke("p", ResolvedRunOptions(timeout_sec=5))
        self.assertEqual(ctx.exception.result.exit_code, 127)


class RunCommandTests(unittest.TestCase):
    def test_success(self):
        with tempfile.TemporaryDirectory() as tmp:
            result = run_command([sys.executable, "-c", "print('hi')"], cwd=pathlib.Path(tmp), timeout_sec=30)
        self.assertIsInstance(result, subprocess.CompletedProcess)
        self.assertEqual(result.returncode, 0)
        self.assertEqual(result.stdout.strip(), "hi")

    def test_timeout_returns_124(self):
        with tempfile.TemporaryDirectory() as tmp:
            result = run_command(
                [sys.executable, "-c", "import time; time.sleep(30)"],
                cwd=pathlib.Path(tmp),
                timeout_sec=1,
            )
        self.assertEqual(result.returncode, 124)
        self.assertIn("[TIMEOUT]", result.stderr)

    def test_missing_binary_returns_127(self):
        with tempfile.TemporaryDirectory() as tmp:
            result = run_command(["/nonexistent/tool"], cwd=pathlib.Path(tmp), timeout_sec=5)
        self.assertEqual(result.returncode, 127)


if __name__ == "__main__":
    unittest.main()
