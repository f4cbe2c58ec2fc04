"""Git-backed progress tracking: dirty state, recent commits, auto-commit, push."""

from __future__ import annotations

import logging
import time
from pathlib import Path

from .exceptions import GitError
from .invoker import run_command

LOGGER = logging.getLogger("ralph_autonomy.progress")

RECENT_COMMIT_WINDOW_SEC = 15
GIT_TIMEOUT_SEC = 120
PUSH_TIMEOUT_SEC = 180


def _git_output(repo: Path, args: list[str], timeout_sec: int = GIT_TIMEOUT_SEC) -> tuple[bool, str]:
    result = run_command(["git", *args], cwd=repo, timeout_sec=timeout_sec)
    merged = (result.stdout + "\n" + result.stderr).strip()
    if result.returncode != 0:
        return False, merged
    return True, result.stdout.strip()


class ProgressTracker:
    """Reconciles agent work with git so no run ends with uncommitted progress."""

    def __init__(self, repo: Path, recent_window_sec: int = RECENT_COMMIT_WINDOW_SEC) -> None:
        self.repo = Path(repo)
        self.recent_window_sec = recent_window_sec

    def is_repository(self) -> bool:
        ok, out = _git_output(self.repo, ["rev-parse", "--is-inside-work-tree"])
        return ok and out == "true"

    def has_uncommitted_changes(self) -> bool:
        ok, out = _git_output(self.repo, ["status", "--porcelain"])
        if not ok:
            raise GitError(f"git status failed: {out}")
        return bool(out)

    def _has_head(self) -> bool:
        ok, _ = _git_output(self.repo, ["rev-parse", "--verify", "--quiet", "HEAD"])
        return ok

    def last_commit_timestamp(self) -> int | None:
        if not self._has_head():
            return None
        ok, out = _git_output(self.repo, ["log", "-1", "--format=%ct"])
        if not ok:
            raise GitError(f"git log failed: {out}")
        try:
            return int(out)
        except ValueError as err:
            raise GitError(f"unexpected commit timestamp: {out!r}") from err

    def was_committed_recently(self, window_sec: int | None = None) -> bool:
        window = self.recent_window_sec if window_sec is None else window_sec
        stamp = self.last_commit_timestamp()
        if stamp is None:
            return False
        return time.time() - stamp <= window

    def commit_count(self) -> int:
        if not self._has_head():
            return 0
        ok, out = _git_output(self.repo, ["rev-list", "--count", "HEAD"])
        if not ok:
            raise GitError(f"git rev-list failed: {out}")
        try:
            return int(out)
        except ValueError as err:
            raise GitError(f"unexpected commit count: {out!r}") from err

    def auto_commit(self, message: str) -> None:
        ok, out = _git_output(self.repo, ["add", "-A"])
        if not ok:
            raise GitError(f"git add failed: {out}")
        ok, out = _git_output(self.repo, ["commit", "-m", message])
        if not ok:
            raise GitError(f"git commit failed: {out}")
        LOGGER.info("auto-committed: %s", message)

    def push(self) -> bool:
        ok, out = _git_output(self.repo, ["push", "origin", "HEAD"], timeout_sec=PUSH_TIMEOUT_SEC)
        if not ok:
            LOGGER.warning("git push failed: %s", out)
            return False
        return True

    def ensure_commit(self, fallback_message: str) -> bool:
        """Return True when the run left a commit, auto-committing leftovers if needed."""
        if self.was_committed_recently():
            return True
        if self.has_uncommitted_changes():
            self.auto_commit(fallback_message)
            return True
        return False
