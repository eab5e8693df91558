from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
API_CODE_PATH = PROJECT_ROOT / "api-code"
if str(API_CODE_PATH) not in sys.path:
    sys.path.insert(0, str(API_CODE_PATH))

from domain import VcsUnavailable  # noqa: E402
from services import CommitDiffCalculator, GitCommitHistoryProvider  # noqa: E402
from services.commit_history import parse_git_log  # noqa: E402


GIT_ENV = {
    "GIT_AUTHOR_NAME": "Release Bot",
    "GIT_AUTHOR_EMAIL": "release@example.com",
    "GIT_COMMITTER_NAME": "Release Bot",
    "GIT_COMMITTER_EMAIL": "release@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
}


class ParseGitLogTest(unittest.TestCase):
    def test_parses_records_and_parents(self) -> None:
        output = (
            "c3\x1fc3\x1fAda\x1f2026-03-02T09:00:00+00:00\x1fMerge feature\x1fb2 f1\x1e\n"
            "b2\x1fb2\x1fAda\x1f2026-03-01T09:00:00+00:00\x1fFix: handle | pipes\x1fa1\x1e\n"
            "a1\x1fa1\x1fAda\x1f2026-02-28T09:00:00+00:00\x1fInitial\x1f\x1e\n"
        )

        commits = parse_git_log(output)

        self.assertEqual([c.sha for c in commits], ["c3", "b2", "a1"])
        self.assertEqual(commits[0].parents, ["b2", "f1"])
        self.assertEqual(commits[1].subject, "Fix: handle | pipes")
        self.assertEqual(commits[2].parents, [])

    def test_empty_output(self) -> None:
        self.assertEqual(parse_git_log(""), [])


@unittest.skipUnless(shutil.which("git"), "git is not installed")
class GitCommitHistoryProviderTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.repo = Path(self._tmp.name) / "repo"
        self.repo.mkdir()
        self.env = {**os.environ, **GIT_ENV, "HOME": self._tmp.name}
        self.git("init", "-q")
        self.git("symbolic-ref", "HEAD", "refs/heads/main")
        self.shas = []
        for index, subject in enumerate(["Initial", "Add installer", "Tune build"]):
            (self.repo / "file.txt").write_text(f"revision {index}\n", encoding="utf-8")
            self.git("add", "file.txt")
            self.git("commit", "-q", "-m", subject)
            self.shas.append(self.git("rev-parse", "HEAD"))
        self.provider = GitCommitHistoryProvider(self.repo, timeout=10)

    def git(self, *args: str) -> str:
        completed = subprocess.run(
            ["git", *args],
            cwd=self.repo,
            env=self.env,
            capture_output=True,
            text=True,
            check=True,
        )
        return completed.stdout.strip()

    async def test_list_commits_newest_first(self) -> None:
        commits = await self.provider.list_commits(10)

        self.assertEqual([c.sha for c in commits], list(reversed(self.shas)))
        self.assertEqual(commits[0].subject, "Tune build")
        self.assertEqual(commits[0].author, "Release Bot")
        self.assertEqual(commits[0].parents, [self.shas[1]])
        self.assertTrue(commits[0].date_iso)

    async def test_limit_is_bounded(self) -> None:
        self.assertEqual(len(await self.provider.list_commits(1)), 1)
        capped = GitCommitHistoryProvider(self.repo, max_limit=2)
        self.assertEqual(len(await capped.list_commits(500)), 2)

    async def test_head_and_branch(self) -> None:
        self.assertEqual(await self.provider.resolve_head(), self.shas[-1])
        self.assertEqual(await self.provider.current_branch(), "main")

    async def test_ancestry(self) -> None:
        self.assertTrue(await self.provider.is_ancestor(self.shas[0], self.shas[-1]))
        self.assertFalse(await self.provider.is_ancestor(self.shas[-1], self.shas[0]))
        self.assertFalse(await self.provider.is_ancestor("deadbeefdeadbeef", self.shas[-1]))

    async def test_pending_commits_against_real_history(self) -> None:
        calculator = CommitDiffCalculator(self.provider)

        pending = await calculator.pending_commits(self.shas[-1], self.shas[0])

        self.assertEqual([c.sha for c in pending.commits], [self.shas[2], self.shas[1]])

    async def test_diverged_history_lists_only_head_side(self) -> None:
        self.git("checkout", "-q", "-b", "hotfix", self.shas[1])
        (self.repo / "file.txt").write_text("hotfix\n", encoding="utf-8")
        self.git("commit", "-q", "-am", "Hotfix on production")
        hotfix_sha = self.git("rev-parse", "HEAD")
        self.git("checkout", "-q", "main")
        calculator = CommitDiffCalculator(self.provider)

        pending = await calculator.pending_commits(self.shas[-1], hotfix_sha)

        self.assertTrue(pending.diverged)
        self.assertEqual([c.sha for c in pending.commits], [self.shas[2]])

    async def test_unknown_deployed_commit_is_diverged(self) -> None:
        calculator = CommitDiffCalculator(self.provider)

        pending = await calculator.pending_commits(self.shas[-1], "deadbeefdeadbeef")

        self.assertTrue(pending.diverged)
        self.assertEqual(pending.count, 3)

    async def test_rejects_option_like_revisions(self) -> None:
        with self.assertRaises(VcsUnavailable):
            await self.provider.list_commits(5, rev="--output=/tmp/x")
        with self.assertRaises(VcsUnavailable):
            await self.provider.list_commits(5, exclude="--all")

    async def test_non_repository_raises(self) -> None:
        outside = GitCommitHistoryProvider(Path(self._tmp.name), timeout=10)
        with self.assertRaises(VcsUnavailable):
            await outside.resolve_head()

    async def test_missing_directory_raises(self) -> None:
        missing = GitCommitHistoryProvider(Path(self._tmp.name) / "nope", timeout=10)
        with self.assertRaises(VcsUnavailable):
            await missing.list_commits(5)


if __name__ == "__main__":
    unittest.main()
