from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

from domain import CommandExecutionError, VcsUnavailable
from models import Commit

from .commands import run_command


logger = logging.getLogger("promote-console.git")

FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"
GIT_LOG_FORMAT = "%H%x1f%h%x1f%an%x1f%aI%x1f%s%x1f%P%x1e"
REVISION_PATTERN = re.compile(r"^(HEAD|[0-9a-fA-F]{4,40})$")
MAX_HISTORY_LIMIT = 200


def parse_git_log(output: str) -> list[Commit]:
    commits: list[Commit] = []
    for record in output.split(RECORD_SEP):
        record = record.strip("\n")
        if not record.strip():
            continue
        fields = (record.split(FIELD_SEP) + [""] * 6)[:6]
        sha, short_sha, author, date_iso, subject, parents = fields
        sha = sha.strip()
        if not sha:
            continue
        commits.append(
            Commit(
                sha=sha,
                short_sha=short_sha.strip() or sha[:7],
                author=author,
                subject=subject,
                date_iso=date_iso,
                parents=parents.split(),
            )
        )
    return commits


class GitCommitHistoryProvider:
    """Reads commit metadata from a local checkout with bounded git calls."""

    def __init__(self, repo_path: Path | str, *, timeout: float = 10.0, max_limit: int = MAX_HISTORY_LIMIT):
        self.repo_path = Path(repo_path)
        self.timeout = timeout
        self.max_limit = max_limit

    async def _git(self, *args: str, description: str) -> str:
        try:
            result = await run_command(
                ["git", *args],
                cwd=self.repo_path,
                description=description,
                timeout=self.timeout,
            )
        except CommandExecutionError as exc:
            detail = "timed out" if exc.timed_out else (exc.stderr or str(exc))
            raise VcsUnavailable(f"git {args[0]} failed: {detail}") from exc
        return result.get("stdout", "")

    @staticmethod
    def _checked_revision(rev: str) -> str:
        if not REVISION_PATTERN.match(rev or ""):
            raise VcsUnavailable(f"not a commit reference: {rev!r}")
        return rev

    async def list_commits(self, limit: int, rev: str = "HEAD", exclude: Optional[str] = None) -> list[Commit]:
        """Newest-first commits reachable from ``rev`` in topological order.

        With ``exclude``, commits reachable from that revision are left out
        (``git log rev ^exclude``).
        """
        bounded = max(1, min(int(limit), self.max_limit))
        revisions = [self._checked_revision(rev)]
        if exclude:
            revisions.append(f"^{self._checked_revision(exclude)}")
        output = await self._git(
            "log",
            "--topo-order",
            f"-n{bounded}",
            f"--pretty=format:{GIT_LOG_FORMAT}",
            *revisions,
            "--",
            description="List commit history",
        )
        return parse_git_log(output)

    async def resolve_head(self) -> str:
        sha = (await self._git("rev-parse", "HEAD", description="Resolve HEAD")).strip()
        if not sha:
            raise VcsUnavailable("git rev-parse returned no SHA")
        return sha

    async def current_branch(self) -> str:
        return (await self._git("rev-parse", "--abbrev-ref", "HEAD", description="Resolve branch")).strip()

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        try:
            await run_command(
                [
                    "git",
                    "merge-base",
                    "--is-ancestor",
                    self._checked_revision(ancestor),
                    self._checked_revision(descendant),
                ],
                cwd=self.repo_path,
                description="Check ancestry",
                timeout=self.timeout,
            )
        except CommandExecutionError as exc:
            if exc.returncode == 1:
                return False
            if exc.returncode == 128:
                # Unknown object: the deployed SHA is not part of this checkout's history.
                logger.warning("Commit %s is unknown to %s", ancestor, self.repo_path)
                return False
            raise VcsUnavailable(f"git merge-base failed: {exc.stderr or exc}") from exc
        return True
