from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

from domain import VcsUnavailable
from models import Commit


logger = logging.getLogger("promote-console.diff")


class CommitHistory(Protocol):
    async def list_commits(
        self, limit: int, rev: str = "HEAD", exclude: Optional[str] = None
    ) -> list[Commit]: ...

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool: ...


@dataclass(frozen=True)
class PendingCommits:
    commits: list[Commit] = field(default_factory=list)
    baseline_unknown: bool = False
    diverged: bool = False
    truncated: bool = False

    @property
    def count(self) -> int:
        return len(self.commits)


def _same_commit(sha: str, reference: str) -> bool:
    sha, reference = sha.lower(), reference.lower()
    if len(reference) >= 7:
        return sha.startswith(reference)
    return sha == reference


def _reachable_from(anchor: str, commits: Sequence[Commit]) -> set[str]:
    index = {commit.sha: commit for commit in commits}
    reachable: set[str] = set()
    stack = [anchor]
    while stack:
        sha = stack.pop()
        if sha in reachable or sha not in index:
            continue
        reachable.add(sha)
        stack.extend(index[sha].parents)
    return reachable


class CommitDiffCalculator:
    """Derives the commits on HEAD that production does not have yet."""

    def __init__(self, history: CommitHistory, *, window: int = 200, unknown_baseline_cap: int = 50):
        self.history = history
        self.window = window
        self.unknown_baseline_cap = unknown_baseline_cap

    async def pending_commits(self, head_sha: str, deployed_sha: Optional[str]) -> PendingCommits:
        if not deployed_sha:
            commits = await self.history.list_commits(self.unknown_baseline_cap, rev=head_sha)
            return PendingCommits(commits=commits[: self.unknown_baseline_cap], baseline_unknown=True)

        if _same_commit(head_sha, deployed_sha):
            return PendingCommits()

        walked = await self.history.list_commits(self.window, rev=head_sha)
        anchor = next((commit.sha for commit in walked if _same_commit(commit.sha, deployed_sha)), None)
        if anchor is not None:
            excluded = _reachable_from(anchor, walked)
            return PendingCommits(commits=[commit for commit in walked if commit.sha not in excluded])

        if await self.history.is_ancestor(deployed_sha, head_sha):
            return PendingCommits(commits=walked, truncated=True)
        try:
            only_head = await self.history.list_commits(self.window, rev=head_sha, exclude=deployed_sha)
        except VcsUnavailable as exc:
            # Deployed commit is unknown to this checkout; shared history cannot be told apart.
            logger.warning("Cannot exclude history shared with %s: %s", deployed_sha, exc)
            return PendingCommits(commits=walked, diverged=True)
        return PendingCommits(commits=only_head, diverged=True)
