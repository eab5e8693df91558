from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Optional

from domain import CommandExecutionError
from models import PromotionLock, RemoteStatus
from repositories import PromotionStateRepository

from .commands import stream_command
from .commit_history import GitCommitHistoryProvider
from .promotion_lock import PromotionLockService


logger = logging.getLogger("promote-console.executor")

START_LINE = "Starting production promotion..."
COMPLETED_LINE = "Production promotion completed"
FAILURE_MESSAGE_LIMIT = 500


class PromotionExecutor:
    """Production-side runner for promotions requested by the control plane.

    ``accept`` takes the lock synchronously so the webhook can answer 409
    immediately; ``run`` is scheduled as a background task and always ends by
    completing or failing the lock it was given.
    """

    def __init__(
        self,
        repository: PromotionStateRepository,
        lock_service: PromotionLockService,
        history: GitCommitHistoryProvider,
        *,
        repo_path: Path | str,
        script_command: str,
        job_timeout_seconds: int = 1800,
        log_max_lines: int = 200,
        dry_run: bool = False,
    ):
        if lock_service.max_age_seconds <= job_timeout_seconds:
            raise ValueError(
                f"lock ceiling ({lock_service.max_age_seconds}s) must exceed the job timeout ({job_timeout_seconds}s)"
            )
        self.repository = repository
        self.lock_service = lock_service
        self.history = history
        self.repo_path = Path(repo_path)
        self.script_command = script_command
        self.job_timeout_seconds = job_timeout_seconds
        self.log_max_lines = log_max_lines
        self.dry_run = dry_run

    async def _log(self, line: str) -> None:
        await self.repository.append_log_line(line, max_lines=self.log_max_lines)

    async def _log_quietly(self, line: str) -> None:
        try:
            await self._log(line)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Could not append promotion log line: %s", exc)

    async def accept(self, promoted_by: Optional[str], head_sha: Optional[str] = None) -> PromotionLock:
        lock = await self.lock_service.acquire(promoted_by, head_sha)
        try:
            await self.repository.reset_log()
            await self._log(START_LINE)
        except Exception:
            await self.lock_service.release(lock)
            raise
        logger.info("Accepted promotion requested by %s (head=%s)", lock.held_by, head_sha or "HEAD")
        return lock

    def _job_env(self, lock: PromotionLock) -> dict[str, str]:
        return {
            "PROMOTED_BY": lock.held_by,
            "HEAD_SHA": lock.head_sha or "",
            "APP_DIR": str(self.repo_path),
        }

    async def run(self, lock: PromotionLock) -> Optional[str]:
        """Execute the promotion command and settle the lock; returns the deployed SHA.

        The lock is completed or failed on every exit path, including
        cancellation and log store errors.
        """
        command = shlex.split(self.script_command)
        deployed_sha: Optional[str] = None
        message = "Promotion was interrupted"
        try:
            if self.dry_run:
                await self._log_quietly(f"[dry-run] {' '.join(command)} (cwd={self.repo_path})")
                deployed_sha = lock.head_sha or await self.history.resolve_head()
            else:
                await stream_command(
                    command,
                    on_line=self._log_quietly,
                    cwd=self.repo_path,
                    timeout=self.job_timeout_seconds,
                    env=self._job_env(lock),
                )
                deployed_sha = await self.history.resolve_head()
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Production promotion requested by %s failed", lock.held_by)
            if isinstance(exc, CommandExecutionError) and exc.timed_out:
                message = f"Promotion command timed out after {self.job_timeout_seconds}s"
            else:
                message = str(exc) or exc.__class__.__name__
        finally:
            if deployed_sha is None:
                await self._log_quietly(f"Promotion failed: {message.splitlines()[0] if message else ''}")
                await self.lock_service.fail(lock, message[:FAILURE_MESSAGE_LIMIT])

        if deployed_sha is None:
            return None
        await self._log_quietly(COMPLETED_LINE)
        await self.lock_service.complete(lock, deployed_sha)
        return deployed_sha

    async def status(self) -> RemoteStatus:
        lock = await self.lock_service.current()
        deployment = await self.repository.get_deployment()
        last_failure = await self.repository.get_last_failure()
        lines = await self.repository.get_log_lines(self.log_max_lines)
        public_lock = lock.model_copy(update={"token": ""}) if lock else None
        return RemoteStatus(
            in_progress=lock is not None,
            lock=public_lock,
            recent_log_lines=lines,
            deployed_sha=deployment.deployed_sha,
            deployed_at=deployment.deployed_at,
            last_failure=last_failure,
        )
