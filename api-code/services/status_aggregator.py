from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Dict, Optional

from domain import (
    PromotionAlreadyRunning,
    PromotionNotConfigured,
    PromotionPhase,
    PromotionTracker,
    ReconcileResult,
    VcsUnavailable,
    recommended_poll_interval,
    reconcile,
)
from models import DeploymentRecord, LocalPromotionIntent, PromotionLock, RemoteStatus, utc_now
from repositories import PromotionStateRepository
from schemas import AdminStatus, PromoteConfig, PromoteResponse, PromotionView
from settings import Settings

from .commit_diff import CommitDiffCalculator
from .commit_history import GitCommitHistoryProvider
from .promotion_lock import PromotionLockService
from .remote_gateway import RemoteExecutionGateway
from .remote_status import RemoteStatusPoller


logger = logging.getLogger("promote-console.status")

DEFAULT_ACTOR = "admin"


class StatusAggregator:
    """Builds the admin status view and issues promotions from the control plane.

    Each sub-source is collected under its own timeout; a failing source is
    reported in ``errors`` while the rest of the view is still returned. The
    promotion tracker is the only mutable state and is guarded by an
    ``asyncio.Lock``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        history: GitCommitHistoryProvider,
        diff: CommitDiffCalculator,
        repository: PromotionStateRepository,
        lock_service: PromotionLockService,
        gateway: RemoteExecutionGateway,
        poller: RemoteStatusPoller,
    ):
        self.settings = settings
        self.history = history
        self.diff = diff
        self.repository = repository
        self.lock_service = lock_service
        self.gateway = gateway
        self.poller = poller
        self._tracker = PromotionTracker()
        self._state_lock = asyncio.Lock()
        self._promote_lock = asyncio.Lock()

    @property
    def tracker(self) -> PromotionTracker:
        return self._tracker

    async def _collect(self, source: str, awaitable: Awaitable[Any], errors: Dict[str, str]) -> Any:
        timeout = self.settings.source_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            errors[source] = f"timed out after {timeout:g}s"
            logger.warning("Status source %s timed out after %ss", source, timeout)
        except Exception as exc:  # pylint: disable=broad-except
            errors[source] = str(exc) or exc.__class__.__name__
            logger.warning("Status source %s failed: %s", source, exc)
        return None

    async def _head(self) -> tuple[str, str]:
        head_sha, branch = await asyncio.gather(self.history.resolve_head(), self.history.current_branch())
        return head_sha, branch

    async def _local_state(self) -> tuple[Optional[PromotionLock], DeploymentRecord]:
        lock = await self.lock_service.current()
        deployment = await self.repository.get_deployment()
        return lock, deployment

    async def _reconcile(self, remote: RemoteStatus, admin_in_progress: bool) -> ReconcileResult:
        async with self._state_lock:
            result = reconcile(
                self._tracker,
                remote,
                utc_now(),
                ttl_seconds=self.settings.local_intent_ttl_seconds,
                admin_in_progress=admin_in_progress,
            )
            self._tracker = result.tracker
        if result.signal is not None:
            logger.info("Production promotion confirmed complete at %s", result.signal.deployed_sha[:12])
        elif result.status.phase == PromotionPhase.LOCAL_TIMEOUT_EXPIRED:
            logger.warning("Local promotion intent expired without confirmation from production")
        return result

    def _poll_interval(self, is_running: bool) -> int:
        return recommended_poll_interval(
            is_running,
            fast=self.settings.poll_fast_seconds,
            slow=self.settings.poll_slow_seconds,
        )

    async def get_status(self) -> AdminStatus:
        errors: Dict[str, str] = {}
        head, recent, local, remote = await asyncio.gather(
            self._collect("git", self._head(), errors),
            self._collect(
                "recentCommits",
                self.history.list_commits(self.settings.recent_commits_limit),
                errors,
            ),
            self._collect("localState", self._local_state(), errors),
            self._collect("remoteStatus", self.poller.fetch_remote_status(), errors),
        )

        if remote is None:
            remote = RemoteStatus.unavailable(errors.get("remoteStatus", "Status API unavailable"))
        elif remote.error and self.settings.promote_available:
            errors["remoteStatus"] = remote.error

        local_lock, local_deployment = local if local is not None else (None, DeploymentRecord())
        if remote.available:
            deployed_sha, deployed_at = remote.deployed_sha, remote.deployed_at
        else:
            deployed_sha, deployed_at = local_deployment.deployed_sha, local_deployment.deployed_at

        head_sha, branch = head if head is not None else (None, None)
        pending = None
        if head_sha:
            pending = await self._collect(
                "pendingCommits",
                self.diff.pending_commits(head_sha, deployed_sha),
                errors,
            )

        admin_in_progress = local_lock is not None
        result = await self._reconcile(remote, admin_in_progress)
        recent_commits = recent or []

        return AdminStatus(
            app_env=self.settings.app_env,
            branch=branch,
            head_sha=head_sha,
            prod_deployed_sha=deployed_sha,
            prod_deployed_at=deployed_at,
            pending_count=pending.count if pending else 0,
            recent_commit_count=len(recent_commits),
            promote_available=self.settings.promote_available,
            promote_config=PromoteConfig(
                webhook_url_configured=self.settings.webhook_url_configured,
                webhook_secret_configured=self.settings.webhook_secret_configured,
            ),
            promote_in_progress=admin_in_progress,
            promote_remote_status=remote,
            recent_commits=recent_commits,
            pending_commits=pending.commits if pending else [],
            pending_baseline_unknown=pending.baseline_unknown if pending else False,
            pending_diverged=pending.diverged if pending else False,
            pending_truncated=pending.truncated if pending else False,
            promotion=PromotionView.from_status(
                result.status,
                poll_interval_seconds=self._poll_interval(result.status.is_running),
            ),
            errors=errors,
        )

    async def promote(self, actor: Optional[str] = None) -> PromoteResponse:
        """Ask production to start a promotion; returns as soon as it is accepted."""
        if not self.settings.webhook_url_configured:
            raise PromotionNotConfigured(
                "webhook_url_missing",
                "PROMOTE_PROD_WEBHOOK_URL is not configured on this server",
            )
        if not self.settings.webhook_secret_configured:
            raise PromotionNotConfigured(
                "webhook_secret_missing",
                "PROMOTE_PROD_WEBHOOK_SECRET is not configured on this server",
            )

        requested_by = (actor or "").strip() or DEFAULT_ACTOR
        async with self._promote_lock:
            local_lock, local_deployment = await self._local_state()
            if local_lock is not None:
                raise PromotionAlreadyRunning()

            remote = await self.poller.fetch_remote_status()
            result = await self._reconcile(remote, admin_in_progress=False)
            if result.status.is_running:
                raise PromotionAlreadyRunning()

            try:
                head_sha: Optional[str] = await self.history.resolve_head()
            except VcsUnavailable as exc:
                logger.warning("Promoting without a pinned SHA: %s", exc)
                head_sha = None

            baseline_sha = remote.deployed_sha if remote.available else local_deployment.deployed_sha
            accepted = await self.gateway.trigger_promotion(requested_by, head_sha)

            intent = LocalPromotionIntent(
                triggered_at=accepted.accepted_at,
                remote_started_at=accepted.started_at,
                baseline_sha=baseline_sha,
                requested_by=requested_by,
            )
            async with self._state_lock:
                if self._tracker.phase == PromotionPhase.IDLE:
                    self._tracker = self._tracker.begin(intent)
                elif self._tracker.intent is None:
                    # A concurrent poll already saw the run start on production.
                    self._tracker = replace(self._tracker, intent=intent)

        logger.info("Promotion triggered by %s (head=%s)", requested_by, head_sha or "HEAD")
        return PromoteResponse(
            triggered_at=accepted.accepted_at,
            requested_by=requested_by,
            head_sha=head_sha,
            message=accepted.message,
        )
