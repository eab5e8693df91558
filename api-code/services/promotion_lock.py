from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from models import PromotionFailure, PromotionLock, utc_now
from repositories import PromotionStateRepository


logger = logging.getLogger("promote-console.lock")


class PromotionLockService:
    """Mutual exclusion for promotions on top of a state repository.

    The repository provides the compare-and-set; this layer adds the age
    ceiling, token generation and logging.
    """

    def __init__(self, repository: PromotionStateRepository, *, max_age_seconds: int = 2100):
        self.repository = repository
        self.max_age_seconds = max_age_seconds

    async def acquire(self, actor: Optional[str], head_sha: Optional[str] = None) -> PromotionLock:
        await self.force_expire()
        lock = PromotionLock(held_by=actor or "unknown", token=uuid4().hex, head_sha=head_sha)
        acquired = await self.repository.acquire_lock(lock)
        logger.info("Promotion lock acquired by %s", acquired.held_by)
        return acquired

    async def release(self, lock: PromotionLock) -> bool:
        released = await self.repository.release_lock(lock.token)
        if released:
            logger.info("Promotion lock released by %s", lock.held_by)
        return released

    async def force_expire(self, max_age_seconds: Optional[int] = None) -> Optional[PromotionLock]:
        ceiling = self.max_age_seconds if max_age_seconds is None else max_age_seconds
        cutoff = utc_now() - timedelta(seconds=ceiling)
        stale = await self.repository.expire_lock(cutoff)
        if stale is not None:
            logger.warning(
                "Cleared stale promotion lock held by %s since %s",
                stale.held_by,
                stale.started_at.isoformat(),
            )
        return stale

    async def current(self) -> Optional[PromotionLock]:
        await self.force_expire()
        return await self.repository.get_lock()

    async def complete(self, lock: PromotionLock, deployed_sha: str, at: Optional[datetime] = None) -> bool:
        completed = await self.repository.complete_promotion(lock.token, deployed_sha, at or utc_now())
        if completed:
            logger.info("Promotion by %s completed at %s", lock.held_by, deployed_sha[:12])
        else:
            logger.warning("Promotion by %s finished after its lock was cleared; ledger untouched", lock.held_by)
        return completed

    async def fail(self, lock: PromotionLock, message: str) -> bool:
        failure = PromotionFailure(message=message, held_by=lock.held_by, lock_started_at=lock.started_at)
        recorded = await self.repository.record_failure(lock.token, failure)
        if not recorded:
            logger.warning("Promotion by %s failed after its lock was cleared", lock.held_by)
        return recorded
