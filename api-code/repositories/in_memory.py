from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Deque, Optional

from domain import LockHeld
from models import DeploymentRecord, PromotionFailure, PromotionLock, ensure_utc


class InMemoryPromotionStateRepository:
    """Process-local ledger and lock used by tests and single-process setups.

    No method awaits between reading and writing state, so each operation is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self, *, deployed_sha: Optional[str] = None, deployed_at: Optional[datetime] = None) -> None:
        self._lock: Optional[PromotionLock] = None
        self._deployment = DeploymentRecord(deployed_sha=deployed_sha, deployed_at=deployed_at)
        self._last_failure: Optional[PromotionFailure] = None
        self._log: Deque[str] = deque()

    async def ensure_indexes(self) -> None:  # pragma: no cover - no-op
        return

    async def ping(self) -> bool:
        return True

    async def acquire_lock(self, lock: PromotionLock) -> PromotionLock:
        if self._lock is not None:
            raise LockHeld(self._lock.held_by, self._lock.started_at)
        self._lock = lock
        return lock

    async def get_lock(self) -> Optional[PromotionLock]:
        return self._lock

    async def release_lock(self, token: str) -> bool:
        if self._lock is None or self._lock.token != token:
            return False
        self._lock = None
        return True

    async def expire_lock(self, older_than: datetime) -> Optional[PromotionLock]:
        lock = self._lock
        if lock is None or ensure_utc(lock.started_at) >= ensure_utc(older_than):
            return None
        self._lock = None
        return lock

    async def complete_promotion(self, token: str, deployed_sha: str, deployed_at: datetime) -> bool:
        if self._lock is None or self._lock.token != token:
            return False
        self._deployment = DeploymentRecord(deployed_sha=deployed_sha, deployed_at=deployed_at)
        self._last_failure = None
        self._lock = None
        return True

    async def record_failure(self, token: str, failure: PromotionFailure) -> bool:
        if self._lock is None or self._lock.token != token:
            return False
        self._last_failure = failure
        self._lock = None
        return True

    async def get_deployment(self) -> DeploymentRecord:
        return self._deployment

    async def get_last_failure(self) -> Optional[PromotionFailure]:
        return self._last_failure

    async def reset_log(self) -> None:
        self._log.clear()

    async def append_log_line(self, line: str, *, max_lines: int) -> None:
        self._log.append(line)
        while len(self._log) > max_lines:
            self._log.popleft()

    async def get_log_lines(self, limit: Optional[int] = None) -> list[str]:
        lines = list(self._log)
        if limit is not None:
            return lines[-limit:]
        return lines
