from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from db.mongo import get_database
from domain import LockHeld
from models import DeploymentRecord, PromotionFailure, PromotionLock, ensure_utc


class MongoPromotionStateRepository:
    """MongoDB repository holding the deployment ledger and promotion lock.

    Ledger, lock, last failure and log tail live in one document per
    environment so that acquiring the lock and recording a deployment are
    single-document compare-and-set operations.
    """

    def __init__(
        self,
        database: Optional[AsyncIOMotorDatabase] = None,
        *,
        environment: str = "production",
    ):
        self._db = database if database is not None else get_database()
        self._state: AsyncIOMotorCollection = self._db["promotion_state"]
        self._key = environment

    async def ensure_indexes(self) -> None:
        await self._state.create_index("lock.token")

    async def ping(self) -> bool:
        try:
            await self._db.command("ping")
        except Exception:  # pylint: disable=broad-except
            return False
        return True

    async def _get_document(self) -> dict[str, Any]:
        return await self._state.find_one({"_id": self._key}) or {}

    async def acquire_lock(self, lock: PromotionLock) -> PromotionLock:
        try:
            document = await self._state.find_one_and_update(
                {"_id": self._key, "lock": None},
                {"$set": {"lock": lock.to_document()}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as exc:
            current = await self.get_lock()
            raise LockHeld(
                current.held_by if current else None,
                current.started_at if current else None,
            ) from exc
        return PromotionLock.from_document(document["lock"]) or lock

    async def get_lock(self) -> Optional[PromotionLock]:
        document = await self._get_document()
        return PromotionLock.from_document(document.get("lock"))

    async def release_lock(self, token: str) -> bool:
        result = await self._state.update_one(
            {"_id": self._key, "lock.token": token},
            {"$set": {"lock": None}},
        )
        return result.modified_count > 0

    async def expire_lock(self, older_than: datetime) -> Optional[PromotionLock]:
        document = await self._state.find_one_and_update(
            {"_id": self._key, "lock.started_at": {"$lt": ensure_utc(older_than)}},
            {"$set": {"lock": None}},
            return_document=ReturnDocument.BEFORE,
        )
        if not document:
            return None
        return PromotionLock.from_document(document.get("lock"))

    async def complete_promotion(self, token: str, deployed_sha: str, deployed_at: datetime) -> bool:
        result = await self._state.update_one(
            {"_id": self._key, "lock.token": token},
            {
                "$set": {
                    "lock": None,
                    "deployed_sha": deployed_sha,
                    "deployed_at": ensure_utc(deployed_at),
                    "last_failure": None,
                }
            },
        )
        return result.modified_count > 0

    async def record_failure(self, token: str, failure: PromotionFailure) -> bool:
        result = await self._state.update_one(
            {"_id": self._key, "lock.token": token},
            {"$set": {"lock": None, "last_failure": failure.model_dump()}},
        )
        return result.modified_count > 0

    async def get_deployment(self) -> DeploymentRecord:
        document = await self._get_document()
        return DeploymentRecord(
            deployed_sha=document.get("deployed_sha"),
            deployed_at=ensure_utc(document.get("deployed_at")),
        )

    async def get_last_failure(self) -> Optional[PromotionFailure]:
        document = await self._get_document()
        failure = document.get("last_failure")
        if not failure:
            return None
        failure = dict(failure)
        failure["failed_at"] = ensure_utc(failure.get("failed_at"))
        failure["lock_started_at"] = ensure_utc(failure.get("lock_started_at"))
        return PromotionFailure.model_validate(failure)

    async def reset_log(self) -> None:
        await self._state.update_one(
            {"_id": self._key},
            {"$set": {"log_lines": []}},
            upsert=True,
        )

    async def append_log_line(self, line: str, *, max_lines: int) -> None:
        await self._state.update_one(
            {"_id": self._key},
            {"$push": {"log_lines": {"$each": [line], "$slice": -max_lines}}},
            upsert=True,
        )

    async def get_log_lines(self, limit: Optional[int] = None) -> list[str]:
        document = await self._state.find_one({"_id": self._key}, {"log_lines": 1}) or {}
        lines = list(document.get("log_lines") or [])
        if limit is not None:
            return lines[-limit:]
        return lines
