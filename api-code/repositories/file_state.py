from __future__ import annotations

import asyncio
import fcntl
import json
import os
import tempfile
from contextlib import contextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import ValidationError

from domain import LockHeld
from models import DeploymentRecord, PromotionFailure, PromotionLock, ensure_utc


LOCK_FILE = "promotion.lock"
MUTEX_FILE = "state.mutex"
LEDGER_FILE = "deployment.json"
FAILURE_FILE = "last_failure.json"
LOG_FILE = "promotion.log"


def _atomic_write(path: Path, text: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        os.write(fd, text.encode("utf-8"))
        os.close(fd)
        os.replace(tmp, path)
    except BaseException:
        with suppress(OSError):
            os.close(fd)
        with suppress(OSError):
            os.unlink(tmp)
        raise


def _load_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


class FilePromotionStateRepository:
    """File-backed ledger and lock for hosts without MongoDB.

    The lock file is created with ``O_CREAT | O_EXCL`` so only one creator
    wins; every read-check-delete sequence runs under an ``flock`` on a
    separate mutex file. Ledger writes go through ``os.replace``.
    """

    def __init__(self, state_dir: Path | str):
        self.state_dir = Path(state_dir)

    @property
    def lock_path(self) -> Path:
        return self.state_dir / LOCK_FILE

    async def ensure_indexes(self) -> None:
        await asyncio.to_thread(self.state_dir.mkdir, parents=True, exist_ok=True)

    async def ping(self) -> bool:
        return await asyncio.to_thread(lambda: self.state_dir.is_dir() and os.access(self.state_dir, os.W_OK))

    @contextmanager
    def _guard(self) -> Iterator[None]:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with open(self.state_dir / MUTEX_FILE, "a+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read_lock(self) -> Optional[PromotionLock]:
        if not self.lock_path.exists():
            return None
        try:
            lock = PromotionLock.model_validate(_load_json(self.lock_path))
        except ValidationError:
            # Half-written lock from a crashed writer: age it from the file itself.
            try:
                mtime = self.lock_path.stat().st_mtime
            except FileNotFoundError:
                return None
            return PromotionLock(
                held_by="unknown",
                started_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
                token="",
            )
        return lock.model_copy(update={"started_at": ensure_utc(lock.started_at)})

    def _acquire_sync(self, lock: PromotionLock) -> PromotionLock:
        with self._guard():
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError as exc:
                current = self._read_lock()
                raise LockHeld(
                    current.held_by if current else None,
                    current.started_at if current else None,
                ) from exc
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(lock.model_dump_json())
        return lock

    def _release_sync(self, token: str) -> bool:
        with self._guard():
            current = self._read_lock()
            if current is None or current.token != token:
                return False
            self.lock_path.unlink(missing_ok=True)
            return True

    def _expire_sync(self, older_than: datetime) -> Optional[PromotionLock]:
        with self._guard():
            current = self._read_lock()
            if current is None or ensure_utc(current.started_at) >= ensure_utc(older_than):
                return None
            self.lock_path.unlink(missing_ok=True)
            return current

    def _finish_sync(self, token: str, *, ledger: Optional[dict[str, Any]], failure: Optional[PromotionFailure]) -> bool:
        with self._guard():
            current = self._read_lock()
            if current is None or current.token != token:
                return False
            if ledger is not None:
                _atomic_write(self.state_dir / LEDGER_FILE, json.dumps(ledger))
                (self.state_dir / FAILURE_FILE).unlink(missing_ok=True)
            if failure is not None:
                _atomic_write(self.state_dir / FAILURE_FILE, failure.model_dump_json())
            self.lock_path.unlink(missing_ok=True)
            return True

    def _append_log_sync(self, line: str, max_lines: int) -> None:
        path = self.state_dir / LOG_FILE
        with self._guard():
            lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
            lines.append(line.rstrip("\n"))
            _atomic_write(path, "\n".join(lines[-max_lines:]) + "\n")

    async def acquire_lock(self, lock: PromotionLock) -> PromotionLock:
        return await asyncio.to_thread(self._acquire_sync, lock)

    async def get_lock(self) -> Optional[PromotionLock]:
        return await asyncio.to_thread(self._read_lock)

    async def release_lock(self, token: str) -> bool:
        return await asyncio.to_thread(self._release_sync, token)

    async def expire_lock(self, older_than: datetime) -> Optional[PromotionLock]:
        return await asyncio.to_thread(self._expire_sync, older_than)

    async def complete_promotion(self, token: str, deployed_sha: str, deployed_at: datetime) -> bool:
        ledger = {"deployed_sha": deployed_sha, "deployed_at": ensure_utc(deployed_at).isoformat()}
        return await asyncio.to_thread(self._finish_sync, token, ledger=ledger, failure=None)

    async def record_failure(self, token: str, failure: PromotionFailure) -> bool:
        return await asyncio.to_thread(self._finish_sync, token, ledger=None, failure=failure)

    async def get_deployment(self) -> DeploymentRecord:
        payload = await asyncio.to_thread(_load_json, self.state_dir / LEDGER_FILE)
        return DeploymentRecord.model_validate(payload)

    async def get_last_failure(self) -> Optional[PromotionFailure]:
        payload = await asyncio.to_thread(_load_json, self.state_dir / FAILURE_FILE)
        if not payload:
            return None
        return PromotionFailure.model_validate(payload)

    async def reset_log(self) -> None:
        def _reset() -> None:
            with self._guard():
                (self.state_dir / LOG_FILE).unlink(missing_ok=True)

        await asyncio.to_thread(_reset)

    async def append_log_line(self, line: str, *, max_lines: int) -> None:
        await asyncio.to_thread(self._append_log_sync, line, max_lines)

    async def get_log_lines(self, limit: Optional[int] = None) -> list[str]:
        path = self.state_dir / LOG_FILE

        def _read() -> list[str]:
            if not path.exists():
                return []
            return path.read_text(encoding="utf-8").splitlines()

        lines = await asyncio.to_thread(_read)
        if limit is not None:
            return lines[-limit:]
        return lines
