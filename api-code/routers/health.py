from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from typing import Any, Dict, Tuple

from fastapi import APIRouter

from services import PromotionLockService


def build_health_router(lock_service: PromotionLockService, pm2_targets: Tuple[str, ...]) -> APIRouter:
    router = APIRouter()

    @router.get("/healthz")
    async def healthcheck() -> Dict[str, Any]:
        pm2_task = asyncio.create_task(_collect_pm2_states(pm2_targets))

        repository = lock_service.repository
        store_ok = await repository.ping()
        lock = await lock_service.current() if store_ok else None

        pm2_states = await pm2_task
        issues = []
        if not store_ok:
            issues.append(f"{type(repository).__name__} ping failed.")
        for name, status in pm2_states.items():
            if status not in {"online", "launching", "unavailable"}:
                issues.append(f"pm2:{name} is {status}.")

        return {
            "status": "healthy" if not issues else "degraded",
            "store": type(repository).__name__,
            "store_ok": store_ok,
            "promotion_locked": lock is not None,
            "lock_held_by": lock.held_by if lock else None,
            "lock_started_at": lock.started_at.isoformat() if lock else None,
            "pm2_processes": pm2_states,
            "issues": issues,
        }

    return router


async def _collect_pm2_states(targets: Tuple[str, ...]) -> Dict[str, str]:
    if not targets:
        return {}
    return await asyncio.to_thread(_read_pm2_states, targets)


def _read_pm2_states(targets: Tuple[str, ...]) -> Dict[str, str]:
    pm2_path = shutil.which("pm2")
    if not pm2_path:
        return {name: "unavailable" for name in targets}

    try:
        completed = subprocess.run(  # noqa: S603
            [pm2_path, "jlist"],
            capture_output=True,
            text=True,
            check=False,
            timeout=2,
        )
    except (OSError, subprocess.TimeoutExpired):
        return {name: "unknown" for name in targets}

    if completed.returncode != 0:
        return {name: "unknown" for name in targets}

    try:
        process_list = json.loads(completed.stdout or "[]")
    except json.JSONDecodeError:
        process_list = []

    states: Dict[str, str] = {}
    for name in targets:
        state = "missing"
        for proc in process_list:
            if proc.get("name") == name:
                state = proc.get("pm2_env", {}).get("status", "unknown")
                break
        states[name] = state
    return states
