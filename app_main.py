from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware


PROJECT_ROOT = Path(__file__).resolve().parent
API_CODE_PATH = PROJECT_ROOT / "api-code"
if str(API_CODE_PATH) not in sys.path:
    sys.path.insert(0, str(API_CODE_PATH))

from env_loader import load_local_env  # noqa: E402
from repositories import (  # noqa: E402
    FilePromotionStateRepository,
    MongoPromotionStateRepository,
    PromotionStateRepository,
)
from routers import build_admin_router, build_health_router, build_webhook_router  # noqa: E402
from services import (  # noqa: E402
    CommitDiffCalculator,
    GitCommitHistoryProvider,
    PromotionExecutor,
    PromotionLockService,
    RemoteExecutionGateway,
    RemoteStatusPoller,
    StatusAggregator,
)
from settings import Settings, get_settings  # noqa: E402


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("promote-console")


def create_app(
    settings: Optional[Settings] = None,
    *,
    repository: Optional[PromotionStateRepository] = None,
    history: Optional[GitCommitHistoryProvider] = None,
) -> FastAPI:
    """Wire services and routers; without an explicit repository MongoDB is tried first."""
    settings = settings or get_settings()
    use_mongo = repository is None
    state_repository = repository if repository is not None else MongoPromotionStateRepository()
    history = history or GitCommitHistoryProvider(
        settings.promote_repo_path,
        timeout=settings.git_timeout_seconds,
        max_limit=settings.commit_history_limit,
    )

    lock_service = PromotionLockService(state_repository, max_age_seconds=settings.lock_max_age_seconds)
    executor = PromotionExecutor(
        state_repository,
        lock_service,
        history,
        repo_path=settings.promote_repo_path,
        script_command=settings.promote_script_command,
        job_timeout_seconds=settings.job_timeout_seconds,
        log_max_lines=settings.log_max_lines,
        dry_run=settings.promote_dry_run,
    )
    aggregator = StatusAggregator(
        settings,
        history=history,
        diff=CommitDiffCalculator(
            history,
            window=settings.commit_history_limit,
            unknown_baseline_cap=settings.unknown_baseline_cap,
        ),
        repository=state_repository,
        lock_service=lock_service,
        gateway=RemoteExecutionGateway(
            settings.promote_webhook_url,
            settings.promote_webhook_secret,
            timeout=settings.remote_timeout_seconds,
            signature_ttl_seconds=settings.signature_ttl_seconds,
        ),
        poller=RemoteStatusPoller(
            settings.promote_webhook_url,
            settings.promote_webhook_secret,
            timeout=settings.remote_timeout_seconds,
            signature_ttl_seconds=settings.signature_ttl_seconds,
        ),
    )

    application = FastAPI(
        title="Promote Console API",
        version="0.1.0",
        description="Staging-to-production promotion control plane and executor.",
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(build_admin_router(aggregator))
    application.include_router(build_webhook_router(executor, settings))
    application.include_router(build_health_router(lock_service, settings.pm2_targets))
    application.state.aggregator = aggregator
    application.state.executor = executor

    @application.on_event("startup")
    async def on_startup() -> None:
        current = lock_service.repository
        try:
            await current.ensure_indexes()
            logger.info("%s initialized (APP_ENV=%s).", type(current).__name__, settings.app_env)
            return
        except Exception as exc:  # pylint: disable=broad-except
            if not use_mongo:
                raise
            logger.warning(
                "MongoDB unavailable (%s); falling back to file store at %s.",
                exc,
                settings.promote_state_dir,
            )

        fallback = FilePromotionStateRepository(settings.promote_state_dir)
        await fallback.ensure_indexes()
        lock_service.repository = fallback
        executor.repository = fallback
        aggregator.repository = fallback

    return application


load_local_env()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app_main:app", host="0.0.0.0", port=9001, reload=True)
