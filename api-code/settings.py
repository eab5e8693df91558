from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, model_validator


LOCK_CEILING_MARGIN_SECONDS = 60


class Settings(BaseModel):
    """Runtime configuration resolved from environment variables."""

    app_env: str = Field(
        default="staging",
        alias="APP_ENV",
        description="Environment identity shown in the admin view (staging or production).",
    )
    promote_webhook_url: Optional[str] = Field(
        default=None,
        alias="PROMOTE_PROD_WEBHOOK_URL",
        description="Any URL on the production server; only scheme and host are used.",
    )
    promote_webhook_secret: Optional[str] = Field(
        default=None,
        alias="PROMOTE_PROD_WEBHOOK_SECRET",
        description="Shared secret used to sign and verify promotion webhook calls.",
    )
    promote_repo_path: str = Field(
        default="/var/www/pushlog",
        alias="PROMOTE_REPO_PATH",
        description="Git checkout whose history is listed and which the promotion script builds.",
    )
    promote_script_command: str = Field(
        default="bash deploy-production.sh",
        alias="PROMOTE_SCRIPT_COMMAND",
        description="Build/restart command executed by the production executor.",
    )
    promote_state_dir: str = Field(
        default="/var/lib/promote-console",
        alias="PROMOTE_STATE_DIR",
        description="Directory for the file-backed ledger/lock when MongoDB is unavailable.",
    )
    promote_dry_run: bool = Field(
        default=False,
        alias="PROMOTE_DRY_RUN",
        description="When true, the promotion command is logged but not executed.",
    )
    lock_max_age_seconds: int = Field(
        default=2100,
        alias="PROMOTE_LOCK_MAX_AGE_SECONDS",
        description="Age after which a promotion lock is treated as abandoned; must outlive the job timeout.",
    )
    job_timeout_seconds: int = Field(
        default=1800,
        alias="PROMOTE_JOB_TIMEOUT_SECONDS",
        description="Hard ceiling for one run of the promotion command.",
    )
    local_intent_ttl_seconds: int = Field(
        default=120,
        alias="PROMOTE_LOCAL_TTL_SECONDS",
        description="How long a local trigger counts as running without remote confirmation.",
    )
    log_max_lines: int = Field(
        default=200,
        alias="PROMOTE_LOG_MAX_LINES",
        description="Number of promotion log lines retained by the executor.",
    )
    signature_ttl_seconds: int = Field(
        default=60,
        alias="PROMOTE_SIGNATURE_TTL_SECONDS",
        description="Validity window of a signed webhook call.",
    )
    remote_timeout_seconds: float = Field(
        default=10.0,
        alias="REMOTE_TIMEOUT_SECONDS",
        description="Timeout for each call to the production server.",
    )
    source_timeout_seconds: float = Field(
        default=15.0,
        alias="SOURCE_TIMEOUT_SECONDS",
        description="Timeout for each sub-source gathered by the status view.",
    )
    git_timeout_seconds: float = Field(
        default=10.0,
        alias="GIT_TIMEOUT_SECONDS",
        description="Timeout for each git subprocess.",
    )
    commit_history_limit: int = Field(
        default=200,
        alias="COMMIT_HISTORY_LIMIT",
        description="Maximum number of commits walked when computing pending commits.",
    )
    recent_commits_limit: int = Field(
        default=20,
        alias="RECENT_COMMITS_LIMIT",
        description="Number of recent commits returned by the status view.",
    )
    unknown_baseline_cap: int = Field(
        default=50,
        alias="UNKNOWN_BASELINE_CAP",
        description="Commits listed as pending when production has never been promoted.",
    )
    poll_fast_seconds: int = Field(
        default=3,
        alias="POLL_FAST_SECONDS",
        description="Recommended status poll interval while a promotion runs.",
    )
    poll_slow_seconds: int = Field(
        default=10,
        alias="POLL_SLOW_SECONDS",
        description="Recommended status poll interval otherwise.",
    )
    pm2_process_names: str = Field(
        default="pushlog-prod",
        alias="PM2_PROCESS_NAMES",
        description="Comma-separated PM2 processes reported by /healthz.",
    )
    mongodb_uri: str = Field(
        default="mongodb://127.0.0.1:27017",
        alias="MONGODB_URI",
        description="MongoDB connection string",
    )
    mongodb_db_name: str = Field(
        default="promote_console",
        alias="MONGODB_DB_NAME",
        description="MongoDB database name",
    )

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _lock_outlives_job(self) -> "Settings":
        if self.lock_max_age_seconds < self.job_timeout_seconds + LOCK_CEILING_MARGIN_SECONDS:
            raise ValueError(
                "PROMOTE_LOCK_MAX_AGE_SECONDS must exceed PROMOTE_JOB_TIMEOUT_SECONDS by at least "
                f"{LOCK_CEILING_MARGIN_SECONDS}s"
            )
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        return cls.model_validate(os.environ)

    @property
    def webhook_url_configured(self) -> bool:
        return bool((self.promote_webhook_url or "").strip())

    @property
    def webhook_secret_configured(self) -> bool:
        return bool((self.promote_webhook_secret or "").strip())

    @property
    def promote_available(self) -> bool:
        return self.webhook_url_configured and self.webhook_secret_configured

    @property
    def pm2_targets(self) -> tuple[str, ...]:
        return tuple(name.strip() for name in self.pm2_process_names.split(",") if name.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance built from environment variables."""
    return Settings.from_env()
