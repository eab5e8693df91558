from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional


class PromotionError(RuntimeError):
    """Base class for errors surfaced by the promotion subsystem.

    ``code`` is a stable machine-readable identifier and ``status_code`` the
    HTTP status routers use when the error reaches an API boundary.
    """

    code = "promotion_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class PromotionNotConfigured(PromotionError):
    """Raised when promote() is called without a webhook URL or secret."""

    status_code = 400

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class PromotionAlreadyRunning(PromotionError):
    code = "promotion_in_progress"
    status_code = 409

    def __init__(self, message: str = "Promotion already in progress") -> None:
        super().__init__(message)


class LockHeld(PromotionAlreadyRunning):
    """Raised by the lock store when another holder owns the promotion lock."""

    def __init__(self, holder: Optional[str], started_at: Optional[datetime]) -> None:
        super().__init__("Promotion already in progress")
        self.holder = holder
        self.started_at = started_at

    def to_payload(self) -> dict[str, str]:
        payload = super().to_payload()
        if self.holder:
            payload["heldBy"] = self.holder
        if self.started_at:
            payload["startedAt"] = self.started_at.isoformat()
        return payload


class PromotionTriggerFailed(PromotionError):
    code = "trigger_failed"
    status_code = 502

    def __init__(self, reason: str, *, remote_status: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.remote_status = remote_status


class InvalidTriggerSignature(PromotionError):
    code = "invalid_signature"
    status_code = 401


class ExecutorNotConfigured(PromotionError):
    code = "executor_not_configured"
    status_code = 503


class VcsUnavailable(PromotionError):
    code = "vcs_unavailable"
    status_code = 503


class CommandExecutionError(PromotionError):
    """Raised when a subprocess command fails or times out."""

    code = "command_failed"

    def __init__(
        self,
        command: list[str],
        cwd: Optional[Path],
        returncode: Optional[int],
        stdout: str,
        stderr: str,
        *,
        timed_out: bool = False,
    ) -> None:
        self.command = command
        self.cwd = cwd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out
        if timed_out:
            detail = "timed out"
        else:
            detail = stderr or stdout or f"return code {returncode}"
        super().__init__(f"command failed ({' '.join(command)}): {detail}")
