from __future__ import annotations

import asyncio
import http.client
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request

from pydantic import TypeAdapter, ValidationError

from domain import PromotionAlreadyRunning, PromotionTriggerFailed
from models import utc_now

from .trigger_signing import SIGNATURE_HEADER, TriggerSigner


logger = logging.getLogger("promote-console.gateway")

TRIGGER_PATH = "/api/webhooks/promote-production"
STATUS_PATH = "/api/webhooks/promote-production/status"
TRANSPORT_ERRORS = (OSError, http.client.HTTPException)

_TIMESTAMP = TypeAdapter(datetime)


@dataclass(frozen=True)
class HttpReply:
    status: int
    content_type: str
    body: bytes

    def json(self) -> Optional[Any]:
        try:
            return json.loads(self.body.decode("utf-8"))
        except ValueError:
            return None


@dataclass(frozen=True)
class TriggerAccepted:
    accepted_at: datetime
    message: Optional[str] = None
    started_at: Optional[datetime] = None
    payload: Dict[str, Any] = field(default_factory=dict)


def _executor_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return _TIMESTAMP.validate_python(value)
    except ValidationError:
        return None


def executor_base_url(webhook_url: Optional[str]) -> Optional[str]:
    """Scheme and host of the configured webhook URL; path and query are dropped."""
    if not webhook_url or not webhook_url.strip():
        return None
    parsed = urllib_parse.urlsplit(webhook_url.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def send_request(
    url: str,
    *,
    method: str,
    headers: Mapping[str, str],
    body: Optional[bytes] = None,
    timeout: float,
) -> HttpReply:
    """Blocking HTTP call returning the reply for any status code.

    Transport failures (refused connections, DNS errors, timeouts) propagate
    as ``OSError`` or ``http.client.HTTPException``.
    """
    request = urllib_request.Request(url, data=body, headers=dict(headers), method=method)
    try:
        with urllib_request.urlopen(request, timeout=timeout) as response:
            return HttpReply(
                status=response.status,
                content_type=response.headers.get("Content-Type", ""),
                body=response.read(),
            )
    except urllib_error.HTTPError as exc:
        try:
            error_body = exc.read()
        except OSError:
            error_body = b""
        content_type = exc.headers.get("Content-Type", "") if exc.headers else ""
        return HttpReply(status=exc.code, content_type=content_type, body=error_body)


def transport_reason(exc: BaseException) -> str:
    if isinstance(exc, urllib_error.URLError):
        return str(exc.reason)
    return str(exc) or exc.__class__.__name__


class RemoteExecutionGateway:
    """Starts promotions on the production executor over its signed webhook."""

    def __init__(
        self,
        webhook_url: Optional[str],
        secret: Optional[str],
        *,
        timeout: float = 10.0,
        signature_ttl_seconds: int = 60,
    ):
        self.webhook_url = webhook_url or ""
        self.secret = secret or ""
        self.timeout = timeout
        self.signature_ttl_seconds = signature_ttl_seconds

    async def trigger_promotion(self, promoted_by: str, head_sha: Optional[str] = None) -> TriggerAccepted:
        base = executor_base_url(self.webhook_url)
        if not base or not self.secret:
            raise PromotionTriggerFailed("Production webhook is not configured")

        body = json.dumps({"promotedBy": promoted_by, "headSha": head_sha}).encode("utf-8")
        signer = TriggerSigner(self.secret, ttl_seconds=self.signature_ttl_seconds)
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "promote-console",
            SIGNATURE_HEADER: signer.sign(body),
        }

        try:
            reply = await asyncio.to_thread(
                send_request,
                f"{base}{TRIGGER_PATH}",
                method="POST",
                headers=headers,
                body=body,
                timeout=self.timeout,
            )
        except TRANSPORT_ERRORS as exc:
            reason = transport_reason(exc)
            logger.warning("Production trigger failed to reach %s: %s", base, reason)
            raise PromotionTriggerFailed(f"Could not reach production server: {reason}") from exc

        payload = reply.json()
        remote_error = payload.get("error") if isinstance(payload, dict) else None

        if reply.status == 409:
            raise PromotionAlreadyRunning(remote_error or "Promotion already in progress")
        if not 200 <= reply.status < 300:
            if reply.status == 401:
                remote_error = remote_error or "Production rejected the trigger signature (check PROMOTE_PROD_WEBHOOK_SECRET)"
            logger.warning("Production trigger rejected with HTTP %s", reply.status)
            raise PromotionTriggerFailed(
                remote_error or f"Production webhook failed ({reply.status})",
                remote_status=reply.status,
            )
        if not isinstance(payload, dict):
            raise PromotionTriggerFailed(
                "Production webhook returned an unreadable response",
                remote_status=reply.status,
            )

        logger.info("Production accepted promotion requested by %s", promoted_by)
        return TriggerAccepted(
            accepted_at=utc_now(),
            message=payload.get("message"),
            started_at=_executor_timestamp(payload.get("startedAt")),
            payload=payload,
        )
