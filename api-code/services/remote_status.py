from __future__ import annotations

import asyncio
import logging
from typing import Optional

from pydantic import ValidationError

from models import RemoteStatus

from .remote_gateway import (
    STATUS_PATH,
    TRANSPORT_ERRORS,
    transport_reason,
    executor_base_url,
    send_request,
)
from .trigger_signing import SIGNATURE_HEADER, TriggerSigner


logger = logging.getLogger("promote-console.poller")

SNIPPET_LENGTH = 120


class RemoteStatusPoller:
    """Reads the executor's promotion status; failures become ``RemoteStatus.error``."""

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

    async def fetch_remote_status(self) -> RemoteStatus:
        base = executor_base_url(self.webhook_url)
        if not base:
            return RemoteStatus.unavailable("Production webhook URL not configured")
        if not self.secret:
            return RemoteStatus.unavailable("Production webhook secret not configured")

        signer = TriggerSigner(self.secret, ttl_seconds=self.signature_ttl_seconds)
        headers = {
            "Accept": "application/json",
            "User-Agent": "promote-console",
            SIGNATURE_HEADER: signer.sign(b""),
        }
        try:
            reply = await asyncio.to_thread(
                send_request,
                f"{base}{STATUS_PATH}",
                method="GET",
                headers=headers,
                timeout=self.timeout,
            )
        except TRANSPORT_ERRORS as exc:
            reason = transport_reason(exc)
            logger.warning("Status API unreachable: %s", reason)
            return RemoteStatus.unavailable(f"Status API unavailable: {reason}")

        if reply.status == 404:
            return RemoteStatus.unavailable("Status API not found on production (404); the executor build may be older")

        if "application/json" not in reply.content_type.lower():
            text = reply.body.decode("utf-8", errors="replace")[:SNIPPET_LENGTH]
            snippet = " ".join(text.split())
            return RemoteStatus.unavailable(f"Status API returned non-JSON ({reply.status}). {snippet}".strip())

        payload = reply.json()
        if not 200 <= reply.status < 300:
            remote_error = payload.get("error") if isinstance(payload, dict) else None
            return RemoteStatus.unavailable(remote_error or f"Status API failed ({reply.status})")
        if not isinstance(payload, dict):
            return RemoteStatus.unavailable("Status API returned malformed JSON")

        try:
            return RemoteStatus.from_payload(payload)
        except ValidationError as exc:
            logger.warning("Status API payload rejected: %s", exc.errors()[:3])
            return RemoteStatus.unavailable("Status API returned an unexpected payload")
