from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from domain import ExecutorNotConfigured, PromotionError
from models import RemoteStatus
from schemas import ErrorResponse, TriggerRequest, TriggerResponse
from services import SIGNATURE_HEADER, PromotionExecutor, TriggerSigner
from settings import Settings


logger = logging.getLogger("promote-console.webhooks")

_ERROR_RESPONSES = {
    401: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def _error_response(exc: PromotionError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def build_webhook_router(executor: PromotionExecutor, settings: Settings) -> APIRouter:
    router = APIRouter(prefix="/api/webhooks/promote-production", tags=["webhooks"])

    def signer() -> TriggerSigner:
        secret = (settings.promote_webhook_secret or "").strip()
        if not secret:
            raise ExecutorNotConfigured("PROMOTE_PROD_WEBHOOK_SECRET is not configured on this server")
        return TriggerSigner(secret, ttl_seconds=settings.signature_ttl_seconds)

    async def verified_body(request: Request) -> bytes:
        body = await request.body()
        signer().verify(request.headers.get(SIGNATURE_HEADER), body)
        return body

    @router.post(
        "",
        response_model=TriggerResponse,
        status_code=status.HTTP_202_ACCEPTED,
        responses={**_ERROR_RESPONSES, 422: {"model": ErrorResponse}},
        summary="Start a production promotion (signed control-plane call)",
    )
    async def trigger_promotion(request: Request, background_tasks: BackgroundTasks):
        try:
            body = await verified_body(request)
            payload = TriggerRequest.model_validate_json(body or b"{}")
            lock = await executor.accept(payload.promoted_by, payload.head_sha)
        except ValidationError:
            return JSONResponse(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                content={"error": "Invalid promotion request", "code": "invalid_request"},
            )
        except PromotionError as exc:
            if exc.status_code == status.HTTP_401_UNAUTHORIZED:
                logger.warning("Rejected promotion trigger from %s: %s", request.client.host if request.client else "?", exc)
            return _error_response(exc)

        background_tasks.add_task(executor.run, lock)
        return TriggerResponse(held_by=lock.held_by, started_at=lock.started_at, head_sha=lock.head_sha)

    @router.get(
        "/status",
        response_model=RemoteStatus,
        responses=_ERROR_RESPONSES,
        summary="Promotion lock, recent log lines and deployed SHA",
    )
    async def promotion_status(request: Request, response: Response):
        try:
            await verified_body(request)
        except PromotionError as exc:
            return _error_response(exc)
        response.headers["Cache-Control"] = "no-store"
        return await executor.status()

    return router
