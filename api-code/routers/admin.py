from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse

from domain import PromotionError
from schemas import AdminStatus, ErrorResponse, PromoteRequest, PromoteResponse
from services import StatusAggregator


def build_admin_router(aggregator: StatusAggregator) -> APIRouter:
    router = APIRouter(prefix="/api/admin/staging", tags=["admin"])

    @router.get(
        "/status",
        response_model=AdminStatus,
        summary="Branch, pending commits and production promotion state",
    )
    async def get_status(response: Response) -> AdminStatus:
        response.headers["Cache-Control"] = "no-store"
        return await aggregator.get_status()

    @router.post(
        "/promote",
        response_model=PromoteResponse,
        status_code=status.HTTP_202_ACCEPTED,
        responses={
            400: {"model": ErrorResponse},
            409: {"model": ErrorResponse},
            502: {"model": ErrorResponse},
        },
        summary="Ask production to promote the current HEAD",
    )
    async def promote(payload: Optional[PromoteRequest] = None):
        actor = payload.promoted_by if payload else None
        try:
            return await aggregator.promote(actor)
        except PromotionError as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_payload(),
                headers={"Cache-Control": "no-store"},
            )

    return router
