# deal/api.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from auth.verifier import require_owner
from .errors import DealError
from .schema import (
    DecisionReq,
    DecisionResp,
    HistoryResp,
    OfferReq,
    OfferResp,
    OpenCaseReq,
    OpenCaseResp,
    StartReq,
    StartResp,
    StateResp,
)
from .service import DealService

logger = logging.getLogger("deal")

router = APIRouter(prefix="/deal")


def get_service(request: Request) -> DealService:
    return request.app.state.deal_service


# ====== START 開局 ======

@router.post("/start", response_model=StartResp)
def start(
    body: StartReq,
    owner_id: int = Depends(require_owner),
    svc: DealService = Depends(get_service),
) -> Dict[str, Any]:
    return svc.start(owner_id, body.buy_in, body.difficulty, body.banker_personality)


# ====== OPEN CASE 開箱 ======

@router.post("/open-case", response_model=OpenCaseResp)
def open_case(
    body: OpenCaseReq,
    owner_id: int = Depends(require_owner),
    svc: DealService = Depends(get_service),
) -> Dict[str, Any]:
    return svc.open_case(owner_id, body.round_id, body.case_number)


# ====== OFFER 銀行出價 ======

@router.post("/offer", response_model=OfferResp)
def offer(
    body: OfferReq,
    owner_id: int = Depends(require_owner),
    svc: DealService = Depends(get_service),
) -> Dict[str, Any]:
    return svc.request_offer(owner_id, body.round_id)


# ====== DECISION 成交 / 不成交 / 開自己的箱 ======

@router.post("/decision", response_model=DecisionResp, response_model_exclude_none=True)
def decision(
    body: DecisionReq,
    owner_id: int = Depends(require_owner),
    svc: DealService = Depends(get_service),
) -> Dict[str, Any]:
    return svc.decide(owner_id, body.round_id, body.decision)


# ====== STATE ======

@router.get("/state", response_model=StateResp)
def get_state(
    round_id: Optional[str] = Query(None, description="省略時回傳目前進行中的局"),
    owner_id: int = Depends(require_owner),
    svc: DealService = Depends(get_service),
) -> Dict[str, Any]:
    return svc.get_state(owner_id, round_id)


# ====== HISTORY（已結束的局） ======

@router.get("/history", response_model=HistoryResp)
def history(
    limit: int = Query(10, ge=1, le=50),
    owner_id: int = Depends(require_owner),
    svc: DealService = Depends(get_service),
) -> Dict[str, Any]:
    return {"items": svc.history(owner_id, limit)}


# ====== 錯誤對應 ======

def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DealError)
    async def _deal_error(request: Request, exc: DealError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("%s %s -> %s %s: %s (round=%s owner=%s)", request.method, request.url.path,
            exc.status_code, exc.code, exc.message, exc.round_id, exc.owner_id)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        logger.warning("%s %s -> 400 invalid body: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=400, content={"detail": "invalid request", "code": "VALIDATION_ERROR"})

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("%s %s -> 500", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error", "code": "INTERNAL_ERROR"})
