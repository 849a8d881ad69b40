import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from auth.verifier import JwtVerifier
from deal.api import register_error_handlers, router as deal_router
from deal.audit import PgAuditSink
from deal.ledger import PgLedger
from deal.service import DealService
from deal.sql import ensure_schema
from deal.store import PgRoundStore
from util.settings import load_settings

# ===== 基本設定 =====
APP_NAME = "Deal Backend"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("app")

# 缺少 SECRET_KEY / FAIRNESS_SECRET 直接啟動失敗；DATABASE_URL 在建表時檢查
settings = load_settings()


def build_service() -> DealService:
    timeout = settings.ledger_timeout_seconds
    return DealService(
        store=PgRoundStore(claim_ttl=settings.deal_claim_ttl, timeout=timeout),
        ledger=PgLedger(timeout=timeout),
        audit=PgAuditSink(timeout=timeout),
        fairness_secret=settings.fairness_secret,
        max_completed=settings.deal_max_completed,
        ledger_attempts=settings.ledger_max_attempts,
        ledger_backoff=settings.ledger_backoff_seconds,
        tz=settings.timezone,
    )


async def settlement_loop(svc: DealService):
    # 補派彩、補稽核紀錄，再清理舊局；出錯只記錄，不中斷循環
    while True:
        await asyncio.sleep(settings.deal_settle_interval)
        try:
            settled = await asyncio.to_thread(svc.settle_pending_credits)
            if settled:
                logger.info("settled %d pending payouts", settled)
            written = await asyncio.to_thread(svc.settle_pending_audits)
            if written:
                logger.info("wrote %d pending audit records", written)
            await asyncio.to_thread(svc.cleanup)
        except Exception:
            logger.exception("settlement loop error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_schema()
    app.state.deal_service = build_service()
    app.state.verifier = JwtVerifier(settings.secret_key)
    task = asyncio.create_task(settlement_loop(app.state.deal_service))
    try:
        yield
    finally:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info("Stop Server")


# ===== FastAPI =====
app = FastAPI(title=APP_NAME, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)
app.include_router(deal_router)


@app.get("/healthz")
def healthz():
    return {"ok": True}
