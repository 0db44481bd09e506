"""
Stock Service — FastAPI エントリーポイント

在庫管理サービス。注文サービスから予約・確定・解放を受け付ける。
バックグラウンドで期限切れ予約を定期的に解放する。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from . import commands, event_store, queries, schema

DATABASE_URL = os.environ["DATABASE_URL"]
CLEANUP_INTERVAL_SECONDS = float(os.environ.get("CLEANUP_INTERVAL_SECONDS", "60"))
RUN_BACKGROUND_WORKERS = os.environ.get("RUN_BACKGROUND_WORKERS", "1") == "1"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)


async def run_cleanup(shutdown_event: asyncio.Event) -> None:
    while not shutdown_event.is_set():
        try:
            async with async_session() as session:
                await commands.cleanup_expired(session)
        except Exception:
            logger.exception("Reservation cleanup failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=CLEANUP_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    await schema.create_all(engine)
    shutdown_event = asyncio.Event()
    cleanup_task = asyncio.create_task(run_cleanup(shutdown_event)) if RUN_BACKGROUND_WORKERS else None
    yield
    shutdown_event.set()
    if cleanup_task:
        await cleanup_task
    await engine.dispose()


app = FastAPI(title="Stock Service", lifespan=lifespan)


@app.exception_handler(commands.StockError)
async def stock_error_handler(request: Request, exc: commands.StockError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "detail": exc.message, **exc.details},
    )


# ── Request Models ───────────────────────────────


class ReserveRequest(BaseModel):
    order_id: UUID
    sku: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    timeout_minutes: int = Field(default=commands.DEFAULT_TIMEOUT_MINUTES, gt=0)


class ReservationIdsRequest(BaseModel):
    reservation_ids: list[str]


class AdjustRequest(BaseModel):
    delta: int


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/reservations", status_code=201)
async def cmd_reserve(
    req: ReserveRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """在庫予約コマンド。同じ Idempotency-Key の再送は既存の予約を返す"""
    async with async_session() as session:
        reservation, _ = await commands.reserve(
            session,
            req.order_id,
            req.sku,
            req.quantity,
            idempotency_key or f"{req.order_id}:{req.sku}",
            req.timeout_minutes,
        )
        return reservation


@app.post("/commands/reservations/confirm")
async def cmd_confirm(req: ReservationIdsRequest):
    """予約確定コマンド（決済完了時）"""
    async with async_session() as session:
        return await commands.confirm(session, req.reservation_ids)


@app.post("/commands/reservations/release")
async def cmd_release(req: ReservationIdsRequest):
    """予約解放コマンド（補償トランザクション）"""
    async with async_session() as session:
        return await commands.release(session, req.reservation_ids)


@app.post("/commands/stock/{sku}")
async def cmd_adjust(sku: str, req: AdjustRequest):
    """在庫調整コマンド"""
    async with async_session() as session:
        return await commands.adjust_stock(session, sku, req.delta)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/stock/{sku}")
async def query_get_stock(sku: str):
    async with async_session() as session:
        stock = await queries.get_stock(session, sku)
        if not stock:
            raise HTTPException(404, "SKU not found")
        return stock


@app.get("/queries/stock/{sku}/movements")
async def query_movements(sku: str):
    async with async_session() as session:
        return await event_store.load_movements(session, sku)


@app.get("/queries/orders/{order_id}/reservations")
async def query_reservations(order_id: UUID):
    async with async_session() as session:
        return await queries.list_reservations(session, str(order_id))


@app.get("/health")
async def health():
    return {"status": "ok", "service": "stock-service"}
