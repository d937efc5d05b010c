"""
FastAPI service for zen mode - enrollment, order reads and taker fulfillment.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from .config import get_settings
from .engine import ZenEngine, build_engine
from .errors import (
    DataError,
    InvalidStateError,
    OrderNotFoundError,
    TransientExternalError,
)
from .schemas import ActivationResult, FulfillmentResult, Order, OrderFilter, OrderStatus

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format='%(asctime)s [ZEN] %(levelname)s %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("zen_trader")

_engine: Optional[ZenEngine] = None


def get_engine() -> ZenEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Zen engine not initialized")
    return _engine


def set_engine(engine: Optional[ZenEngine]) -> None:
    global _engine
    _engine = engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine from settings and resume monitoring."""
    engine = build_engine(get_settings())
    set_engine(engine)
    await engine.start()
    try:
        yield
    finally:
        await engine.shutdown()
        set_engine(None)


app = FastAPI(title="Zen Trader", lifespan=lifespan)


class ActivateRequest(BaseModel):
    user_address: str = Field(..., min_length=1)
    preferences: dict[str, Any]


class DeactivateRequest(BaseModel):
    user_address: str = Field(..., min_length=1)


@app.get("/health")
async def health() -> dict[str, Any]:
    engine = get_engine()
    return {"status": "ok", **engine.health()}


@app.post("/zen-mode/activate", response_model=ActivationResult)
async def activate(req: ActivateRequest) -> ActivationResult:
    try:
        return await get_engine().activate(req.user_address, req.preferences)
    except DataError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except TransientExternalError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.post("/zen-mode/deactivate", response_model=ActivationResult)
async def deactivate(req: DeactivateRequest) -> ActivationResult:
    try:
        return await get_engine().deactivate(req.user_address)
    except TransientExternalError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/orders", response_model=list[Order])
async def list_orders(
    user_address: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[Order]:
    order_filter = OrderFilter(user_address=user_address, status=status, limit=limit)
    try:
        return await get_engine().list_orders(order_filter)
    except TransientExternalError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: str) -> Order:
    try:
        return await get_engine().get_order(order_id)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TransientExternalError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.post("/orders/{order_id}/fulfill", response_model=FulfillmentResult)
async def fulfill_order(order_id: str) -> FulfillmentResult:
    try:
        return await get_engine().fulfill(order_id)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransientExternalError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/activity/decisions")
async def recent_decisions(limit: int = Query(default=20, ge=1, le=500)) -> list[dict]:
    engine = get_engine()
    if engine.journal is None:
        return []
    return engine.journal.get_recent_decisions(limit)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().service_port)
