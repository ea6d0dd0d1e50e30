from typing import List

from fastapi import APIRouter, Depends, Query

from stockledger.dependencies import get_lock_manager, get_stock_engine
from stockledger.schemas.stock import (
    ApplyBatchRequest,
    ApplyDeltaRequest,
    ApplyDeltaResponse,
    BatchResult,
    LedgerReport,
    StockLogRead,
    StockStatus,
)
from stockledger.services.lock_manager import StockLockManager
from stockledger.services.stock_engine import StockMutationEngine

router = APIRouter(prefix="/stock", tags=["stock"])

API_ACTOR = "api"


@router.post("/apply-delta", response_model=ApplyDeltaResponse)
async def apply_delta(
    request: ApplyDeltaRequest,
    engine: StockMutationEngine = Depends(get_stock_engine),
):
    """Manual stock change (receiving, damage, correction, ...)."""
    result = await engine.apply_delta(
        request.product_id,
        request.delta,
        reason=request.reason,
        change_type=request.change_type,
        actor=API_ACTOR,
        reference=request.reference,
    )
    return ApplyDeltaResponse(
        product_id=result.product_id,
        new_stock=result.new_stock,
        old_stock=result.old_stock,
        duplicate=result.duplicate,
    )


@router.post("/apply-batch", response_model=BatchResult)
async def apply_batch(
    request: ApplyBatchRequest,
    engine: StockMutationEngine = Depends(get_stock_engine),
):
    return await engine.apply_batch(request.deltas, actor=API_ACTOR, order_id=request.order_id)


@router.get("/history/{product_id}", response_model=List[StockLogRead])
async def stock_history(
    product_id: int,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    engine: StockMutationEngine = Depends(get_stock_engine),
):
    entries = await engine.get_stock_history(product_id, limit=limit, offset=offset)
    return [StockLogRead.model_validate(entry) for entry in entries]


@router.get("/status/{product_id}", response_model=StockStatus)
async def stock_status(product_id: int, engine: StockMutationEngine = Depends(get_stock_engine)):
    return await engine.get_stock_status(product_id)


@router.get("/verify/{product_id}", response_model=LedgerReport)
async def verify_ledger(product_id: int, engine: StockMutationEngine = Depends(get_stock_engine)):
    return await engine.verify_ledger(product_id)


@router.post("/locks/sweep")
async def sweep_locks(lock_manager: StockLockManager = Depends(get_lock_manager)):
    """Remove expired stock locks now instead of waiting for the scheduled sweep."""
    removed = await lock_manager.sweep_expired()
    return {"removed": removed}
