"""Outcomes API — run a resolution cycle, read stats, list and record calls."""

import logging
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from signal_outcomes.api.deps import get_ledger, get_oracle, require_api_token
from signal_outcomes.config import settings
from signal_outcomes.engine.cycle import run_outcome_cycle
from signal_outcomes.errors import DuplicateCall, LedgerReadFailure, OutcomeError
from signal_outcomes.schemas.signal import CallCreate
from signal_outcomes.services.ledger import LedgerStore, append_call
from signal_outcomes.services.price_oracle import PriceOracle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/outcomes", tags=["outcomes"], dependencies=[Depends(require_api_token)])

# Bare path kept for schedulers that call the legacy endpoint
resolve_router = APIRouter(tags=["outcomes"], dependencies=[Depends(require_api_token)])


@router.post("/resolve")
@resolve_router.post("/resolve-outcomes")
async def resolve_outcomes(
    oracle: PriceOracle = Depends(get_oracle),
    ledger: LedgerStore = Depends(get_ledger),
):
    """Run one resolution cycle. 500 if prices or the ledger are unreachable."""
    try:
        result = await run_outcome_cycle(oracle=oracle, ledger=ledger, trigger="api")
    except OutcomeError as e:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": f"{type(e).__name__}: {e}"},
        )
    return result.to_response()


@router.get("/stats")
async def get_stats(ledger: LedgerStore = Depends(get_ledger)):
    """Statistics as of the last completed cycle."""
    try:
        snapshot = await ledger.load()
    except LedgerReadFailure as e:
        raise HTTPException(status_code=500, detail=str(e))
    history = snapshot.history
    return {
        "lastUpdated": history.last_updated.isoformat() if history.last_updated else None,
        "stats": history.stats.to_json(),
    }


@router.get("/signals")
async def list_signals(
    status_filter: Literal["pending", "checked"] | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=1000),
    ledger: LedgerStore = Depends(get_ledger),
):
    """Calls in the ledger, most recent first."""
    try:
        snapshot = await ledger.load()
    except LedgerReadFailure as e:
        raise HTTPException(status_code=500, detail=str(e))

    calls = sorted(snapshot.history.signals, key=lambda c: c.created_at, reverse=True)
    if status_filter == "pending":
        calls = [c for c in calls if c.is_pending]
    elif status_filter == "checked":
        calls = [c for c in calls if c.checked]
    return [c.to_json() for c in calls[:limit]]


@router.post("/signals", status_code=status.HTTP_201_CREATED)
async def record_signal(body: CallCreate, ledger: LedgerStore = Depends(get_ledger)):
    """Record a new pending call."""
    call = body.to_call(datetime.now(timezone.utc))
    try:
        await append_call(ledger, call, max_attempts=settings.ledger_conflict_retries)
    except DuplicateCall as e:
        raise HTTPException(status_code=409, detail=str(e))
    except OutcomeError as e:
        logger.error(f"Failed to record call {call.id}: {e}")
        raise HTTPException(status_code=500, detail=f"{type(e).__name__}: {e}")
    return call.to_json()
