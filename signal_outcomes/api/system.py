"""System API — health check, scheduler status, cycle logs."""

import math

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from signal_outcomes.database import get_session
from signal_outcomes.models.cycle_log import CycleLog
from signal_outcomes.api.deps import require_api_token

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(require_api_token)])
def scheduler_status():
    """Current scheduler state with job details."""
    from signal_outcomes.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.get("/logs", dependencies=[Depends(require_api_token)])
def cycle_logs(
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(CycleLog).order_by(CycleLog.timestamp.desc(), CycleLog.id.desc())
    if status is not None:
        stmt = stmt.where(CycleLog.status == status)
    stmt = stmt.offset(offset).limit(limit)
    rows = session.exec(stmt).all()
    # Replace inf/nan with None so JSON serialization doesn't blow up.
    for row in rows:
        if isinstance(row.price, float) and (math.isinf(row.price) or math.isnan(row.price)):
            row.price = None
    return rows
