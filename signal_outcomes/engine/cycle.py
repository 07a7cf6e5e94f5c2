"""Outcome resolution cycle.

This is the function APScheduler calls on each interval. It orchestrates:
price sample → ledger load → retention → candle fetch → resolve → stats → ledger save.

A cycle is all-or-nothing: any oracle or ledger failure aborts it before
the save, and the save itself only lands if the ledger version is unchanged.
On a version conflict the whole cycle is rerun against a fresh load.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from signal_outcomes.config import settings
from signal_outcomes.database import engine
from signal_outcomes.engine.policies import MarketSnapshot
from signal_outcomes.engine.resolver import needs_candles, resolve_pending
from signal_outcomes.engine.retention import apply_retention, apply_retention_raw
from signal_outcomes.engine.stats import compute_stats
from signal_outcomes.errors import CycleTimeout, LedgerConflict, OutcomeError
from signal_outcomes.models.cycle_log import CycleLog
from signal_outcomes.schemas.signal import StatsSnapshot
from signal_outcomes.services.ledger import LedgerStore, build_ledger
from signal_outcomes.services.price_oracle import PriceCache, PriceOracle

logger = logging.getLogger(__name__)
_cycle_lock = asyncio.Lock()


@dataclass
class CycleResult:
    checked: int
    correct: int
    skipped: int
    purged: int
    saved: bool
    attempts: int
    price: float
    price_source: str
    stats: StatsSnapshot
    resolved_ids: list[str] = field(default_factory=list)

    def to_response(self) -> dict:
        return {
            "success": True,
            "checkedCount": self.checked,
            "correctCount": self.correct,
            "skippedCount": self.skipped,
            "purgedCount": self.purged,
            "saved": self.saved,
            "price": self.price,
            "priceSource": self.price_source,
            "stats": self.stats.to_json(),
        }


def build_oracle(price_cache: PriceCache | None = None) -> PriceOracle:
    """Create a PriceOracle from settings."""
    return PriceOracle(
        symbol=settings.symbol,
        cache=price_cache,
        timeout=settings.http_timeout_seconds,
        candle_interval=settings.candle_interval,
    )


async def run_scheduled_cycle(price_cache: PriceCache | None = None):
    """Run one cycle from the scheduler, skipping if a prior cycle is still in-flight."""
    if _cycle_lock.locked():
        logger.warning("[outcomes] Skipping overlapping cycle")
        _log_cycle(
            "skipped",
            trigger="scheduler",
            message="Skipped cycle because previous run is still in progress",
        )
        return None

    try:
        return await run_outcome_cycle(price_cache=price_cache, trigger="scheduler")
    except OutcomeError:
        # Already logged and recorded; the next tick retries from scratch
        return None


async def run_outcome_cycle(
    oracle: PriceOracle | None = None,
    ledger: LedgerStore | None = None,
    now: datetime | None = None,
    price_cache: PriceCache | None = None,
    trigger: str = "api",
    timeout: float | None = None,
    max_attempts: int | None = None,
) -> CycleResult:
    """Run one full cycle, retrying on ledger conflicts.

    Raises PriceUnavailable, LedgerReadFailure, LedgerWriteFailure,
    LedgerConflict (attempts exhausted) or CycleTimeout. Nothing is saved
    when it raises.
    """
    oracle = oracle or build_oracle(price_cache)
    ledger = ledger or build_ledger()
    timeout = timeout if timeout is not None else settings.cycle_timeout_seconds
    max_attempts = max_attempts or settings.ledger_conflict_retries

    async with _cycle_lock:
        logger.info(f"[outcomes] Starting cycle ({trigger})")
        try:
            result = await asyncio.wait_for(
                _run_with_retries(oracle, ledger, now, max_attempts),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = CycleTimeout(f"Cycle exceeded {timeout:.0f}s timeout")
            logger.error(f"[outcomes] {error}")
            _log_cycle("error", trigger=trigger, message=str(error))
            raise error from None
        except OutcomeError as e:
            logger.error(f"[outcomes] Cycle failed: {type(e).__name__}: {e}")
            _log_cycle("error", trigger=trigger, message=f"{type(e).__name__}: {e}")
            raise

    logger.info(
        f"[outcomes] Cycle done: checked={result.checked} correct={result.correct} "
        f"skipped={result.skipped} purged={result.purged} saved={result.saved} "
        f"accuracy={result.stats.accuracy_all:.1f}% streak={result.stats.streak_current}"
    )
    _log_cycle("success", trigger=trigger, result=result)
    return result


async def _run_with_retries(
    oracle: PriceOracle,
    ledger: LedgerStore,
    now: datetime | None,
    max_attempts: int,
) -> CycleResult:
    for attempt in range(1, max_attempts + 1):
        try:
            return await _run_cycle_once(oracle, ledger, now or datetime.now(timezone.utc), attempt)
        except LedgerConflict as e:
            logger.warning(f"[outcomes] Ledger conflict on attempt {attempt}/{max_attempts}: {e}")
    raise LedgerConflict(f"Ledger kept changing underneath the cycle ({max_attempts} attempts)")


async def _run_cycle_once(
    oracle: PriceOracle,
    ledger: LedgerStore,
    now: datetime,
    attempt: int,
) -> CycleResult:
    """Execute one cycle.

    Steps:
    1. Sample the current price (one sample for every call)
    2. Load the ledger
    3. Purge calls past the retention window, malformed records included
    4. Fetch one candle snapshot if any pending call is path-dependent
    5. Resolve the remaining pending calls
    6. Recompute stats and save if anything changed
    """
    sample = await oracle.current_price()
    snapshot = await ledger.load()
    history = snapshot.history

    # Purge first so calls about to be dropped are never judged
    kept, purged = apply_retention(history.signals, now)
    unparsed, purged_raw = apply_retention_raw(snapshot.unparsed, now)
    purged_count = len(purged) + len(purged_raw)

    candles = None
    path_calls = [c for c in kept if needs_candles(c)]
    if path_calls:
        candles = await oracle.candles(min(c.created_at for c in path_calls))

    market = MarketSnapshot(now=now, price=sample.price, source=sample.source, candles=candles)
    report = resolve_pending(kept, market)
    stats = compute_stats(kept, now)

    changed = report.checked > 0 or purged_count > 0 or not stats.same_figures(history.stats)
    if changed:
        history.signals = kept
        history.stats = stats
        history.last_updated = now
        await ledger.save(history, snapshot.version, unparsed)
    else:
        logger.info("[outcomes] Nothing to resolve or purge; ledger left untouched")

    return CycleResult(
        checked=report.checked,
        correct=report.correct,
        skipped=report.skipped,
        purged=purged_count,
        saved=changed,
        attempts=attempt,
        price=sample.price,
        price_source=sample.source,
        stats=stats,
        resolved_ids=report.resolved_ids,
    )


def _log_cycle(
    status: str,
    trigger: str,
    message: str | None = None,
    result: CycleResult | None = None,
):
    """Write a CycleLog entry."""
    try:
        with Session(engine) as session:
            log = CycleLog(
                status=status,
                trigger=trigger,
                message=message,
                checked_count=result.checked if result else 0,
                correct_count=result.correct if result else 0,
                skipped_count=result.skipped if result else 0,
                purged_count=result.purged if result else 0,
                saved=result.saved if result else False,
                attempts=result.attempts if result else 0,
                price=result.price if result else None,
                price_source=result.price_source if result else None,
                details={"resolved": result.resolved_ids} if result and result.resolved_ids else None,
            )
            session.add(log)
            session.commit()
    except SQLAlchemyError as e:
        logger.warning(f"Could not record cycle log: {e}")
