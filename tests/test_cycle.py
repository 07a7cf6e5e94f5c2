"""Tests for the outcome resolution cycle end to end against an in-memory ledger."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pandas as pd
import pytest
from sqlmodel import Session, select

from signal_outcomes.database import engine
from signal_outcomes.engine import cycle
from signal_outcomes.engine.cycle import run_outcome_cycle, run_scheduled_cycle
from signal_outcomes.errors import CycleTimeout, LedgerConflict, PriceUnavailable
from signal_outcomes.models.cycle_log import CycleLog
from signal_outcomes.models.ledger_document import LedgerDocument
from signal_outcomes.schemas.signal import Call, SignalHistory
from signal_outcomes.services.ledger import DatabaseLedger, append_call

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _call(call_id: str, age: timedelta, direction="up", entry=90000.0, **kwargs) -> Call:
    return Call(
        id=call_id,
        created_at=NOW - age,
        entry_price=entry,
        direction=direction,
        confidence=0.7,
        **kwargs,
    )


async def _seed(ledger, calls: list[Call], unparsed: list | None = None) -> str:
    return await ledger.save(SignalHistory(signals=calls), None, unparsed=unparsed)


def _stored() -> LedgerDocument:
    with Session(engine) as session:
        return session.get(LedgerDocument, "signal-history")


def _cycle_logs() -> list[CycleLog]:
    with Session(engine) as session:
        return list(session.exec(select(CycleLog).order_by(CycleLog.id)).all())


# ---------------------------------------------------------------------------
# 1. Resolution and stats
# ---------------------------------------------------------------------------

class TestResolveCycle:
    @pytest.mark.asyncio
    async def test_resolves_due_calls_only(self, ledger, fake_oracle):
        await _seed(ledger, [
            _call("due-up", timedelta(hours=24, minutes=30)),
            _call("due-down", timedelta(hours=24, minutes=30), direction="down"),
            _call("fresh", timedelta(hours=2)),
        ])
        result = await run_outcome_cycle(oracle=fake_oracle(price=95000.0), ledger=ledger, now=NOW)

        assert result.checked == 2
        assert result.correct == 1
        assert result.saved is True
        assert sorted(result.resolved_ids) == ["due-down", "due-up"]

        snapshot = await ledger.load()
        by_id = {c.id: c for c in snapshot.history.signals}
        assert by_id["due-up"].correct is True
        assert by_id["due-up"].price_after_24h == 95000.0
        assert by_id["due-up"].resolution == "24h"
        assert by_id["due-down"].correct is False
        assert by_id["fresh"].is_pending
        assert snapshot.history.stats.total == 2
        assert snapshot.history.stats.accuracy_all == pytest.approx(50.0)
        assert snapshot.history.last_updated == NOW

    @pytest.mark.asyncio
    async def test_response_shape(self, ledger, fake_oracle):
        await _seed(ledger, [_call("due", timedelta(hours=25))])
        result = await run_outcome_cycle(oracle=fake_oracle(price=95000.0), ledger=ledger, now=NOW)
        payload = result.to_response()
        assert payload["success"] is True
        assert payload["checkedCount"] == 1
        assert payload["correctCount"] == 1
        assert payload["stats"]["accuracyAll"] == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_rerun_leaves_ledger_identical(self, ledger, fake_oracle):
        await _seed(ledger, [_call("due", timedelta(hours=25)), _call("fresh", timedelta(hours=1))])
        oracle = fake_oracle(price=95000.0)
        await run_outcome_cycle(oracle=oracle, ledger=ledger, now=NOW)
        before = _stored()

        again = await run_outcome_cycle(oracle=oracle, ledger=ledger, now=NOW)
        after = _stored()

        assert again.checked == 0
        assert again.saved is False
        assert after.etag == before.etag
        assert after.content == before.content

    @pytest.mark.asyncio
    async def test_resolved_calls_are_final(self, ledger, fake_oracle):
        settled = _call("settled", timedelta(days=3), checked=True, correct=True, resolved_price=95000.0)
        await _seed(ledger, [settled])
        await run_outcome_cycle(oracle=fake_oracle(price=50000.0), ledger=ledger, now=NOW)

        call = (await ledger.load()).history.signals[0]
        assert call.correct is True
        assert call.resolved_price == 95000.0

    @pytest.mark.asyncio
    async def test_retention_purges_and_stats_follow(self, ledger, fake_oracle):
        await _seed(ledger, [
            _call("ancient", timedelta(days=91), checked=True, correct=False),
            _call("recent", timedelta(days=10), checked=True, correct=True),
        ])
        result = await run_outcome_cycle(oracle=fake_oracle(), ledger=ledger, now=NOW)

        assert result.purged == 1
        snapshot = await ledger.load()
        assert [c.id for c in snapshot.history.signals] == ["recent"]
        assert snapshot.history.stats.accuracy_all == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_retention_reaches_malformed_records(self, ledger, fake_oracle):
        old_iso = {"id": "bad-old", "createdAt": (NOW - timedelta(days=200)).isoformat(), "direction": "flat"}
        old_epoch = {"id": "bad-epoch", "timestamp": int((NOW - timedelta(days=120)).timestamp() * 1000),
                     "direction": "flat"}
        recent = {"id": "bad-recent", "createdAt": (NOW - timedelta(days=10)).isoformat(), "direction": "flat"}
        undated = {"id": "bad-undated", "direction": "up"}
        await _seed(ledger, [_call("ancient", timedelta(days=91), checked=True, correct=True)],
                    unparsed=[old_iso, old_epoch, recent, undated])

        first = await run_outcome_cycle(oracle=fake_oracle(), ledger=ledger, now=NOW)
        second = await run_outcome_cycle(oracle=fake_oracle(), ledger=ledger, now=NOW)

        assert first.purged == 3
        assert second.purged == 0
        snapshot = await ledger.load()
        assert snapshot.history.signals == []
        assert snapshot.unparsed == [recent, undated]

    @pytest.mark.asyncio
    async def test_expired_pending_call_is_purged_not_judged(self, ledger, fake_oracle):
        await _seed(ledger, [_call("forgotten", timedelta(days=91))])
        result = await run_outcome_cycle(oracle=fake_oracle(price=95000.0), ledger=ledger, now=NOW)

        assert result.purged == 1
        assert result.checked == 0
        assert result.correct == 0
        assert result.resolved_ids == []
        assert (await ledger.load()).history.signals == []

    @pytest.mark.asyncio
    async def test_empty_ledger(self, ledger, fake_oracle):
        result = await run_outcome_cycle(oracle=fake_oracle(), ledger=ledger, now=NOW)
        assert result.checked == 0
        assert result.stats.total == 0


# ---------------------------------------------------------------------------
# 2. Path-dependent calls inside a cycle
# ---------------------------------------------------------------------------

class TestPathCalls:
    @pytest.mark.asyncio
    async def test_candles_fetched_once_from_oldest_path_call(self, ledger, fake_oracle):
        older = _call("older", timedelta(days=2), entry=100.0, target=110.0, stop_loss=98.0)
        newer = _call("newer", timedelta(hours=5), entry=100.0, target=105.0)
        await _seed(ledger, [older, newer])
        frame = pd.DataFrame({
            "open_time": pd.to_datetime([older.created_at + timedelta(hours=1)], utc=True),
            "open": [100.0], "high": [111.0], "low": [99.5], "close": [109.0],
        })
        oracle = fake_oracle(price=109.0, candles=frame)
        result = await run_outcome_cycle(oracle=oracle, ledger=ledger, now=NOW)

        assert oracle.candle_calls == 1
        assert oracle.candle_since == older.created_at
        assert result.checked == 1
        call = next(c for c in (await ledger.load()).history.signals if c.id == "older")
        assert call.resolution == "target_hit"
        assert call.resolved_price == 110.0

    @pytest.mark.asyncio
    async def test_no_candles_without_path_calls(self, ledger, fake_oracle):
        await _seed(ledger, [_call("plain", timedelta(hours=25))])
        oracle = fake_oracle(price=95000.0)
        await run_outcome_cycle(oracle=oracle, ledger=ledger, now=NOW)
        assert oracle.candle_calls == 0

    @pytest.mark.asyncio
    async def test_candle_failure_aborts_without_saving(self, ledger, fake_oracle):
        version = await _seed(ledger, [
            _call("plain", timedelta(hours=25)),
            _call("path", timedelta(days=1), entry=100.0, target=110.0),
        ])
        with pytest.raises(PriceUnavailable):
            await run_outcome_cycle(oracle=fake_oracle(candle_error=True), ledger=ledger, now=NOW)
        assert _stored().etag == version


# ---------------------------------------------------------------------------
# 3. Failures and isolation
# ---------------------------------------------------------------------------

class TestCycleFailures:
    @pytest.mark.asyncio
    async def test_price_unavailable_mutates_nothing(self, ledger, fake_oracle):
        version = await _seed(ledger, [_call("due", timedelta(hours=25))])
        with pytest.raises(PriceUnavailable):
            await run_outcome_cycle(oracle=fake_oracle(price_error=True), ledger=ledger, now=NOW)

        assert _stored().etag == version
        assert (await ledger.load()).history.signals[0].is_pending
        logs = _cycle_logs()
        assert logs[-1].status == "error"
        assert "PriceUnavailable" in logs[-1].message

    @pytest.mark.asyncio
    async def test_malformed_calls_are_isolated(self, ledger, fake_oracle):
        bad_record = {"id": "no-date", "direction": "up", "entryPrice": 1}
        await _seed(ledger, [
            _call("good", timedelta(hours=25)),
            _call("no-entry", timedelta(hours=25), entry=None),
        ], unparsed=[bad_record])
        result = await run_outcome_cycle(oracle=fake_oracle(price=95000.0), ledger=ledger, now=NOW)

        assert result.checked == 1
        assert result.skipped == 1
        snapshot = await ledger.load()
        by_id = {c.id: c for c in snapshot.history.signals}
        assert by_id["good"].correct is True
        assert by_id["no-entry"].is_pending
        assert snapshot.unparsed == [bad_record]

    @pytest.mark.asyncio
    async def test_conflict_reruns_against_fresh_load(self, fake_oracle):
        class RacingLedger(DatabaseLedger):
            raced = False

            async def save(self, history, expected_version, unparsed=None):
                if not self.raced:
                    self.raced = True
                    await append_call(DatabaseLedger(), _call("late", timedelta(hours=1)))
                return await super().save(history, expected_version, unparsed)

        ledger = RacingLedger()
        await DatabaseLedger().save(SignalHistory(signals=[_call("due", timedelta(hours=25))]), None)
        result = await run_outcome_cycle(oracle=fake_oracle(price=95000.0), ledger=ledger, now=NOW)

        assert result.attempts == 2
        assert result.checked == 1
        ids = {c.id for c in (await ledger.load()).history.signals}
        assert ids == {"due", "late"}

    @pytest.mark.asyncio
    async def test_conflict_attempts_exhausted(self, ledger, fake_oracle):
        await _seed(ledger, [_call("due", timedelta(hours=25))])

        async def always_conflict(history, expected_version, unparsed=None):
            raise LedgerConflict("busy")

        ledger.save = always_conflict
        with pytest.raises(LedgerConflict):
            await run_outcome_cycle(
                oracle=fake_oracle(price=95000.0), ledger=ledger, now=NOW, max_attempts=2,
            )

    @pytest.mark.asyncio
    async def test_timeout(self, ledger, fake_oracle):
        class SlowOracle(fake_oracle):
            async def current_price(self):
                await asyncio.sleep(1)
                return await super().current_price()

        with pytest.raises(CycleTimeout):
            await run_outcome_cycle(oracle=SlowOracle(), ledger=ledger, now=NOW, timeout=0.05)
        assert _stored() is None


# ---------------------------------------------------------------------------
# 4. Scheduled runs and cycle log
# ---------------------------------------------------------------------------

class TestScheduledCycle:
    @pytest.mark.asyncio
    async def test_success_is_logged(self, ledger, fake_oracle):
        await _seed(ledger, [_call("due", timedelta(hours=25))])
        await run_outcome_cycle(oracle=fake_oracle(price=95000.0), ledger=ledger, now=NOW, trigger="cli")
        log = _cycle_logs()[-1]
        assert log.status == "success"
        assert log.trigger == "cli"
        assert log.checked_count == 1
        assert log.price == 95000.0
        assert log.details == {"resolved": ["due"]}

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self):
        async with cycle._cycle_lock:
            assert await run_scheduled_cycle() is None
        log = _cycle_logs()[-1]
        assert log.status == "skipped"
        assert log.trigger == "scheduler"

    @pytest.mark.asyncio
    async def test_scheduled_errors_are_contained(self, fake_oracle):
        with patch.object(cycle, "build_oracle", return_value=fake_oracle(price_error=True)):
            assert await run_scheduled_cycle() is None
        assert _cycle_logs()[-1].status == "error"
