"""Resolution policies: decide whether a pending call is now right or wrong.

Pure computation, no I/O. Each policy looks at one call plus the cycle's
market snapshot and returns a Resolution, or None while the call stays
pending.

  - PointSamplePolicy: compare the entry price to one price ~24h later.
  - PathDependentPolicy: walk the candles since the call and see whether
    the stop-loss or the target was touched first.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

import pandas as pd

from signal_outcomes.errors import MalformedCall
from signal_outcomes.schemas.signal import Call
from signal_outcomes.utils.constants import (
    CATCH_UP_AFTER,
    DEFAULT_STOP_PCT,
    GRACE_PERIOD,
    NEUTRAL_TOLERANCE_PCT,
    REASON_24H,
    REASON_CATCH_UP,
    REASON_EXPIRED,
    REASON_STOP_HIT,
    REASON_TARGET_HIT,
    SAMPLE_HORIZON,
)


@dataclass
class MarketSnapshot:
    """Market data shared by every call judged in one cycle."""
    now: datetime
    price: float
    source: str = ""
    candles: pd.DataFrame | None = None  # open_time, open, high, low, close; ascending


@dataclass
class Resolution:
    correct: bool
    price: float  # price the verdict was based on
    reason: str  # one of the REASON_* codes
    price_after_24h: float | None = None


def directional_verdict(direction: str, entry_price: float, price: float) -> bool:
    """Up is right if price rose, down if it fell, neutral if it moved less than 1%."""
    change = price - entry_price
    if direction == "up":
        return change > 0
    if direction == "down":
        return change < 0
    return abs(change / entry_price * 100) < NEUTRAL_TOLERANCE_PCT


def default_stop_loss(direction: str, entry_price: float) -> float:
    """2% against the call."""
    if direction == "up":
        return entry_price * (1 - DEFAULT_STOP_PCT / 100)
    return entry_price * (1 + DEFAULT_STOP_PCT / 100)


def _require_entry_price(call: Call) -> float:
    if call.entry_price is None or call.entry_price <= 0:
        raise MalformedCall(call.id, "missing or non-positive entryPrice")
    return call.entry_price


class ResolutionPolicy(ABC):
    name: str = ""

    @abstractmethod
    def evaluate(self, call: Call, market: MarketSnapshot) -> Resolution | None:
        """Return the verdict for a pending call, or None if it should stay pending.

        Raises MalformedCall when the call lacks what this policy needs.
        """


class PointSamplePolicy(ResolutionPolicy):
    """Judge a call against the price sampled ~24h after it was made.

    Calls older than 25h that were never judged (a missed cycle) are caught
    up using the current price as a stand-in for the 24h price.
    """

    name = "point_sample"

    def evaluate(self, call: Call, market: MarketSnapshot) -> Resolution | None:
        entry_price = _require_entry_price(call)
        age = market.now - call.created_at
        if age < SAMPLE_HORIZON:
            return None

        reason = REASON_24H if age <= CATCH_UP_AFTER else REASON_CATCH_UP
        return Resolution(
            correct=directional_verdict(call.direction, entry_price, market.price),
            price=market.price,
            reason=reason,
            price_after_24h=market.price,
        )


class PathDependentPolicy(ResolutionPolicy):
    """Judge a call by whether its stop-loss or target was touched first.

    Within a single candle the stop is checked before the target: the wick
    order is unknown, so a candle that spans both counts as a loss. Without
    a touch the call stays pending for 7 days, then is settled against the
    current price.
    """

    name = "path_dependent"

    def evaluate(self, call: Call, market: MarketSnapshot) -> Resolution | None:
        entry_price = _require_entry_price(call)
        if call.direction == "neutral":
            raise MalformedCall(call.id, "neutral calls have no stop or target to touch")
        if market.candles is None:
            raise MalformedCall(call.id, "no candle history available for a path-dependent call")

        stop_loss = call.stop_loss if call.stop_loss is not None else default_stop_loss(call.direction, entry_price)
        touch = self._first_touch(call, market.candles, stop_loss)
        if touch is not None:
            return touch

        age = market.now - call.created_at
        if age <= GRACE_PERIOD:
            return None

        return Resolution(
            correct=directional_verdict(call.direction, entry_price, market.price),
            price=market.price,
            reason=REASON_EXPIRED,
        )

    @staticmethod
    def _first_touch(call: Call, candles: pd.DataFrame, stop_loss: float) -> Resolution | None:
        since = candles[candles["open_time"] >= pd.Timestamp(call.created_at)]
        target = call.target

        for candle in since.itertuples(index=False):
            if call.direction == "up":
                if candle.low <= stop_loss:
                    return Resolution(correct=False, price=stop_loss, reason=REASON_STOP_HIT)
                if target is not None and candle.high >= target:
                    return Resolution(correct=True, price=target, reason=REASON_TARGET_HIT)
            else:
                if candle.high >= stop_loss:
                    return Resolution(correct=False, price=stop_loss, reason=REASON_STOP_HIT)
                if target is not None and candle.low <= target:
                    return Resolution(correct=True, price=target, reason=REASON_TARGET_HIT)
        return None


POINT_SAMPLE = PointSamplePolicy()
PATH_DEPENDENT = PathDependentPolicy()


def select_policy(call: Call) -> ResolutionPolicy:
    """Calls with explicit levels are judged on the price path; the rest on a point sample."""
    if call.direction != "neutral" and (call.target is not None or call.stop_loss is not None):
        return PATH_DEPENDENT
    return POINT_SAMPLE
