"""Shared test fixtures."""

import os

# Configure before any signal_outcomes import reads settings
os.environ["SO_DATABASE_URL"] = "sqlite://"
os.environ["SO_SCHEDULER_ENABLED"] = "false"
os.environ["SO_API_TOKEN"] = ""
os.environ["SO_LEDGER_BACKEND"] = "database"

from datetime import datetime, timezone

import pandas as pd
import pytest
from sqlmodel import SQLModel

from signal_outcomes.database import create_db_and_tables, engine
from signal_outcomes.errors import PriceUnavailable
from signal_outcomes.services.ledger import DatabaseLedger
from signal_outcomes.services.price_oracle import PriceSample


class FakeOracle:
    """Stands in for PriceOracle with a fixed price and candle frame."""

    def __init__(self, price: float = 100.0, candles: pd.DataFrame | None = None,
                 price_error: bool = False, candle_error: bool = False):
        self.price = price
        self.frame = candles
        self.price_error = price_error
        self.candle_error = candle_error
        self.price_calls = 0
        self.candle_calls = 0
        self.candle_since: datetime | None = None

    async def current_price(self) -> PriceSample:
        self.price_calls += 1
        if self.price_error:
            raise PriceUnavailable("All price sources failed for BTC: test")
        return PriceSample(price=self.price, source="fake", fetched_at=datetime.now(timezone.utc))

    async def candles(self, since: datetime) -> pd.DataFrame:
        self.candle_calls += 1
        self.candle_since = since
        if self.candle_error:
            raise PriceUnavailable("All candle sources failed for BTC: test")
        if self.frame is None:
            return pd.DataFrame(columns=["open_time", "open", "high", "low", "close"])
        return self.frame


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts with empty tables."""
    SQLModel.metadata.drop_all(engine)
    create_db_and_tables()
    yield


@pytest.fixture
def ledger() -> DatabaseLedger:
    return DatabaseLedger()


@pytest.fixture
def fake_oracle():
    return FakeOracle
