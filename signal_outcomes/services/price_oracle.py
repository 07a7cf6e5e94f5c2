"""Price oracle: current spot price and OHLC candle history with source fallback.

Spot sources are tried in a fixed order (Binance US, Coinbase, Kraken,
Hyperliquid) and the first good answer wins. Candles come from Hyperliquid
(supports every interval) with Binance klines as the fallback.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
import pandas as pd
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from signal_outcomes.errors import PriceUnavailable

logger = logging.getLogger(__name__)

SPOT_SOURCES = ("binance_us", "coinbase", "kraken", "hyperliquid")
CANDLE_SOURCES = ("hyperliquid", "binance")

CANDLE_COLUMNS = ["open_time", "open", "high", "low", "close"]

_BINANCE_KLINES_LIMIT = 1000


@dataclass
class PriceSample:
    price: float
    source: str
    fetched_at: datetime


class PriceCache:
    """Last good price per symbol, valid for ``ttl_seconds``.

    Owned by the caller and passed into each ``PriceOracle`` so repeated
    cycles inside the TTL are judged against the same sample.
    """

    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, PriceSample] = {}

    def get(self, symbol: str, now: datetime | None = None) -> PriceSample | None:
        sample = self._entries.get(symbol)
        if sample is None:
            return None
        now = now or datetime.now(timezone.utc)
        if (now - sample.fetched_at).total_seconds() >= self.ttl_seconds:
            return None
        return sample

    def put(self, symbol: str, sample: PriceSample):
        self._entries[symbol] = sample

    def clear(self):
        self._entries.clear()


class PriceOracle:
    """Spot price and candle fetching for one symbol."""

    def __init__(
        self,
        symbol: str = "BTC",
        cache: PriceCache | None = None,
        timeout: float = 10.0,
        candle_interval: str = "1h",
        spot_sources: list[str] | None = None,
        candle_sources: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.symbol = symbol.upper()
        self.cache = cache
        self.timeout = timeout
        self.candle_interval = candle_interval
        self.spot_sources = list(spot_sources or SPOT_SOURCES)
        self.candle_sources = list(candle_sources or CANDLE_SOURCES)
        self._transport = transport
        self._hl_info = None

        for name in self.spot_sources:
            if name not in SPOT_SOURCES:
                raise ValueError(f"Unknown spot source: {name}")
        for name in self.candle_sources:
            if name not in CANDLE_SOURCES:
                raise ValueError(f"Unknown candle source: {name}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def current_price(self) -> PriceSample:
        """Return the current price, trying each source in priority order.

        Raises PriceUnavailable when every source fails.
        """
        if self.cache is not None:
            cached = self.cache.get(self.symbol)
            if cached is not None:
                logger.debug(f"Using cached {self.symbol} price from {cached.source}")
                return cached

        fetchers = {
            "binance_us": self._binance_us_price,
            "coinbase": self._coinbase_price,
            "kraken": self._kraken_price,
            "hyperliquid": self._hyperliquid_price,
        }
        errors = []
        async with self._client() as client:
            for name in self.spot_sources:
                try:
                    price = _valid_price(await fetchers[name](client))
                except Exception as e:
                    logger.warning(f"Price source {name} failed for {self.symbol}: {e}")
                    errors.append(f"{name}: {e}")
                    continue

                sample = PriceSample(price=price, source=name, fetched_at=datetime.now(timezone.utc))
                if self.cache is not None:
                    self.cache.put(self.symbol, sample)
                logger.info(f"{self.symbol} price ${price:,.2f} from {name}")
                return sample

        raise PriceUnavailable(f"All price sources failed for {self.symbol}: {'; '.join(errors)}")

    async def candles(self, since: datetime) -> pd.DataFrame:
        """Return OHLC candles from ``since`` until now, ascending by open time.

        The first candle opened before ``since`` is included so a call made
        mid-candle still has data; callers filter on ``open_time``.
        Raises PriceUnavailable when every candle source fails.
        """
        fetchers = {
            "hyperliquid": self._hyperliquid_candles,
            "binance": self._binance_candles,
        }
        interval_seconds = _resolution_to_seconds(self.candle_interval)
        start = since - timedelta(seconds=interval_seconds)
        end = datetime.now(timezone.utc)
        start_ms = int(start.timestamp() * 1000)
        end_ms = int(end.timestamp() * 1000)

        errors = []
        async with self._client() as client:
            for name in self.candle_sources:
                try:
                    frame = await fetchers[name](client, start_ms, end_ms)
                except Exception as e:
                    logger.warning(f"Candle source {name} failed for {self.symbol}: {e}")
                    errors.append(f"{name}: {e}")
                    continue
                if frame.empty:
                    logger.warning(f"Candle source {name} returned no candles for {self.symbol}")
                    errors.append(f"{name}: empty")
                    continue
                logger.info(
                    f"{self.symbol} {len(frame)} x {self.candle_interval} candles from {name} "
                    f"({frame['open_time'].iloc[0]} .. {frame['open_time'].iloc[-1]})"
                )
                return frame

        raise PriceUnavailable(f"All candle sources failed for {self.symbol}: {'; '.join(errors)}")

    # ------------------------------------------------------------------
    # Spot sources
    # ------------------------------------------------------------------

    async def _binance_us_price(self, client: httpx.AsyncClient) -> float:
        data = await _get_json(
            client,
            "https://api.binance.us/api/v3/ticker/price",
            params={"symbol": f"{self.symbol}USDT"},
        )
        return float(data["price"])

    async def _coinbase_price(self, client: httpx.AsyncClient) -> float:
        data = await _get_json(client, f"https://api.coinbase.com/v2/prices/{self.symbol}-USD/spot")
        return float(data["data"]["amount"])

    async def _kraken_price(self, client: httpx.AsyncClient) -> float:
        data = await _get_json(
            client,
            "https://api.kraken.com/0/public/Ticker",
            params={"pair": _to_kraken_pair(self.symbol)},
        )
        if data.get("error"):
            raise ValueError(f"Kraken error: {data['error']}")
        ticker = next(iter(data["result"].values()))
        return float(ticker["c"][0])

    async def _hyperliquid_price(self, client: httpx.AsyncClient) -> float:
        info = await self._get_hl_info()
        # all_mids is synchronous; run in executor to avoid blocking
        mids = await asyncio.get_running_loop().run_in_executor(None, info.all_mids)
        return float(mids[_to_hl_ticker(self.symbol)])

    # ------------------------------------------------------------------
    # Candle sources
    # ------------------------------------------------------------------

    async def _hyperliquid_candles(self, client: httpx.AsyncClient, start_ms: int, end_ms: int) -> pd.DataFrame:
        info = await self._get_hl_info()
        candles = await asyncio.get_running_loop().run_in_executor(
            None, info.candles_snapshot, _to_hl_ticker(self.symbol), self.candle_interval, start_ms, end_ms
        )
        return _parse_candles(candles)

    async def _binance_candles(self, client: httpx.AsyncClient, start_ms: int, end_ms: int) -> pd.DataFrame:
        rows = []
        cursor = start_ms
        interval_ms = _resolution_to_seconds(self.candle_interval) * 1000
        while cursor < end_ms:
            page = await _get_json(
                client,
                "https://api.binance.com/api/v3/klines",
                params={
                    "symbol": f"{self.symbol}USDT",
                    "interval": self.candle_interval,
                    "startTime": cursor,
                    "endTime": end_ms,
                    "limit": _BINANCE_KLINES_LIMIT,
                },
            )
            if not page:
                break
            rows.extend(page)
            if len(page) < _BINANCE_KLINES_LIMIT:
                break
            cursor = int(page[-1][0]) + interval_ms

        # Kline rows: [open_time, open, high, low, close, volume, ...]
        return _parse_candles([{"t": r[0], "o": r[1], "h": r[2], "l": r[3], "c": r[4]} for r in rows])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _get_hl_info(self):
        """Lazily build the Hyperliquid Info client (its constructor hits the network)."""
        if self._hl_info is None:
            from hyperliquid.info import Info

            self._hl_info = await asyncio.get_running_loop().run_in_executor(
                None, lambda: Info(skip_ws=True)
            )
        return self._hl_info


@retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(2),
    wait=wait_exponential(min=0.2, max=1),
    reraise=True,
)
async def _get_json(client: httpx.AsyncClient, url: str, params: dict | None = None):
    response = await client.get(url, params=params)
    response.raise_for_status()
    return response.json()


def _valid_price(value: float) -> float:
    price = float(value)
    if math.isnan(price) or math.isinf(price) or price <= 0:
        raise ValueError(f"invalid price {value!r}")
    return price


def _to_hl_ticker(asset: str) -> str:
    """Convert asset name to Hyperliquid ticker format.

    Hyperliquid uses 'kX' instead of '1000X' (e.g. kBONK, kPEPE).
    """
    if asset.startswith("1000"):
        return "k" + asset[4:]
    return asset


def _to_kraken_pair(asset: str) -> str:
    """Kraken still lists bitcoin as XBT."""
    return ("XBT" if asset == "BTC" else asset) + "USD"


def _resolution_to_seconds(resolution: str) -> int:
    mapping = {
        "1m": 60,
        "5m": 300,
        "15m": 900,
        "30m": 1800,
        "1h": 3600,
        "2h": 7200,
        "4h": 14400,
        "8h": 28800,
        "1d": 86400,
    }
    return mapping.get(resolution, 3600)


def _parse_candles(candles: list[dict]) -> pd.DataFrame:
    """Parse candle dicts into an ascending OHLC DataFrame.

    Each candle dict: {"t": 1772092800000, "o": "87.212", "h": "87.811",
                       "l": "87.212", "c": "87.498", ...}
    Open times are epoch milliseconds.
    """
    if not candles:
        return pd.DataFrame(columns=CANDLE_COLUMNS)

    df = pd.DataFrame(
        [
            {"open_time": c["t"], "open": c["o"], "high": c["h"], "low": c["l"], "close": c["c"]}
            for c in candles
        ]
    )
    df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
    for col in ("open", "high", "low", "close"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.dropna().drop_duplicates(subset="open_time", keep="last")
    return df.sort_values("open_time").reset_index(drop=True)
