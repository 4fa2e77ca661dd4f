"""
Market Data Collector — per-tick ticker / candles / funding snapshot.

Symbols are fetched concurrently (read-only, no shared state). A symbol whose
data cannot be read, or reads back as zero / non-finite, is dropped from this
tick's snapshot; the rest of the tick carries on.
"""
import asyncio
import math
from dataclasses import dataclass, field

import numpy as np
from loguru import logger

from execution.errors import MarketDataError, TradingError
from execution.retry import retry_async
from execution.venue_client import Candle, VenueClient


@dataclass
class SymbolSnapshot:
    symbol:       str
    price:        float
    mark_price:   float
    change_24h:   float
    volume_24h:   float
    funding_rate: float
    candles:      list = field(default_factory=list)

    @property
    def closes(self) -> np.ndarray:
        return np.array([c.close for c in self.candles], dtype=float)

    def summary(self) -> dict:
        closes = self.closes
        out = {
            'price': self.price,
            'mark_price': self.mark_price,
            'change_24h': self.change_24h,
            'volume_24h': self.volume_24h,
            'funding_rate': self.funding_rate,
        }
        if len(closes) >= 2:
            returns = np.diff(closes) / closes[:-1]
            out['range_high'] = float(closes.max())
            out['range_low'] = float(closes.min())
            out['volatility'] = round(float(np.std(returns)), 6)
        return out


class MarketDataCollector:
    def __init__(self, venue: VenueClient, symbols: list[str], candle_interval: str = '5m',
                 candle_limit: int = 100, attempts: int = 2, retry_delay: float = 0.5):
        self.venue = venue
        self.symbols = symbols
        self.candle_interval = candle_interval
        self.candle_limit = candle_limit
        self.attempts = attempts
        self.retry_delay = retry_delay

    async def _fetch(self, symbol: str) -> SymbolSnapshot:
        outcome = await retry_async(
            lambda: self.venue.get_ticker(symbol),
            attempts=self.attempts, delay=self.retry_delay,
            retry_on=(MarketDataError,), label=f'ticker-{symbol}',
        )
        ticker = outcome.unwrap()
        if not math.isfinite(ticker.last_price) or ticker.last_price <= 0:
            raise MarketDataError('invalid_price', symbol=symbol, price=ticker.last_price)

        candles: list[Candle] = await self.venue.get_candles(symbol, self.candle_interval, self.candle_limit)
        try:
            funding = (await self.venue.get_funding_rate(symbol)).rate
        except MarketDataError as e:
            logger.debug(f'[MARKET] {symbol} funding unavailable: {e}')
            funding = 0.0

        return SymbolSnapshot(
            symbol=symbol,
            price=ticker.last_price,
            mark_price=ticker.mark_price or ticker.last_price,
            change_24h=ticker.change_24h,
            volume_24h=ticker.volume_24h,
            funding_rate=funding,
            candles=candles,
        )

    async def collect(self) -> dict[str, SymbolSnapshot]:
        results = await asyncio.gather(*(self._fetch(s) for s in self.symbols), return_exceptions=True)
        snapshot = {}
        for symbol, result in zip(self.symbols, results):
            if isinstance(result, TradingError):
                logger.warning(f'[MARKET] Skipping {symbol} this tick: {result}')
                continue
            if isinstance(result, BaseException):
                raise result
            snapshot[symbol] = result
        logger.debug(f'[MARKET] Collected {len(snapshot)}/{len(self.symbols)} symbols')
        return snapshot


def digest(snapshot: dict[str, SymbolSnapshot]) -> str:
    """One line per symbol, stored with the tick audit record."""
    lines = []
    for symbol in sorted(snapshot):
        s = snapshot[symbol]
        lines.append(f'{symbol}: {s.price:.6g} ({s.change_24h:+.2f}% 24h, funding {s.funding_rate:.6f})')
    return '\n'.join(lines)
