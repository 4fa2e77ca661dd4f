"""
PnL / Fee Model — realized PnL and taker fees under the contract-multiplier model.

  notional  = price × quantity × multiplier
  fee       = notional × rate               (charged on open and on close)
  gross PnL = (exit − entry) × quantity × multiplier   (sign-flipped for shorts)
  net PnL   = gross − open fee − close fee

Exchanges occasionally hand back the close notional where a realized PnL was
expected. `correct_close_pnl` detects that aliasing and replaces the value
with the net PnL recomputed from the fills. Every close trade passes through
it before it is persisted; `HistoricalPnlFixer` re-applies the same math to
the most recent close rows in the ledger.
"""
import math
from dataclasses import dataclass
from typing import Awaitable, Callable
from loguru import logger

from config import TAKER_FEE
from execution.errors import DataQualityError


PNL_FIX_LOOKBACK   = 50     # close trades re-checked per pass
PNL_FIX_TOLERANCE  = 0.5    # quote units
FEE_FIX_TOLERANCE  = 0.1


@dataclass(frozen=True)
class PnlBreakdown:
    gross:     float
    open_fee:  float
    close_fee: float
    net:       float

    @property
    def total_fee(self) -> float:
        return self.open_fee + self.close_fee


@dataclass(frozen=True)
class PnlCorrection:
    pnl:       float     # value to persist
    corrected: bool
    expected:  float
    notional:  float


def require_multiplier(symbol: str, multiplier) -> float:
    """Fail closed on a missing or nonsensical contract multiplier."""
    try:
        value = float(multiplier)
    except (TypeError, ValueError):
        raise DataQualityError('invalid_multiplier', symbol=symbol, multiplier=multiplier)
    if not math.isfinite(value) or value <= 0:
        raise DataQualityError('invalid_multiplier', symbol=symbol, multiplier=multiplier)
    return value


def compute_fee(price: float, quantity: float, multiplier: float, rate: float = TAKER_FEE) -> float:
    return price * quantity * multiplier * rate


def compute_gross_pnl(side: str, entry: float, exit: float, quantity: float, multiplier: float) -> float:
    change = exit - entry if side == 'long' else entry - exit
    return change * quantity * multiplier


def compute_net_pnl(
    side: str,
    entry: float,
    exit: float,
    quantity: float,
    multiplier: float,
    rate: float = TAKER_FEE,
) -> PnlBreakdown:
    """
    Net realized PnL of closing `quantity` contracts opened at `entry`.

    Example: long 10 contracts, multiplier 1, 100 → 110, rate 0.0005
        gross 100.0, open fee 0.5, close fee 0.55, net 98.95
    """
    gross = compute_gross_pnl(side, entry, exit, quantity, multiplier)
    open_fee = compute_fee(entry, quantity, multiplier, rate)
    close_fee = compute_fee(exit, quantity, multiplier, rate)
    return PnlBreakdown(gross=gross, open_fee=open_fee, close_fee=close_fee,
                        net=gross - open_fee - close_fee)


def correct_close_pnl(
    pnl: float,
    side: str,
    entry: float,
    exit: float,
    quantity: float,
    multiplier: float,
    rate: float = TAKER_FEE,
    symbol: str = '',
) -> PnlCorrection:
    """
    Replace a PnL that is closer to the close notional than to the expected
    net PnL. Applying it to its own output returns the output unchanged.
    """
    expected = compute_net_pnl(side, entry, exit, quantity, multiplier, rate).net
    notional = exit * quantity * multiplier

    if abs(pnl - notional) < abs(pnl - expected):
        logger.warning(
            f'[FEE] {symbol} PnL {pnl:.4f} looks like notional {notional:.4f} — '
            f'corrected to {expected:.4f}'
        )
        return PnlCorrection(pnl=expected, corrected=True, expected=expected, notional=notional)

    return PnlCorrection(pnl=pnl, corrected=False, expected=expected, notional=notional)


class HistoricalPnlFixer:
    """
    Re-derives PnL and total fee of recent close trades from the position
    entry price (recorded on the close, else the size-weighted average of
    the open and add fills since the previous close) and rewrites rows that
    drifted. Never inserts or deletes trades.
    """

    def __init__(self, store, multiplier_for: Callable[[str], Awaitable[float]],
                 rate: float = TAKER_FEE, lookback: int = PNL_FIX_LOOKBACK):
        self.store = store
        self.multiplier_for = multiplier_for
        self.rate = rate
        self.lookback = lookback

    def _entry_price(self, close):
        if close.entry_price:
            return close.entry_price
        # rows written before entry_price was stored
        opens = self.store.opens_before_close(close)
        size = sum(t.quantity for t in opens)
        if size <= 0:
            return None
        return sum(t.price * t.quantity for t in opens) / size

    async def run(self) -> int:
        """Returns the number of rows rewritten."""
        fixed = 0
        for close in self.store.recent_close_trades(self.lookback):
            entry = self._entry_price(close)
            if entry is None:
                continue
            try:
                multiplier = require_multiplier(close.symbol, await self.multiplier_for(close.symbol))
            except DataQualityError as e:
                logger.warning(f'[FEE] Skip PnL check for trade #{close.id}: {e}')
                continue

            breakdown = compute_net_pnl(close.side, entry, close.price,
                                        close.quantity, multiplier, self.rate)
            recorded_pnl = close.pnl or 0.0
            pnl_diff = abs(recorded_pnl - breakdown.net)
            fee_diff = abs(close.fee - breakdown.total_fee)

            if pnl_diff > PNL_FIX_TOLERANCE or fee_diff > FEE_FIX_TOLERANCE:
                logger.warning(
                    f'[FEE] Fix trade #{close.id} {close.symbol} {close.side}: '
                    f'PnL {recorded_pnl:.2f} → {breakdown.net:.2f} | '
                    f'fee {close.fee:.4f} → {breakdown.total_fee:.4f}'
                )
                self.store.update_trade_pnl(close.id, breakdown.net, breakdown.total_fee)
                fixed += 1

        if fixed:
            logger.info(f'[FEE] Fixed {fixed} historical PnL records')
        return fixed
