"""
Ledger records — positions, trades, account snapshots, tick audit rows.

Quantities are in contracts. Notional value of a quantity is
quantity × multiplier × price, where the multiplier is per contract.
"""
import time
from dataclasses import dataclass, field, asdict
from typing import Optional


@dataclass
class Position:
    """One open position per symbol. Exchange owns quantity and prices."""
    symbol:            str
    side:              str            # 'long' | 'short'
    quantity:          float          # contracts, > 0 while open
    entry_price:       float
    current_price:     float
    leverage:          int
    liquidation_price: float = 0.0
    unrealized_pnl:    float = 0.0
    peak_pnl_percent:  float = 0.0    # never decreases while open
    opened_at:         float = field(default_factory=time.time)

    # Optional price overrides (set by the decision generator)
    stop_loss:         Optional[float] = None
    profit_target:     Optional[float] = None

    # Linked exchange orders
    entry_order_id:    Optional[str] = None
    sl_order_id:       Optional[str] = None
    tp_order_id:       Optional[str] = None

    add_count:         int = 0        # same-side adds since open

    def notional(self, multiplier: float, price: float = 0.0) -> float:
        return self.quantity * multiplier * (price or self.entry_price)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Trade:
    symbol:    str
    side:      str              # side of the position: 'long' | 'short'
    type:      str              # 'open' | 'close'
    price:     float
    quantity:  float
    leverage:  int
    fee:       float
    order_id:  str = ''
    pnl:       Optional[float] = None   # None for opens
    timestamp: float = field(default_factory=time.time)
    status:    str = 'filled'   # 'filled' | 'pending' (estimated fill)
    entry_price: Optional[float] = None  # position entry, closes only
    id:        Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class AccountSnapshot:
    total_balance:     float     # excludes unrealized PnL
    available_balance: float
    unrealized_pnl:    float
    realized_pnl:      float
    return_percent:    float
    timestamp:         float = field(default_factory=time.time)


@dataclass
class TickRecord:
    """Audit row written once per tick."""
    iteration:       int
    market_digest:   str
    decision:        str
    actions:         list = field(default_factory=list)
    account_value:   float = 0.0
    positions_count: int = 0
    timestamp:       float = field(default_factory=time.time)
