import time
from dataclasses import replace

import pytest

from data.models import Position
from data.store import LedgerStore
from execution.contracts import ContractBook
from execution.errors import ExecutionError, MarketDataError
from execution.order_executor import OrderExecutor
from execution.risk import RiskConfig, get_strategy_params
from execution.venue_client import (
    Account, Candle, ContractInfo, FundingRate, Order, OrderRequest,
    Ticker, VenueClient, VenuePosition,
)
from monitoring.trade_logger import TradeAuditLog


class FakeVenue(VenueClient):
    """In-memory venue with knobs for the failure modes the engine must handle."""

    name = 'fake'

    def __init__(self, prices=None, balance: float = 1000.0):
        self.prices = dict(prices or {'BTC': 100.0, 'ETH': 100.0})
        self.multipliers: dict[str, float] = {}
        self.balance = balance
        self.positions: dict[str, VenuePosition] = {}
        self.orders: dict[str, Order] = {}
        self.placed: list[OrderRequest] = []
        self.cancelled: list[str] = []
        self.leverage: dict[str, int] = {}
        self.fill_prices: dict[str, float] = {}      # forced fill price per symbol
        self.leave_open = False                       # orders never report a fill
        self.partial_fills: dict[str, float] = {}    # max contracts filled per order
        self.delayed_fill = False                     # fill only visible on get_order
        self.order_read_errors = 0                    # get_order timeouts before it answers
        self.position_reads = None                    # scripted get_positions() results
        self.position_calls = 0
        self.failing_tickers: set[str] = set()
        self._counter = 0

    async def get_ticker(self, symbol):
        if symbol in self.failing_tickers:
            raise MarketDataError('ticker_down', symbol=symbol)
        price = self.prices[symbol]
        return Ticker(symbol=symbol, last_price=price, mark_price=price)

    async def get_candles(self, symbol, interval, limit):
        p = self.prices[symbol]
        return [Candle(timestamp=i, open=p, high=p * 1.01, low=p * 0.99, close=p * (1 + i / 1000), volume=10)
                for i in range(5)]

    async def get_funding_rate(self, symbol):
        return FundingRate(symbol=symbol, rate=0.0001)

    async def get_contract_info(self, symbol):
        return ContractInfo(symbol=symbol, exchange_symbol=f'{symbol}_USDT',
                            multiplier=self.multipliers.get(symbol, 1.0))

    async def get_account(self):
        unrealized = sum(p.unrealized_pnl for p in self.positions.values())
        return Account(total_balance=self.balance, available_balance=self.balance,
                       unrealized_pnl=unrealized)

    async def get_positions(self):
        self.position_calls += 1
        if self.position_reads:
            scripted = self.position_reads.pop(0)
            if isinstance(scripted, Exception):
                raise scripted
            return scripted
        for p in self.positions.values():
            p.current_price = self.prices.get(p.symbol, p.current_price)
        return [replace(p) for p in self.positions.values()]

    def add_position(self, symbol, side='long', quantity=4, entry=100.0, leverage=8):
        liq = entry * (1 - 0.9 / leverage) if side == 'long' else entry * (1 + 0.9 / leverage)
        self.positions[symbol] = VenuePosition(
            symbol=symbol, side=side, quantity=quantity, entry_price=entry,
            current_price=self.prices.get(symbol, entry), liquidation_price=liq, leverage=leverage,
        )
        return self.positions[symbol]

    async def place_order(self, request):
        self.placed.append(request)
        self._counter += 1
        order_id = f'o{self._counter}'
        if self.leave_open:
            order = Order(id=order_id, symbol=request.symbol, side=request.side,
                          quantity=request.quantity, status='open', reduce_only=request.reduce_only)
            self.orders[order_id] = order
            return order

        price = self.fill_prices.get(request.symbol, self.prices[request.symbol])
        filled = min(self.partial_fills.get(request.symbol, request.quantity), request.quantity)
        pos = self.positions.get(request.symbol)
        if request.reduce_only:
            if pos is None:
                raise ExecutionError('nothing_to_reduce', symbol=request.symbol)
            pos.quantity -= filled
            if pos.quantity <= 0:
                del self.positions[request.symbol]
        elif pos is None:
            self.add_position(request.symbol, request.side, filled, price,
                              self.leverage.get(request.symbol, 1))
        else:
            total = pos.quantity + filled
            pos.entry_price = (pos.entry_price * pos.quantity + price * filled) / total
            pos.quantity = total

        # IOC semantics: an unfilled remainder is cancelled
        order = Order(id=order_id, symbol=request.symbol, side=request.side,
                      quantity=request.quantity, filled=filled, fill_price=price,
                      status='filled' if filled >= request.quantity else 'cancelled',
                      reduce_only=request.reduce_only)
        self.orders[order_id] = order
        if self.delayed_fill:
            return replace(order, status='open', filled=0.0, fill_price=0.0)
        return order

    async def cancel_order(self, order_id):
        self.cancelled.append(order_id)
        if order_id in self.orders:
            self.orders[order_id].status = 'cancelled'

    async def get_order(self, order_id):
        if self.order_read_errors > 0:
            self.order_read_errors -= 1
            raise ExecutionError('venue_timeout', endpoint=f'/orders/{order_id}')
        if order_id not in self.orders:
            raise ExecutionError('unknown_order', order_id=order_id)
        return self.orders[order_id]

    async def set_leverage(self, symbol, leverage):
        self.leverage[symbol] = leverage


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def store():
    s = LedgerStore(':memory:')
    yield s
    s.close()


@pytest.fixture
def risk_config():
    # balanced @ 10x max → leverage band 6..9
    return RiskConfig(strategy=get_strategy_params('balanced', 10), max_exposure_multiple=10.0)


@pytest.fixture
def audit(tmp_path):
    return TradeAuditLog(str(tmp_path / 'audit.jsonl'))


@pytest.fixture
def executor(venue, store, risk_config, audit):
    return OrderExecutor(
        venue, store, ContractBook(venue), risk_config, audit=audit,
        settle_delay=0, poll_attempts=2, poll_delay=0, liq_attempts=1,
    )


@pytest.fixture
def make_position():
    def _make(symbol='BTC', side='long', quantity=4, entry=100.0, leverage=8, **kwargs):
        kwargs.setdefault('opened_at', time.time())
        return Position(symbol=symbol, side=side, quantity=quantity, entry_price=entry,
                        current_price=entry, leverage=leverage, **kwargs)
    return _make
