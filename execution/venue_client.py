"""
Venue Client — the single boundary between the engine and an exchange.

Adapters:
  GateVenue   Gate.io USDT-settled futures, REST v4 over aiohttp (HMAC-SHA512)
  PaperVenue  in-memory fills at the live ticker, market data from a real venue

Everything above this module talks in the typed shapes defined here.
Adapter rules every implementation must follow:
  - Account.total_balance EXCLUDES unrealized PnL
  - get_positions() returns non-zero positions only
  - Order.status is normalised to 'open' | 'filled' | 'cancelled'
  - quantities are contracts (positive); direction is in `side`

Gate API: https://www.gate.io/docs/developers/apiv4/
"""
import asyncio
import hashlib
import hmac
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Optional
from urllib.parse import urlencode, urlparse

import aiohttp
from loguru import logger

from config import GATE_BASE_URL, SETTLE
from execution.errors import ExecutionError, MarketDataError


# ── Shapes ───────────────────────────────────────────────────────────
@dataclass
class Ticker:
    symbol:      str
    last_price:  float
    mark_price:  float
    index_price: float = 0.0
    change_24h:  float = 0.0
    volume_24h:  float = 0.0
    timestamp:   float = field(default_factory=time.time)


@dataclass
class Candle:
    timestamp: float
    open:      float
    high:      float
    low:       float
    close:     float
    volume:    float


@dataclass
class FundingRate:
    symbol:    str
    rate:      float
    timestamp: float = field(default_factory=time.time)


@dataclass
class ContractInfo:
    symbol:          str
    exchange_symbol: str
    multiplier:      float          # base units per contract
    order_size_min:  float = 1.0
    order_size_max:  float = 1_000_000.0
    lot_step:        float = 1.0
    leverage_min:    float = 1.0
    leverage_max:    float = 100.0


@dataclass
class Account:
    total_balance:     float        # wallet balance, unrealized PnL excluded
    available_balance: float
    unrealized_pnl:    float = 0.0
    position_margin:   float = 0.0
    order_margin:      float = 0.0
    currency:          str = 'USDT'


@dataclass
class VenuePosition:
    symbol:            str
    side:              str
    quantity:          float
    entry_price:       float
    current_price:     float
    liquidation_price: float = 0.0
    unrealized_pnl:    float = 0.0
    realized_pnl:      float = 0.0
    leverage:          int = 1
    margin:            float = 0.0


@dataclass
class OrderRequest:
    symbol:      str
    side:        str            # side of the exposure being bought ('long' = buy)
    quantity:    float
    reduce_only: bool = False
    price:       float = 0.0    # 0 = market (IOC)


@dataclass
class Order:
    id:          str
    symbol:      str
    side:        str
    quantity:    float
    filled:      float = 0.0
    fill_price:  float = 0.0
    status:      str = 'open'   # open | filled | cancelled
    reduce_only: bool = False
    timestamp:   float = field(default_factory=time.time)


# ── Interface ────────────────────────────────────────────────────────
class VenueClient(ABC):
    """Async exchange interface. One implementation per venue."""

    name = 'venue'

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Ticker: ...

    @abstractmethod
    async def get_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]: ...

    @abstractmethod
    async def get_funding_rate(self, symbol: str) -> FundingRate: ...

    @abstractmethod
    async def get_contract_info(self, symbol: str) -> ContractInfo: ...

    @abstractmethod
    async def get_account(self) -> Account: ...

    @abstractmethod
    async def get_positions(self) -> list[VenuePosition]: ...

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> Order: ...

    @abstractmethod
    async def cancel_order(self, order_id: str) -> None: ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Order: ...

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None: ...

    def normalize_symbol(self, symbol: str) -> str:
        return f'{symbol}_USDT'

    def denormalize_symbol(self, exchange_symbol: str) -> str:
        return exchange_symbol.split('_')[0]

    async def close(self):
        pass


# ── Gate.io ──────────────────────────────────────────────────────────
def _f(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class GateVenue(VenueClient):
    """
    Gate.io USDT futures over REST v4.
    Order size is signed on the wire (positive = buy), unsigned above this class.
    """

    name = 'gate'

    def __init__(self, api_key: str = '', api_secret: str = '',
                 base_url: str = GATE_BASE_URL, settle: str = SETTLE, timeout: float = 10.0):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip('/')
        self.settle = settle
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _sign(self, method: str, path: str, query: str, body: str) -> dict:
        ts = str(int(time.time()))
        hashed = hashlib.sha512(body.encode()).hexdigest()
        payload = f'{method}\n{path}\n{query}\n{hashed}\n{ts}'
        sign = hmac.new(self.api_secret.encode(), payload.encode(), hashlib.sha512).hexdigest()
        return {'KEY': self.api_key, 'Timestamp': ts, 'SIGN': sign}

    async def _request(self, method: str, endpoint: str, params: Optional[dict] = None,
                       body: Optional[dict] = None, signed: bool = False,
                       error=ExecutionError):
        url = f'{self.base_url}{endpoint}'
        query = urlencode(params or {})
        payload = json.dumps(body) if body is not None else ''
        headers = {'Accept': 'application/json', 'Content-Type': 'application/json'}
        if signed:
            path = urlparse(url).path
            headers.update(self._sign(method, path, query, payload))

        session = await self._get_session()
        try:
            async with session.request(method, url, params=params, data=payload or None,
                                       headers=headers) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    logger.error(f'[VENUE] {method} {endpoint} → {resp.status}: {text[:300]}')
                    raise error('venue_http_error', endpoint=endpoint, status=resp.status, body=text[:300])
                return json.loads(text) if text else None
        except asyncio.TimeoutError as e:
            raise error('venue_timeout', endpoint=endpoint) from e
        except aiohttp.ClientError as e:
            raise error('venue_unreachable', endpoint=endpoint, error=str(e)) from e
        except ValueError as e:
            raise error('venue_bad_payload', endpoint=endpoint, error=str(e)) from e

    # ── Market data ──
    async def get_ticker(self, symbol: str) -> Ticker:
        contract = self.normalize_symbol(symbol)
        rows = await self._request('GET', f'/futures/{self.settle}/tickers',
                                   params={'contract': contract}, error=MarketDataError)
        if not rows:
            raise MarketDataError('empty_ticker', symbol=symbol)
        raw = rows[0]
        last = _f(raw.get('last'))
        return Ticker(
            symbol=symbol,
            last_price=last,
            mark_price=_f(raw.get('mark_price'), last),
            index_price=_f(raw.get('index_price'), last),
            change_24h=_f(raw.get('change_percentage')),
            volume_24h=_f(raw.get('volume_24h')),
        )

    async def get_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        rows = await self._request('GET', f'/futures/{self.settle}/candlesticks',
                                   params={'contract': self.normalize_symbol(symbol),
                                           'interval': interval, 'limit': limit},
                                   error=MarketDataError)
        return [
            Candle(timestamp=_f(c.get('t')), open=_f(c.get('o')), high=_f(c.get('h')),
                   low=_f(c.get('l')), close=_f(c.get('c')), volume=_f(c.get('v')))
            for c in rows or []
        ]

    async def get_funding_rate(self, symbol: str) -> FundingRate:
        rows = await self._request('GET', f'/futures/{self.settle}/funding_rate',
                                   params={'contract': self.normalize_symbol(symbol), 'limit': 1},
                                   error=MarketDataError)
        if not rows:
            return FundingRate(symbol=symbol, rate=0.0)
        return FundingRate(symbol=symbol, rate=_f(rows[0].get('r')), timestamp=_f(rows[0].get('t')))

    async def get_contract_info(self, symbol: str) -> ContractInfo:
        contract = self.normalize_symbol(symbol)
        raw = await self._request('GET', f'/futures/{self.settle}/contracts/{contract}',
                                  error=MarketDataError)
        # multiplier left raw: the contract book refuses a missing one
        return ContractInfo(
            symbol=symbol,
            exchange_symbol=contract,
            multiplier=_f(raw.get('quanto_multiplier'), float('nan')),
            order_size_min=_f(raw.get('order_size_min'), 1.0),
            order_size_max=_f(raw.get('order_size_max'), 1_000_000.0),
            lot_step=1.0,
            leverage_min=_f(raw.get('leverage_min'), 1.0),
            leverage_max=_f(raw.get('leverage_max'), 100.0),
        )

    # ── Account ──
    async def get_account(self) -> Account:
        raw = await self._request('GET', f'/futures/{self.settle}/accounts', signed=True)
        # Gate's `total` is the wallet balance; unrealised PnL is reported separately
        return Account(
            total_balance=_f(raw.get('total')),
            available_balance=_f(raw.get('available')),
            unrealized_pnl=_f(raw.get('unrealised_pnl')),
            position_margin=_f(raw.get('position_margin')),
            order_margin=_f(raw.get('order_margin')),
            currency=raw.get('currency', 'USDT'),
        )

    async def get_positions(self) -> list[VenuePosition]:
        rows = await self._request('GET', f'/futures/{self.settle}/positions', signed=True)
        positions = []
        for p in rows or []:
            size = _f(p.get('size'))
            if size == 0:
                continue
            positions.append(VenuePosition(
                symbol=self.denormalize_symbol(p.get('contract', '')),
                side='long' if size > 0 else 'short',
                quantity=abs(size),
                entry_price=_f(p.get('entry_price')),
                current_price=_f(p.get('mark_price')),
                liquidation_price=_f(p.get('liq_price')),
                unrealized_pnl=_f(p.get('unrealised_pnl')),
                realized_pnl=_f(p.get('realised_pnl')),
                leverage=int(_f(p.get('leverage'), 1)) or 1,
                margin=_f(p.get('margin')),
            ))
        return positions

    # ── Orders ──
    def _parse_order(self, raw: dict, symbol: str = '') -> Order:
        size = _f(raw.get('size'))
        left = _f(raw.get('left'))
        filled = abs(size) - abs(left)
        status = raw.get('status', 'open')
        if status == 'finished':
            status = 'filled' if filled > 0 else 'cancelled'
        elif status != 'open':
            status = 'cancelled'
        return Order(
            id=str(raw.get('id', '')),
            symbol=symbol or self.denormalize_symbol(raw.get('contract', '')),
            side='long' if size > 0 else 'short',
            quantity=abs(size),
            filled=filled,
            fill_price=_f(raw.get('fill_price')),
            status=status,
            reduce_only=bool(raw.get('is_reduce_only', False)),
            timestamp=_f(raw.get('create_time'), time.time()),
        )

    async def place_order(self, request: OrderRequest) -> Order:
        size = request.quantity if request.side == 'long' else -request.quantity
        body = {
            'contract': self.normalize_symbol(request.symbol),
            'size': int(size),
            'price': str(request.price) if request.price else '0',
            'tif': 'gtc' if request.price else 'ioc',
            'reduce_only': request.reduce_only,
        }
        raw = await self._request('POST', f'/futures/{self.settle}/orders', body=body, signed=True)
        order = self._parse_order(raw, request.symbol)
        logger.info(f'[VENUE] Order {order.id} {request.side} {request.quantity} {request.symbol} '
                    f'reduce_only={request.reduce_only} → {order.status}')
        return order

    async def cancel_order(self, order_id: str) -> None:
        await self._request('DELETE', f'/futures/{self.settle}/orders/{order_id}', signed=True)

    async def get_order(self, order_id: str) -> Order:
        raw = await self._request('GET', f'/futures/{self.settle}/orders/{order_id}', signed=True)
        return self._parse_order(raw)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        contract = self.normalize_symbol(symbol)
        await self._request('POST', f'/futures/{self.settle}/positions/{contract}/leverage',
                            params={'leverage': str(leverage)}, signed=True)


# ── Paper ────────────────────────────────────────────────────────────
class PaperVenue(VenueClient):
    """
    Simulated account. Market data and contract specs come from `market`
    (normally an unauthenticated GateVenue); orders fill instantly at the
    current last price and taker fees come out of the wallet balance.
    """

    name = 'paper'

    def __init__(self, market: VenueClient, balance: float = 1000.0, fee_rate: float = 0.0005):
        self.market = market
        self.balance = balance
        self.fee_rate = fee_rate
        self._positions: dict[str, VenuePosition] = {}
        self._orders: dict[str, Order] = {}
        self._leverage: dict[str, int] = {}
        self._counter = 0

    async def get_ticker(self, symbol: str) -> Ticker:
        return await self.market.get_ticker(symbol)

    async def get_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        return await self.market.get_candles(symbol, interval, limit)

    async def get_funding_rate(self, symbol: str) -> FundingRate:
        return await self.market.get_funding_rate(symbol)

    async def get_contract_info(self, symbol: str) -> ContractInfo:
        return await self.market.get_contract_info(symbol)

    async def _mark(self, pos: VenuePosition) -> VenuePosition:
        ticker = await self.market.get_ticker(pos.symbol)
        info = await self.market.get_contract_info(pos.symbol)
        sign = 1 if pos.side == 'long' else -1
        pos.current_price = ticker.last_price
        pos.unrealized_pnl = (ticker.last_price - pos.entry_price) * pos.quantity * info.multiplier * sign
        return pos

    async def get_account(self) -> Account:
        unrealized = 0.0
        margin = 0.0
        for pos in self._positions.values():
            await self._mark(pos)
            unrealized += pos.unrealized_pnl
            margin += pos.margin
        return Account(
            total_balance=self.balance,
            available_balance=self.balance - margin + min(unrealized, 0.0),
            unrealized_pnl=unrealized,
            position_margin=margin,
        )

    async def get_positions(self) -> list[VenuePosition]:
        # snapshots; place_order mutates the stored positions
        return [replace(await self._mark(p)) for p in self._positions.values()]

    async def place_order(self, request: OrderRequest) -> Order:
        ticker = await self.market.get_ticker(request.symbol)
        info = await self.market.get_contract_info(request.symbol)
        price = ticker.last_price
        mult = info.multiplier
        qty = request.quantity
        self.balance -= price * qty * mult * self.fee_rate

        pos = self._positions.get(request.symbol)
        if request.reduce_only:
            if pos is None or pos.side == request.side:
                raise ExecutionError('paper_nothing_to_reduce', symbol=request.symbol)
            qty = min(qty, pos.quantity)
            sign = 1 if pos.side == 'long' else -1
            self.balance += (price - pos.entry_price) * qty * mult * sign
            pos.margin *= (pos.quantity - qty) / pos.quantity
            pos.quantity -= qty
            if pos.quantity <= 0:
                del self._positions[request.symbol]
        elif pos is None:
            leverage = self._leverage.get(request.symbol, 1)
            liq = price * (1 - 0.9 / leverage) if request.side == 'long' else price * (1 + 0.9 / leverage)
            self._positions[request.symbol] = VenuePosition(
                symbol=request.symbol, side=request.side, quantity=qty, entry_price=price,
                current_price=price, liquidation_price=liq, leverage=leverage,
                margin=price * qty * mult / leverage,
            )
        elif pos.side == request.side:
            total = pos.quantity + qty
            pos.entry_price = (pos.entry_price * pos.quantity + price * qty) / total
            pos.quantity = total
            pos.margin += price * qty * mult / pos.leverage
        else:
            raise ExecutionError('paper_opposite_position', symbol=request.symbol)

        self._counter += 1
        order = Order(
            id=f'paper_{request.symbol}_{self._counter}_{int(time.time() * 1000)}',
            symbol=request.symbol, side=request.side, quantity=qty, filled=qty,
            fill_price=price, status='filled', reduce_only=request.reduce_only,
        )
        self._orders[order.id] = order
        logger.info(f'[VENUE-PAPER] {request.side.upper()} {qty} {request.symbol} @ {price:.4f} '
                    f'reduce_only={request.reduce_only} | balance ${self.balance:.2f}')
        return order

    async def cancel_order(self, order_id: str) -> None:
        order = self._orders.get(order_id)
        if order and order.status == 'open':
            order.status = 'cancelled'

    async def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise ExecutionError('paper_unknown_order', order_id=order_id)
        return order

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        self._leverage[symbol] = leverage

    async def close(self):
        await self.market.close()
