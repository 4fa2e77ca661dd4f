"""
Order Executor — opens, adds to and closes positions against the venue and
records the outcome in the ledger.

═══════════════════════════════════════════════════════════════
ORDER STATES:
  SUBMITTED → POLLING → FILLED | CANCELLED | UNKNOWN

  UNKNOWN = polling budget exhausted. The trade is recorded from the best
  values known (order fields, else the reference price), flagged
  `estimated`, stored with status 'pending' and logged as [ESTIMATED].

OPEN (new or add), guards re-read live from the venue:
  - leverage within the strategy band
  - no opposite-direction position on the symbol
  - position count (new symbols only)
  - account guard allows new risk
  - total notional + new exposure ≤ max_exposure_multiple × balance
  - adds: at most max_adds_per_symbol, each ≤ max_add_fraction of existing notional
  quantity = amount × leverage / (multiplier × price), floored to the lot step
  fill slippage > open tolerance → reduce-only rollback, SlippageRejection

CLOSE:
  close quantity = live quantity × pct, floored to the lot step
  ledger row shrinks by the filled quantity; removed only once nothing is left
  fill slippage > close tolerance → warning only (exit must happen)
  PnL recomputed from the fills and passed through correct_close_pnl
  linked SL/TP orders cancelled only if the venue still reports them open

Public methods never raise TradingError: failures come back as a
TradeResult with success=False, are logged with context and written to the
trade audit log. FatalError (persistence) propagates.
═══════════════════════════════════════════════════════════════
"""
import asyncio
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from loguru import logger

import config
from data.models import Position, Trade
from execution.contracts import ContractBook, floor_to_step
from execution.errors import (
    TradingError, FatalError, ValidationError, ExecutionError,
    MarketDataError, SlippageRejection,
)
from execution.fee_model import compute_fee, compute_net_pnl, correct_close_pnl
from execution.retry import retry_async
from execution.risk import AccountGuard, RiskConfig
from execution.venue_client import Order, OrderRequest, VenueClient, VenuePosition


LIQ_ESTIMATE_FACTOR = 0.9     # fallback liquidation distance = 0.9 / leverage


class OrderState(str, Enum):
    SUBMITTED = 'SUBMITTED'
    POLLING   = 'POLLING'
    FILLED    = 'FILLED'
    CANCELLED = 'CANCELLED'
    UNKNOWN   = 'UNKNOWN'


@dataclass
class TradeResult:
    success:   bool
    symbol:    str
    reason:    str = 'ok'
    trade:     Optional[Trade] = None
    estimated: bool = False
    corrected: bool = False
    order_state: Optional[OrderState] = None

    def to_dict(self) -> dict:
        return {
            'success': self.success, 'symbol': self.symbol, 'reason': self.reason,
            'estimated': self.estimated, 'corrected': self.corrected,
            'order_state': self.order_state.value if self.order_state else None,
            'trade': self.trade.to_dict() if self.trade else None,
        }


def opposite(side: str) -> str:
    return 'short' if side == 'long' else 'long'


def estimate_liquidation(side: str, entry: float, leverage: float) -> float:
    distance = LIQ_ESTIMATE_FACTOR / max(leverage, 1)
    return entry * (1 - distance) if side == 'long' else entry * (1 + distance)


class OrderExecutor:
    def __init__(
        self,
        venue: VenueClient,
        store,
        contracts: ContractBook,
        risk_config: RiskConfig,
        audit=None,
        notifier=None,
        fee_rate: float = config.TAKER_FEE,
        open_slippage: float = config.OPEN_SLIPPAGE_TOLERANCE,
        close_slippage: float = config.CLOSE_SLIPPAGE_TOLERANCE,
        settle_delay: float = config.ORDER_SETTLE_DELAY,
        poll_attempts: int = config.ORDER_POLL_ATTEMPTS,
        poll_delay: float = config.ORDER_POLL_DELAY,
        liq_attempts: int = config.LIQ_PRICE_ATTEMPTS,
    ):
        self.venue = venue
        self.store = store
        self.contracts = contracts
        self.risk_config = risk_config
        self.guard = AccountGuard(risk_config)
        self.audit = audit
        self.notifier = notifier
        self.fee_rate = fee_rate
        self.open_slippage = open_slippage
        self.close_slippage = close_slippage
        self.settle_delay = settle_delay
        self.poll_attempts = poll_attempts
        self.poll_delay = poll_delay
        self.liq_attempts = liq_attempts

    def update_config(self, risk_config: RiskConfig):
        self.risk_config = risk_config
        self.guard = AccountGuard(risk_config)

    # ── Public API ────────────────────────────────────────────────────
    async def open_position(
        self,
        symbol: str,
        side: str,
        leverage: int,
        amount: float,
        stop_loss: Optional[float] = None,
        profit_target: Optional[float] = None,
    ) -> TradeResult:
        """
        Open a new position or add to an existing same-side one.

        Args:
            symbol:        base asset, e.g. 'BTC'
            side:          'long' | 'short'
            leverage:      must lie inside the strategy leverage band
            amount:        margin in quote currency (USDT)
            stop_loss:     optional stop price override stored on the position
            profit_target: optional take-profit price override

        Returns:
            TradeResult — success, reason, the recorded open Trade, estimated flag
        """
        try:
            return await self._open(symbol, side, leverage, amount, stop_loss, profit_target)
        except FatalError:
            raise
        except TradingError as e:
            return await self._reject('open', symbol, e, side=side, leverage=leverage, amount=amount)

    async def close_position(self, symbol: str, percentage: float = 100, reason: str = 'manual') -> TradeResult:
        """Close `percentage` of the live position on `symbol` with a reduce-only market order."""
        try:
            return await self._close(symbol, percentage, reason)
        except FatalError:
            raise
        except TradingError as e:
            return await self._reject('close', symbol, e, percentage=percentage, close_reason=reason)

    async def close_all(self, reason: str) -> list[TradeResult]:
        """Close every live position. Keeps going when one close fails."""
        try:
            positions = await self.venue.get_positions()
        except TradingError as e:
            logger.error(f'[EXEC] close_all could not read positions: {e}')
            return [TradeResult(False, '*', reason=e.reason)]

        logger.warning(f'[EXEC] Closing all {len(positions)} positions — {reason}')
        results = []
        for pos in sorted(positions, key=lambda p: p.symbol):
            results.append(await self.close_position(pos.symbol, 100, reason))
        return results

    # ── Open ──────────────────────────────────────────────────────────
    async def _open(self, symbol, side, leverage, amount, stop_loss, profit_target) -> TradeResult:
        cfg = self.risk_config
        strategy = cfg.strategy

        if side not in ('long', 'short'):
            raise ValidationError('invalid_side', side=side)
        if not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount <= 0:
            raise ValidationError('invalid_amount', amount=amount)
        if not isinstance(leverage, (int, float)) or not math.isfinite(leverage) or leverage != int(leverage):
            raise ValidationError('invalid_leverage', leverage=leverage)
        leverage = int(leverage)
        if not strategy.leverage_min <= leverage <= strategy.leverage_max:
            raise ValidationError('leverage_out_of_range', leverage=leverage,
                                  min=strategy.leverage_min, max=strategy.leverage_max)

        info = await self.contracts.get(symbol)
        live = await self.venue.get_positions()
        existing = next((p for p in live if p.symbol == symbol), None)

        if existing is not None and existing.side != side:
            raise ValidationError('opposite_position_open', existing=existing.side, requested=side)
        if existing is None and len(live) >= cfg.max_positions:
            raise ValidationError('max_positions_reached', open=len(live), max=cfg.max_positions)

        account = await self.venue.get_account()
        guard = self.guard.evaluate(account.total_balance, self.store.initial_balance(),
                                    self.store.peak_balance())
        if not guard.allows_new:
            raise ValidationError('drawdown_block', action=guard.action.value, detail=guard.reason)

        exposure = 0.0
        for p in live:
            exposure += p.quantity * (await self.contracts.multiplier(p.symbol)) * p.entry_price
        new_exposure = amount * leverage
        max_exposure = account.total_balance * cfg.max_exposure_multiple
        if exposure + new_exposure > max_exposure:
            raise ValidationError('exposure_limit', exposure=round(exposure, 2),
                                  requested=round(new_exposure, 2), max=round(max_exposure, 2))

        ticker = await self.venue.get_ticker(symbol)
        price = ticker.last_price
        if not price or price <= 0:
            raise MarketDataError('no_price', symbol=symbol)

        quantity = floor_to_step(amount * leverage / (info.multiplier * price), info.lot_step)
        quantity = min(quantity, info.order_size_max)
        if quantity < info.order_size_min or quantity <= 0:
            raise ValidationError('below_min_size', quantity=quantity, min=info.order_size_min)

        local = self.store.get_position(symbol)
        if existing is not None:
            add_count = local.add_count if local else 0
            if add_count >= cfg.max_adds_per_symbol:
                raise ValidationError('max_adds_reached', adds=add_count, max=cfg.max_adds_per_symbol)
            existing_notional = existing.quantity * info.multiplier * existing.entry_price
            add_notional = quantity * info.multiplier * price
            if add_notional > existing_notional * cfg.max_add_fraction:
                raise ValidationError('add_too_large', add=round(add_notional, 2),
                                      max=round(existing_notional * cfg.max_add_fraction, 2))

        try:
            await self.venue.set_leverage(symbol, leverage)
        except ExecutionError as e:
            logger.warning(f'[EXEC] {symbol} set leverage {leverage}x failed, continuing: {e}')

        order = await self.venue.place_order(OrderRequest(symbol=symbol, side=side, quantity=quantity))
        order, state = await self._await_fill(order)
        estimated = state == OrderState.UNKNOWN

        if state == OrderState.CANCELLED and order.filled <= 0:
            raise ExecutionError('order_not_filled', order_id=order.id)

        fill_price = order.fill_price if order.fill_price > 0 else price
        filled = order.filled if order.filled > 0 else quantity

        slippage = abs(fill_price - price) / price
        if not estimated and slippage > self.open_slippage:
            await self._rollback(symbol, side, filled, order.id)
            raise SlippageRejection('slippage_exceeded', fill=fill_price, reference=price,
                                    slippage=round(slippage, 5), tolerance=self.open_slippage)

        liq_price, venue_pos = await self._read_liquidation(symbol, side, fill_price, leverage)
        fee = compute_fee(fill_price, filled, info.multiplier, self.fee_rate)

        trade = Trade(
            symbol=symbol, side=side, type='open', price=fill_price, quantity=filled,
            leverage=leverage, fee=fee, order_id=order.id,
            status='pending' if estimated else 'filled',
        )
        position = self._merged_position(local, venue_pos, symbol, side, filled, fill_price,
                                         leverage, liq_price, order.id, stop_loss, profit_target,
                                         is_add=existing is not None)
        self.store.record_open(trade, position)

        tag = ' [ESTIMATED]' if estimated else ''
        action = 'ADD' if existing is not None else 'OPEN'
        logger.info(
            f'[EXEC] {action} {side.upper()} {symbol} {filled:g} @ {fill_price:.4f} | '
            f'{leverage}x | fee {fee:.4f} | liq {liq_price:.4f}{tag}'
        )
        if self.notifier:
            self.notifier.schedule(self.notifier.notify_open(symbol, side, fill_price, filled, leverage))
        return TradeResult(True, symbol, trade=trade, estimated=estimated, order_state=state)

    def _merged_position(self, local, venue_pos, symbol, side, filled, fill_price, leverage,
                         liq_price, order_id, stop_loss, profit_target, is_add) -> Position:
        if is_add and local is not None:
            if venue_pos is not None:
                quantity, entry = venue_pos.quantity, venue_pos.entry_price
            else:
                quantity = local.quantity + filled
                entry = (local.entry_price * local.quantity + fill_price * filled) / quantity
            local.quantity = quantity
            local.entry_price = entry
            local.current_price = fill_price
            local.leverage = leverage
            local.liquidation_price = liq_price
            local.add_count += 1
            if stop_loss is not None:
                local.stop_loss = stop_loss
            if profit_target is not None:
                local.profit_target = profit_target
            return local

        return Position(
            symbol=symbol, side=side,
            quantity=venue_pos.quantity if venue_pos else filled,
            entry_price=venue_pos.entry_price if venue_pos and venue_pos.entry_price else fill_price,
            current_price=fill_price, leverage=leverage, liquidation_price=liq_price,
            entry_order_id=order_id, stop_loss=stop_loss, profit_target=profit_target,
        )

    async def _rollback(self, symbol: str, side: str, quantity: float, order_id: str):
        logger.warning(f'[EXEC] {symbol} slippage too high on {order_id} — rolling back {quantity:g}')
        try:
            await self.venue.place_order(OrderRequest(symbol=symbol, side=opposite(side),
                                                      quantity=quantity, reduce_only=True))
        except TradingError as e:
            # reconciliation adopts the orphaned position on the next sync
            logger.error(f'[EXEC] {symbol} rollback failed: {e}')

    async def _read_liquidation(self, symbol: str, side: str, entry: float,
                                leverage: int) -> tuple[float, Optional[VenuePosition]]:
        async def find():
            return next((p for p in await self.venue.get_positions() if p.symbol == symbol), None)

        outcome = await retry_async(
            find, attempts=self.liq_attempts, delay=self.poll_delay, backoff=2.0,
            until=lambda p: p is not None and p.liquidation_price > 0,
            retry_on=(ExecutionError,), label=f'liq-{symbol}',
        )
        if outcome.ok:
            return outcome.value.liquidation_price, outcome.value
        estimate = estimate_liquidation(side, entry, leverage)
        logger.warning(f'[EXEC] {symbol} liquidation price unavailable — estimated {estimate:.4f}')
        return estimate, outcome.value

    # ── Close ─────────────────────────────────────────────────────────
    async def _close(self, symbol: str, percentage: float, reason: str) -> TradeResult:
        if not isinstance(percentage, (int, float)) or not 0 < percentage <= 100:
            raise ValidationError('invalid_percentage', percentage=percentage)

        live = await self.venue.get_positions()
        pos = next((p for p in live if p.symbol == symbol), None)
        if pos is None:
            raise ValidationError('no_position', symbol=symbol)
        held = pos.quantity

        info = await self.contracts.get(symbol)
        if percentage >= 100:
            quantity = held
        else:
            quantity = floor_to_step(held * percentage / 100, info.lot_step)
        if quantity <= 0:
            raise ValidationError('below_min_size', quantity=quantity, min=info.order_size_min)

        reference = pos.current_price
        if not reference or reference <= 0:
            reference = (await self.venue.get_ticker(symbol)).last_price

        order = await self.venue.place_order(OrderRequest(
            symbol=symbol, side=opposite(pos.side), quantity=quantity, reduce_only=True,
        ))
        order, state = await self._await_fill(order)
        estimated = state == OrderState.UNKNOWN
        if state == OrderState.CANCELLED and order.filled <= 0:
            raise ExecutionError('order_not_filled', order_id=order.id)

        close_price = order.fill_price if order.fill_price > 0 else reference
        filled = order.filled if order.filled > 0 else quantity

        if reference > 0:
            slippage = abs(close_price - reference) / reference
            if slippage > self.close_slippage:
                logger.warning(f'[EXEC] {symbol} close slippage {slippage:.2%} above '
                               f'{self.close_slippage:.0%} — accepted')

        breakdown = compute_net_pnl(pos.side, pos.entry_price, close_price, filled,
                                    info.multiplier, self.fee_rate)
        correction = correct_close_pnl(breakdown.net, pos.side, pos.entry_price, close_price,
                                       filled, info.multiplier, self.fee_rate, symbol=symbol)
        if correction.corrected and self.audit:
            self.audit.record('pnl_corrected', symbol, 'notional_alias',
                              recorded=breakdown.net, corrected=correction.pnl)

        trade = Trade(
            symbol=symbol, side=pos.side, type='close', price=close_price, quantity=filled,
            leverage=pos.leverage, fee=breakdown.total_fee, order_id=order.id,
            pnl=correction.pnl, status='pending' if estimated else 'filled',
            entry_price=pos.entry_price,
        )
        # a partial fill leaves the rest of the position open
        remaining = max(held - filled, 0.0)
        local = self.store.get_position(symbol)
        self.store.record_close(trade, remaining)

        if remaining > 0:
            logger.info(f'[EXEC] {symbol} {remaining:g} contracts still open after close')
        elif local is not None:
            await self._cancel_linked(symbol, local)

        tag = ' [ESTIMATED]' if estimated else ''
        logger.info(
            f'[EXEC] CLOSE {pos.side.upper()} {symbol} {filled:g} @ {close_price:.4f} | '
            f'PnL ${correction.pnl:+.2f} | fee {breakdown.total_fee:.4f} | {reason}{tag}'
        )
        if self.notifier:
            self.notifier.schedule(self.notifier.notify_close(symbol, pos.side, correction.pnl, reason))
        return TradeResult(True, symbol, reason=reason, trade=trade, estimated=estimated,
                           corrected=correction.corrected, order_state=state)

    async def _cancel_linked(self, symbol: str, local: Position):
        for order_id in (local.sl_order_id, local.tp_order_id):
            if not order_id:
                continue
            try:
                linked = await self.venue.get_order(order_id)
                if linked.status == 'open':
                    await self.venue.cancel_order(order_id)
                    logger.info(f'[EXEC] {symbol} cancelled linked order {order_id}')
            except TradingError as e:
                logger.warning(f'[EXEC] {symbol} linked order {order_id} not cancelled: {e}')

    # ── Fill tracking ─────────────────────────────────────────────────
    async def _await_fill(self, order: Order) -> tuple[Order, OrderState]:
        state = OrderState.SUBMITTED
        if order.status == 'filled':
            return order, OrderState.FILLED
        if order.status == 'cancelled':
            return order, OrderState.CANCELLED

        logger.debug(f'[EXEC] Order {order.id} {state.value} -> {OrderState.POLLING.value}')
        state = OrderState.POLLING
        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)

        outcome = await retry_async(
            lambda: self.venue.get_order(order.id),
            attempts=self.poll_attempts, delay=self.poll_delay,
            until=lambda o: o.status in ('filled', 'cancelled'),
            retry_on=(ExecutionError,), label=f'poll-{order.id}',
        )
        latest = outcome.value or order
        if outcome.ok:
            final = OrderState.FILLED if latest.status == 'filled' else OrderState.CANCELLED
            logger.debug(f'[EXEC] Order {order.id} {state.value} -> {final.value}')
            return latest, final

        logger.warning(f'[EXEC] Order {order.id} still {latest.status} after '
                       f'{outcome.attempts} polls — using estimated fill [ESTIMATED]')
        return latest, OrderState.UNKNOWN

    # ── Rejections ────────────────────────────────────────────────────
    async def _reject(self, action: str, symbol: str, error: TradingError, **context) -> TradeResult:
        logger.warning(f'[EXEC] {action.upper()} {symbol} rejected: {error}')
        if self.audit:
            details = {**context, **error.context, 'action': action}
            for key in ('event', 'symbol', 'reason'):
                details.pop(key, None)
            self.audit.record('rejected', symbol, error.reason, **details)
        if self.notifier and (isinstance(error, SlippageRejection) or error.reason == 'drawdown_block'):
            self.notifier.schedule(self.notifier.notify_risk_block(f'{action} {symbol}: {error}'))
        return TradeResult(False, symbol, reason=error.reason)
