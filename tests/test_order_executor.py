import asyncio
import math
import time
from dataclasses import replace

import pytest

from data.models import AccountSnapshot
from execution.contracts import ContractBook
from execution.fee_model import HistoricalPnlFixer
from execution.order_executor import OrderState
from execution.reconciler import PositionReconciler
from execution.venue_client import Order
from monitoring.telegram import TelegramNotifier


@pytest.mark.asyncio
async def test_open_records_trade_and_position(executor, venue, store):
    result = await executor.open_position('BTC', 'long', 8, 50)

    assert result.success, result.reason
    assert not result.estimated
    assert venue.placed[0].quantity == 4          # 50 × 8 / (1 × 100)
    assert venue.leverage['BTC'] == 8

    trade = store.recent_trades()[0]
    assert trade.type == 'open'
    assert trade.fee == pytest.approx(0.2)
    assert trade.status == 'filled'

    pos = store.get_position('BTC')
    assert pos.quantity == 4
    assert pos.add_count == 0
    assert pos.liquidation_price == pytest.approx(100 * (1 - 0.9 / 8))


@pytest.mark.asyncio
async def test_quantity_respects_multiplier_and_lot_step(executor, venue):
    venue.prices['BTC'] = 2500.0
    venue.multipliers['BTC'] = 0.01
    result = await executor.open_position('BTC', 'long', 6, 100)
    assert result.success
    assert venue.placed[0].quantity == 24         # 100 × 6 / (0.01 × 2500)


@pytest.mark.asyncio
@pytest.mark.parametrize('leverage', [1, 5, 10, 20])
async def test_leverage_outside_band_rejected(executor, venue, audit, leverage):
    result = await executor.open_position('BTC', 'long', leverage, 50)
    assert not result.success
    assert result.reason == 'leverage_out_of_range'
    assert venue.placed == []
    assert audit.load_recent()[-1]['reason'] == 'leverage_out_of_range'


@pytest.mark.asyncio
@pytest.mark.parametrize('amount', [0, -5, math.nan, math.inf])
async def test_invalid_amount_rejected(executor, venue, amount):
    result = await executor.open_position('BTC', 'long', 8, amount)
    assert result.reason == 'invalid_amount'
    assert venue.placed == []


@pytest.mark.asyncio
async def test_no_dual_direction(executor, venue):
    venue.add_position('BTC', 'long')
    result = await executor.open_position('BTC', 'short', 8, 10)
    assert result.reason == 'opposite_position_open'
    assert venue.placed == []


@pytest.mark.asyncio
async def test_max_positions_applies_to_new_symbols(executor, venue, risk_config):
    executor.update_config(replace(risk_config, max_positions=1))
    venue.add_position('ETH', 'long', quantity=1)
    result = await executor.open_position('BTC', 'long', 8, 50)
    assert result.reason == 'max_positions_reached'


@pytest.mark.asyncio
async def test_undersized_order_rejected_not_clamped(executor, venue):
    result = await executor.open_position('BTC', 'long', 6, 1)   # 0.06 contracts
    assert result.reason == 'below_min_size'
    assert venue.placed == []


@pytest.mark.asyncio
async def test_missing_multiplier_fails_closed(executor, venue):
    venue.multipliers['BTC'] = math.nan
    result = await executor.open_position('BTC', 'long', 8, 50)
    assert not result.success
    assert result.reason == 'invalid_multiplier'
    assert venue.placed == []


@pytest.mark.asyncio
async def test_drawdown_blocks_new_positions(executor, venue, store):
    store.insert_snapshot(AccountSnapshot(total_balance=1000, available_balance=1000,
                                          unrealized_pnl=0, realized_pnl=0, return_percent=0))
    venue.balance = 840
    result = await executor.open_position('BTC', 'long', 8, 50)
    assert result.reason == 'drawdown_block'


@pytest.mark.asyncio
async def test_exposure_limit(executor, venue, risk_config):
    executor.update_config(replace(risk_config, max_exposure_multiple=0.1))
    result = await executor.open_position('BTC', 'long', 8, 50)
    assert result.reason == 'exposure_limit'


@pytest.mark.asyncio
async def test_slippage_triggers_rollback_and_rejection(executor, venue, store, audit):
    venue.fill_prices['BTC'] = 103.0              # 3% > 2% tolerance
    result = await executor.open_position('BTC', 'long', 8, 50)

    assert not result.success
    assert result.reason == 'slippage_exceeded'
    rollback = venue.placed[1]
    assert rollback.reduce_only and rollback.side == 'short' and rollback.quantity == 4
    assert 'BTC' not in venue.positions
    assert store.get_position('BTC') is None
    assert store.recent_trades() == []
    assert audit.load_recent()[-1]['reason'] == 'slippage_exceeded'


@pytest.mark.asyncio
async def test_unconfirmed_fill_is_recorded_as_estimated(executor, venue, store):
    venue.leave_open = True
    result = await executor.open_position('BTC', 'long', 8, 50)

    assert result.success
    assert result.estimated
    assert result.trade.status == 'pending'
    assert result.trade.price == 100.0
    assert store.get_position('BTC').liquidation_price == pytest.approx(100 * (1 - 0.9 / 8))


@pytest.mark.asyncio
async def test_add_within_limits_increments_add_count(executor, venue, store):
    await executor.open_position('BTC', 'long', 8, 50)          # 4 contracts, 400 notional
    result = await executor.open_position('BTC', 'long', 8, 25)  # 2 contracts, 200 = 50%
    assert result.success, result.reason
    pos = store.get_position('BTC')
    assert pos.quantity == 6
    assert pos.add_count == 1


@pytest.mark.asyncio
async def test_add_larger_than_half_rejected(executor):
    await executor.open_position('BTC', 'long', 8, 50)
    result = await executor.open_position('BTC', 'long', 8, 50)
    assert result.reason == 'add_too_large'


@pytest.mark.asyncio
async def test_add_count_limit(executor, store):
    await executor.open_position('BTC', 'long', 8, 50)
    pos = store.get_position('BTC')
    pos.add_count = 2
    store.upsert_position(pos)
    result = await executor.open_position('BTC', 'long', 8, 20)
    assert result.reason == 'max_adds_reached'


@pytest.mark.asyncio
async def test_close_computes_net_pnl_and_deletes_row(executor, venue, store):
    await executor.open_position('BTC', 'long', 8, 50)
    venue.prices['BTC'] = 110.0

    result = await executor.close_position('BTC', 100, reason='test')
    assert result.success
    assert venue.placed[-1].reduce_only
    assert venue.placed[-1].side == 'short'

    trade = result.trade
    assert trade.type == 'close'
    assert trade.pnl == pytest.approx(40 - 0.2 - 0.22)
    assert trade.fee == pytest.approx(0.42)
    assert store.get_position('BTC') is None


@pytest.mark.asyncio
async def test_partial_close_shrinks_position(executor, venue, store):
    await executor.open_position('BTC', 'long', 8, 50)
    result = await executor.close_position('BTC', 50)
    assert result.success
    assert result.trade.quantity == 2
    assert store.get_position('BTC').quantity == 2


@pytest.mark.asyncio
async def test_close_slippage_only_warns(executor, venue):
    await executor.open_position('BTC', 'long', 8, 50)
    venue.fill_prices['BTC'] = 90.0               # 10% away from mark
    result = await executor.close_position('BTC')
    assert result.success
    assert result.trade.price == 90.0


@pytest.mark.asyncio
async def test_close_cancels_only_open_linked_orders(executor, venue, store):
    await executor.open_position('BTC', 'long', 8, 50)
    pos = store.get_position('BTC')
    pos.sl_order_id, pos.tp_order_id = 'sl-1', 'tp-1'
    store.upsert_position(pos)
    venue.orders['sl-1'] = Order(id='sl-1', symbol='BTC', side='short', quantity=4, status='open')
    venue.orders['tp-1'] = Order(id='tp-1', symbol='BTC', side='short', quantity=4, status='filled')

    await executor.close_position('BTC')
    assert venue.cancelled == ['sl-1']


@pytest.mark.asyncio
async def test_close_without_position(executor):
    result = await executor.close_position('BTC')
    assert not result.success
    assert result.reason == 'no_position'


@pytest.mark.asyncio
async def test_close_all_continues_past_failures(executor, venue, store):
    venue.add_position('BTC', 'long')
    venue.add_position('ETH', 'short')
    venue.multipliers['BTC'] = math.nan           # BTC close fails closed

    results = await executor.close_all('test')
    assert [r.symbol for r in results] == ['BTC', 'ETH']
    assert not results[0].success
    assert results[1].success
    assert 'ETH' not in venue.positions


@pytest.mark.asyncio
async def test_close_after_add_prices_against_blended_entry(executor, venue, store):
    await executor.open_position('BTC', 'long', 8, 50)           # 4 @ 100
    venue.prices['BTC'] = 105.0
    added = await executor.open_position('BTC', 'long', 8, 25)   # 1 @ 105
    assert added.trade.quantity == 1
    assert store.get_position('BTC').entry_price == pytest.approx(101.0)

    venue.prices['BTC'] = 120.0
    closed = await executor.close_position('BTC')
    assert closed.trade.entry_price == pytest.approx(101.0)
    assert closed.trade.pnl == pytest.approx(94.4475)

    fixer = HistoricalPnlFixer(store, ContractBook(venue).multiplier, rate=0.0005)
    assert await fixer.run() == 0
    assert store.recent_close_trades()[0].pnl == pytest.approx(94.4475)


@pytest.mark.asyncio
async def test_partial_fill_on_full_close_keeps_row(executor, venue, store, make_position):
    opened_at = time.time() - 30 * 3600
    venue.add_position('BTC', quantity=4)
    store.upsert_position(make_position(opened_at=opened_at, peak_pnl_percent=6.0, sl_order_id='sl-1'))
    venue.orders['sl-1'] = Order(id='sl-1', symbol='BTC', side='short', quantity=4, status='open')
    venue.partial_fills['BTC'] = 2

    result = await executor.close_position('BTC')
    assert result.success
    assert result.order_state == OrderState.CANCELLED
    assert result.trade.quantity == 2
    assert venue.cancelled == []

    row = store.get_position('BTC')
    assert row.quantity == 2
    assert row.sl_order_id == 'sl-1'

    await PositionReconciler(venue, store, confirm_delay=0).sync()
    row = store.get_position('BTC')
    assert row.quantity == 2
    assert row.opened_at == opened_at
    assert row.peak_pnl_percent == 6.0


@pytest.mark.asyncio
async def test_poll_retries_through_venue_timeouts(executor, venue):
    venue.delayed_fill = True
    venue.order_read_errors = 1
    result = await executor.open_position('BTC', 'long', 8, 50)

    assert result.success
    assert not result.estimated
    assert result.order_state == OrderState.FILLED
    assert result.trade.status == 'filled'


@pytest.mark.asyncio
async def test_poll_budget_spent_on_timeouts_is_estimated(executor, venue):
    venue.delayed_fill = True
    venue.order_read_errors = 2
    result = await executor.open_position('BTC', 'long', 8, 50)

    assert result.success
    assert result.estimated
    assert result.order_state == OrderState.UNKNOWN
    assert result.to_dict()['order_state'] == 'UNKNOWN'


@pytest.mark.asyncio
async def test_notifications_are_tracked_until_sent(executor):
    notifier = TelegramNotifier('', '')
    executor.notifier = notifier
    await executor.open_position('BTC', 'long', 8, 50)

    assert len(notifier._pending) == 1
    await asyncio.gather(*notifier._pending)
    await asyncio.sleep(0)
    assert not notifier._pending
