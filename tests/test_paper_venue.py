import pytest

from execution.contracts import ContractBook
from execution.errors import ExecutionError
from execution.order_executor import OrderExecutor
from execution.venue_client import OrderRequest, PaperVenue


@pytest.fixture
def paper(venue):
    return PaperVenue(venue, balance=1000.0, fee_rate=0.0005)


@pytest.mark.asyncio
async def test_balance_excludes_unrealized(paper, venue):
    await paper.set_leverage('BTC', 8)
    await paper.place_order(OrderRequest(symbol='BTC', side='long', quantity=4))
    venue.prices['BTC'] = 110.0

    account = await paper.get_account()
    assert account.total_balance == pytest.approx(999.8)
    assert account.unrealized_pnl == pytest.approx(40.0)
    pos = (await paper.get_positions())[0]
    assert pos.liquidation_price == pytest.approx(88.75)


@pytest.mark.asyncio
async def test_reduce_only_without_position(paper):
    with pytest.raises(ExecutionError):
        await paper.place_order(OrderRequest(symbol='BTC', side='short', quantity=1, reduce_only=True))


@pytest.mark.asyncio
async def test_round_trip_through_executor(paper, venue, store, risk_config):
    executor = OrderExecutor(paper, store, ContractBook(paper), risk_config,
                             settle_delay=0, poll_attempts=1, poll_delay=0, liq_attempts=1)
    opened = await executor.open_position('BTC', 'long', 8, 50)
    assert opened.success

    venue.prices['BTC'] = 110.0
    closed = await executor.close_position('BTC')
    assert closed.trade.pnl == pytest.approx(39.58)
    assert (await paper.get_account()).total_balance == pytest.approx(1039.58)
    assert await paper.get_positions() == []


@pytest.mark.asyncio
async def test_partial_close_keeps_ledger_row(paper, store, risk_config):
    executor = OrderExecutor(paper, store, ContractBook(paper), risk_config,
                             settle_delay=0, poll_attempts=1, poll_delay=0, liq_attempts=1)
    await executor.open_position('BTC', 'long', 8, 50)

    closed = await executor.close_position('BTC', 50)
    assert closed.trade.quantity == 2
    assert [p.quantity for p in await paper.get_positions()] == [2]
    assert store.get_position('BTC').quantity == 2


@pytest.mark.asyncio
async def test_positions_are_snapshots(paper):
    await paper.place_order(OrderRequest(symbol='BTC', side='long', quantity=4))
    before = (await paper.get_positions())[0]
    await paper.place_order(OrderRequest(symbol='BTC', side='short', quantity=1, reduce_only=True))
    assert before.quantity == 4
