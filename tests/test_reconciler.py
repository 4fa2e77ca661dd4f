import pytest

from execution.errors import ExecutionError, ReconciliationAmbiguity
from execution.reconciler import PositionReconciler
from execution.venue_client import VenuePosition


@pytest.fixture
def reconciler(venue, store):
    return PositionReconciler(venue, store, confirm_delay=0)


@pytest.mark.asyncio
async def test_adopts_untracked_venue_position(reconciler, venue, store):
    venue.add_position('BTC', 'short', quantity=3, entry=101.0)
    report = await reconciler.sync()
    assert report.adopted == ['BTC']
    pos = store.get_position('BTC')
    assert pos.side == 'short' and pos.quantity == 3 and pos.entry_price == 101.0


@pytest.mark.asyncio
async def test_ledger_metadata_survives_sync(reconciler, venue, store, make_position):
    store.upsert_position(make_position(peak_pnl_percent=9.0, opened_at=123.0, stop_loss=95.0,
                                        sl_order_id='sl-1', add_count=1))
    venue.add_position('BTC', 'long', quantity=6, entry=99.0)
    venue.prices['BTC'] = 104.0

    report = await reconciler.sync()
    assert report.updated == ['BTC']
    pos = store.get_position('BTC')
    assert pos.quantity == 6 and pos.entry_price == 99.0 and pos.current_price == 104.0
    assert (pos.peak_pnl_percent, pos.opened_at, pos.stop_loss) == (9.0, 123.0, 95.0)
    assert pos.sl_order_id == 'sl-1' and pos.add_count == 1


@pytest.mark.asyncio
async def test_single_empty_read_does_not_delete(reconciler, venue, store, make_position):
    store.upsert_position(make_position('BTC'))
    store.upsert_position(make_position('ETH'))
    btc = venue.add_position('BTC', 'long')
    eth = venue.add_position('ETH', 'long')
    venue.position_reads = [[], [btc, eth]]      # transient empty read, then both back

    report = await reconciler.sync()
    assert venue.position_calls == 2
    assert report.removed == []
    assert {p.symbol for p in store.get_positions()} == {'BTC', 'ETH'}


@pytest.mark.asyncio
async def test_confirmed_absence_removes_row(reconciler, venue, store, make_position):
    store.upsert_position(make_position('BTC'))
    store.upsert_position(make_position('ETH'))
    venue.add_position('ETH', 'long')

    report = await reconciler.sync()
    assert report.removed == ['BTC']
    assert store.get_position('BTC') is None
    assert store.get_position('ETH') is not None


@pytest.mark.asyncio
async def test_failed_confirm_read_keeps_rows(reconciler, venue, store, make_position):
    store.upsert_position(make_position('BTC'))
    venue.position_reads = [[], ExecutionError('venue_unreachable')]

    report = await reconciler.sync()
    assert report.ambiguous == ['BTC']
    assert store.get_position('BTC') is not None


@pytest.mark.asyncio
async def test_failed_first_read_propagates(reconciler, venue, store, make_position):
    store.upsert_position(make_position('BTC'))
    venue.position_reads = [ExecutionError('venue_unreachable')]
    with pytest.raises(ExecutionError):
        await reconciler.sync()
    assert store.get_position('BTC') is not None


@pytest.mark.asyncio
async def test_zero_prices_are_backfilled(reconciler, venue, store):
    venue.prices['BTC'] = 107.0
    venue.position_reads = [[VenuePosition(symbol='BTC', side='long', quantity=2, entry_price=100.0,
                                           current_price=0.0, liquidation_price=0.0, leverage=10)]]
    await reconciler.sync()
    pos = store.get_position('BTC')
    assert pos.current_price == 107.0
    assert pos.liquidation_price == pytest.approx(91.0)


@pytest.mark.asyncio
async def test_side_flip_resets_metadata(reconciler, venue, store, make_position):
    store.upsert_position(make_position('BTC', side='long', peak_pnl_percent=12.0, add_count=2))
    venue.add_position('BTC', 'short')
    await reconciler.sync()
    pos = store.get_position('BTC')
    assert pos.side == 'short'
    assert pos.peak_pnl_percent == 0.0
    assert pos.add_count == 0


@pytest.mark.asyncio
async def test_confirm_read_failure_is_an_ambiguity(reconciler, venue):
    venue.position_reads = [ExecutionError('venue_timeout')]
    with pytest.raises(ReconciliationAmbiguity) as exc:
        await reconciler._confirm_read(['BTC'])
    assert exc.value.reason == 'confirm_read_failed'
    assert exc.value.context['symbols'] == ['BTC']
