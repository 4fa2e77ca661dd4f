"""
Position Reconciler — makes the ledger's positions table agree with the venue.

The venue is authoritative for which positions exist and for their quantity,
entry, mark and liquidation prices. The ledger keeps what only it knows:
opened_at, linked order ids, price overrides, peak PnL% and add count.

A ledger row missing from the venue is never dropped on one observation.
The venue is read again after `confirm_delay`; only a symbol absent from
both reads is deleted. Otherwise the row is kept and the disagreement is
reported as a ReconciliationAmbiguity.
"""
import asyncio
import time
from dataclasses import dataclass, field
from loguru import logger

from data.models import Position
from execution.errors import ReconciliationAmbiguity, TradingError
from execution.order_executor import estimate_liquidation
from execution.venue_client import VenueClient, VenuePosition


@dataclass
class SyncReport:
    adopted:    list = field(default_factory=list)    # on venue, new to the ledger
    updated:    list = field(default_factory=list)
    removed:    list = field(default_factory=list)    # confirmed gone
    ambiguous:  list = field(default_factory=list)    # kept pending confirmation
    positions:  list = field(default_factory=list)    # ledger after sync


class PositionReconciler:
    def __init__(self, venue: VenueClient, store, confirm_delay: float = 1.0):
        self.venue = venue
        self.store = store
        self.confirm_delay = confirm_delay

    async def sync(self) -> SyncReport:
        """
        Pull positions from the venue and rewrite the ledger rows.
        Venue read failures propagate; the ledger is untouched in that case.
        """
        live = {p.symbol: p for p in await self.venue.get_positions()}
        local = {p.symbol: p for p in self.store.get_positions()}
        report = SyncReport()

        missing = sorted(s for s in local if s not in live)
        if missing:
            logger.warning(f'[SYNC] {missing} absent on venue ({len(live)} live vs '
                           f'{len(local)} in ledger) — re-reading in {self.confirm_delay}s')
            await asyncio.sleep(self.confirm_delay)
            try:
                confirm = await self._confirm_read(missing)
            except ReconciliationAmbiguity as e:
                logger.warning(f'[SYNC] {e} | keeping {missing}')
                confirm = None

            for symbol in missing:
                if confirm is None:
                    continue
                if symbol in confirm:
                    logger.warning(f'[SYNC] {symbol} reappeared on second read — kept')
                    live[symbol] = confirm[symbol]
                else:
                    report.removed.append(symbol)

        merged = []
        for symbol in sorted(live):
            vp = live[symbol]
            prev = local.get(symbol)
            pos = await self._merge(vp, prev)
            merged.append(pos)
            (report.updated if prev else report.adopted).append(symbol)

        for symbol in sorted(local):
            if symbol not in live and symbol not in report.removed:
                report.ambiguous.append(symbol)
                merged.append(local[symbol])

        self.store.replace_positions(merged)
        report.positions = merged

        if report.adopted:
            logger.info(f'[SYNC] Adopted from venue: {report.adopted}')
        if report.removed:
            logger.info(f'[SYNC] Removed (confirmed closed): {report.removed}')
        if report.ambiguous:
            logger.warning(f'[SYNC] Kept pending confirmation: {report.ambiguous}')
        logger.debug(f'[SYNC] {len(merged)} positions in ledger')
        return report

    async def _confirm_read(self, missing: list) -> dict:
        try:
            return {p.symbol: p for p in await self.venue.get_positions()}
        except TradingError as e:
            raise ReconciliationAmbiguity('confirm_read_failed', symbols=missing, error=str(e)) from e

    async def _merge(self, vp: VenuePosition, prev: Position | None) -> Position:
        current = vp.current_price
        if current <= 0:
            try:
                current = (await self.venue.get_ticker(vp.symbol)).last_price
            except TradingError as e:
                logger.warning(f'[SYNC] {vp.symbol} no mark price and ticker failed: {e}')
                current = vp.entry_price

        liq = vp.liquidation_price
        if liq <= 0:
            liq = estimate_liquidation(vp.side, vp.entry_price, vp.leverage)

        if prev is not None and prev.side != vp.side:
            # flipped outside the engine: metadata of the old position no longer applies
            logger.warning(f'[SYNC] {vp.symbol} side changed {prev.side} → {vp.side} on venue')
            prev = None

        return Position(
            symbol=vp.symbol,
            side=vp.side,
            quantity=vp.quantity,
            entry_price=vp.entry_price,
            current_price=current,
            leverage=vp.leverage,
            liquidation_price=liq,
            unrealized_pnl=vp.unrealized_pnl,
            peak_pnl_percent=prev.peak_pnl_percent if prev else 0.0,
            opened_at=prev.opened_at if prev else time.time(),
            stop_loss=prev.stop_loss if prev else None,
            profit_target=prev.profit_target if prev else None,
            entry_order_id=prev.entry_order_id if prev else None,
            sl_order_id=prev.sl_order_id if prev else None,
            tp_order_id=prev.tp_order_id if prev else None,
            add_count=prev.add_count if prev else 0,
        )
